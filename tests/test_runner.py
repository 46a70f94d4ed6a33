import asyncio
import io

import pytest
from rich.console import Console

from dmarc_sender.config_loader import SendSettings
from dmarc_sender.dispatcher import DispatchSummary
from dmarc_sender.errors import MissingRecipientError
from dmarc_sender.models import Report
from dmarc_sender.runner import BatchRunner
from tests.fakes import DummyMetrics, DummyStore, RecordingOpLog


def _reports(count):
    return [Report(id=f"r{i}", domain="example.com", rua="mailto:dmarc@example.net") for i in range(1, count + 1)]


class DummyDispatcher:
    def __init__(self, store, behaviour=None):
        self.store = store
        self.behaviour = behaviour or {}
        self.seen = []

    async def dispatch(self, report):
        self.seen.append(report.id)
        action = self.behaviour.get(report.id)
        if action == "hang":
            await asyncio.sleep(10)
        if isinstance(action, BaseException):
            raise action
        await self.store.delete_report(report.id)
        return DispatchSummary(report_id=report.id, sent=1, deleted=True)


def _runner(reports, behaviour=None, **send):
    store = DummyStore(reports)
    dispatcher = DummyDispatcher(store, behaviour)
    oplog = RecordingOpLog()
    metrics = DummyMetrics()
    sleeps = []
    console = Console(file=io.StringIO(), width=200)

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    settings = SendSettings.model_construct(**{**SendSettings().model_dump(), "delay": 0, **send})
    runner = BatchRunner(
        store=store,
        dispatcher=dispatcher,
        settings=settings,
        oplog=oplog,
        metrics=metrics,
        console=console,
        sleep=fake_sleep,
    )
    return runner, store, dispatcher, oplog, metrics, sleeps, console


@pytest.mark.asyncio
async def test_run_processes_every_report():
    runner, store, dispatcher, oplog, metrics, _, _ = _runner(_reports(3))

    stats = await runner.run()

    assert dispatcher.seen == ["r1", "r2", "r3"]
    assert stats.processed == 3
    assert stats.deleted == 3
    assert store.reports == {}
    assert metrics.pending_value == 0
    assert oplog.records[0] == {"info": "dmarc_send_reports starting up"}
    assert oplog.records[-1] == {"info": "dmarc_send_reports done"}


@pytest.mark.asyncio
async def test_timeout_is_transient_and_next_report_runs():
    runner, store, dispatcher, oplog, metrics, _, _ = _runner(_reports(2), {"r1": "hang"}, timeout=0.05)

    stats = await runner.run()

    assert dispatcher.seen == ["r1", "r2"]
    assert stats.timeouts == 1
    assert metrics.timeouts == 1
    assert "r1" in store.reports
    assert "r2" not in store.reports
    assert store.errors == [("r1", "timeout after 0.05s")]
    assert {"id": "r1", "error": "timeout", "error_detail": "report not sent within 0.05s"} in oplog.records


@pytest.mark.asyncio
async def test_unexpected_error_is_isolated():
    runner, store, dispatcher, oplog, metrics, _, _ = _runner(_reports(2), {"r1": RuntimeError("boom")})

    stats = await runner.run()

    assert dispatcher.seen == ["r1", "r2"]
    assert stats.errors == 1
    assert metrics.report_errors == 1
    assert {"id": "r1", "error": "error sending report: boom"} in oplog.records
    assert "r1" in store.reports


@pytest.mark.asyncio
async def test_fatal_error_stops_the_run():
    runner, _, dispatcher, _, _, _, _ = _runner(_reports(2), {"r1": MissingRecipientError()})

    with pytest.raises(MissingRecipientError):
        await runner.run()
    assert dispatcher.seen == ["r1"]


@pytest.mark.asyncio
async def test_pause_after_every_batch():
    runner, _, _, _, _, sleeps, console = _runner(_reports(5), batch=2, delay=3, verbose=1)

    await runner.run()

    # two full batches of two, none after the trailing single report
    assert sleeps == [1] * 6
    output = console.file.getvalue()
    assert output.count("sleeping 3...done.") == 2


@pytest.mark.asyncio
async def test_pause_is_silent_when_quiet():
    runner, _, _, _, _, sleeps, console = _runner(_reports(2), batch=1, delay=1, verbose=0)

    await runner.run()

    assert sleeps == [1]
    assert console.file.getvalue() == ""


@pytest.mark.asyncio
async def test_no_pause_after_last_batch():
    runner, _, dispatcher, _, _, sleeps, console = _runner(_reports(4), batch=2, delay=5, verbose=1)

    await runner.run()

    assert dispatcher.seen == ["r1", "r2", "r3", "r4"]
    assert sleeps == [1] * 5
    assert console.file.getvalue().count("sleeping 5") == 1


@pytest.mark.asyncio
async def test_single_report_run_does_not_sleep():
    runner, _, _, _, _, sleeps, _ = _runner(_reports(1), batch=1, delay=5)

    await runner.run()

    assert sleeps == []
