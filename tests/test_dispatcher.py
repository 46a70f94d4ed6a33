import pytest

from dmarc_sender.config_loader import OrganizationSettings, SMTPSettings
from dmarc_sender.delivery import DeliveryEngine
from dmarc_sender.dispatcher import ReceiverDispatcher
from dmarc_sender.message import compress_report
from dmarc_sender.models import Report
from tests.fakes import (
    DummyMetrics,
    DummyPool,
    DummySelector,
    DummySigner,
    DummyStore,
    RecordingOpLog,
    refused,
)

ORG = OrganizationSettings(email="noreply@reporter.example", org_name="Reporter", domain="reporter.example")


def _report(rua="mailto:dmarc@example.net", report_id="r1"):
    return Report(id=report_id, domain="example.com", rua=rua, body="<feedback>" + "x" * 4000 + "</feedback>")


def _dispatcher(report, pool=None, smtp=None):
    store = DummyStore([report])
    pool = pool or DummyPool()
    oplog = RecordingOpLog()
    metrics = DummyMetrics()
    engine = DeliveryEngine(
        store=store,
        selector=DummySelector(),
        signer=DummySigner(),
        pool=pool,
        organization=ORG,
        oplog=oplog,
        metrics=metrics,
    )
    dispatcher = ReceiverDispatcher(
        store=store,
        engine=engine,
        smtp=smtp or SMTPSettings(),
        organization=ORG,
        oplog=oplog,
        metrics=metrics,
    )
    return dispatcher, store, pool, oplog, metrics


@pytest.mark.asyncio
@pytest.mark.parametrize("rua", ["", "ftp://example.net/x", "not a uri at all", "mailto:broken, mailto:x@example.net!10x"])
async def test_no_valid_receivers_deletes_without_sending(rua):
    report = _report(rua)
    dispatcher, store, pool, oplog, metrics = _dispatcher(report)

    summary = await dispatcher.dispatch(report)

    assert summary.deleted is True
    assert store.deleted == ["r1"]
    assert pool.sent == []
    assert metrics.deleted == ["no_receivers"]
    assert oplog.records[-1]["error"].startswith("No valid ruas found - deleting report")


@pytest.mark.asyncio
async def test_round_trip_single_receiver():
    report = _report()
    dispatcher, store, pool, oplog, metrics = _dispatcher(report)

    summary = await dispatcher.dispatch(report)

    assert len(pool.sent) == 1
    assert pool.sent[0]["to"] == "dmarc@example.net"
    assert summary.sent == 1
    assert store.deleted == ["r1"]
    assert metrics.deleted == ["delivered"]
    assert any("success" in record for record in oplog.records)


@pytest.mark.asyncio
async def test_multiple_receivers_share_one_compressed_payload():
    report = _report("mailto:a@example.net, mailto:b@example.org")
    dispatcher, store, pool, _, _ = _dispatcher(report)

    summary = await dispatcher.dispatch(report)

    assert [item["to"] for item in pool.sent] == ["a@example.net", "b@example.org"]
    assert summary.sent == 2
    assert store.deleted == ["r1"]


@pytest.mark.asyncio
async def test_too_big_receiver_gets_notice_and_report_stays():
    size = len(compress_report(_report()))
    report = _report(f"mailto:dmarc@example.net!{size - 1}")
    dispatcher, store, pool, _, _ = _dispatcher(report)

    summary = await dispatcher.dispatch(report)

    assert summary.too_big == ["mailto:dmarc@example.net"]
    assert summary.sent == 0
    assert store.deleted == []
    assert len(pool.sent) == 1
    notice = pool.sent[0]["body"]
    assert b"DMARC too big report" in notice
    assert b"application/gzip" not in notice


@pytest.mark.asyncio
async def test_too_big_notices_only_for_mailto_receivers():
    report = _report()
    size = len(compress_report(report))
    report = _report(f"mailto:a@example.net!{size - 1}, https://r.example.org/x!{size - 1}, mailto:b@example.org!{size - 1}")
    dispatcher, store, pool, _, _ = _dispatcher(report)

    summary = await dispatcher.dispatch(report)

    assert len(summary.too_big) == 3
    assert [item["to"] for item in pool.sent] == ["a@example.net", "b@example.org"]
    assert store.deleted == []


@pytest.mark.asyncio
async def test_cc_sent_once_per_report():
    report = _report("mailto:a@example.net, mailto:b@example.org")
    dispatcher, store, pool, _, _ = _dispatcher(report, smtp=SMTPSettings(cc="archive@reporter.example"))

    summary = await dispatcher.dispatch(report)

    recipients = [item["to"] for item in pool.sent]
    assert recipients == ["archive@reporter.example", "a@example.net", "b@example.org"]
    assert summary.cc_sent is True
    assert summary.sent == 2


@pytest.mark.asyncio
async def test_cc_placeholder_is_not_used():
    report = _report()
    dispatcher, _, pool, _, _ = _dispatcher(report, smtp=SMTPSettings(cc="set.this@for.a.while.example.com"))

    await dispatcher.dispatch(report)

    assert [item["to"] for item in pool.sent] == ["dmarc@example.net"]


@pytest.mark.asyncio
async def test_permanent_failure_deletes_report():
    report = _report()
    pool = DummyPool([refused(550, "no such mailbox")])
    dispatcher, store, _, _, metrics = _dispatcher(report, pool=pool)

    summary = await dispatcher.dispatch(report)

    assert summary.deleted is True
    assert summary.sent == 0
    assert store.deleted == ["r1"]
    assert metrics.deleted == ["permanent_failure"]


@pytest.mark.asyncio
async def test_transient_failure_keeps_report():
    report = _report()
    pool = DummyPool([refused(451, "greylisted")])
    dispatcher, store, _, _, _ = _dispatcher(report, pool=pool)

    summary = await dispatcher.dispatch(report)

    assert summary.deleted is False
    assert store.deleted == []
    assert store.errors == [("r1", "greylisted")]


@pytest.mark.asyncio
async def test_http_receiver_counts_as_sent_without_network():
    report = _report("https://reports.example.org/dmarc")
    dispatcher, store, pool, oplog, _ = _dispatcher(report)

    summary = await dispatcher.dispatch(report)

    assert pool.sent == []
    assert summary.sent == 1
    assert store.deleted == ["r1"]
    assert any("http delivery not implemented" in record.get("info", "") for record in oplog.records)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "bad_entry", ["not a uri", "mailto:broken", "mailto:other@example.org!10x", "ftp://example.org/x"]
)
async def test_malformed_entry_does_not_block_valid_receiver(bad_entry):
    report = _report(f"mailto:dmarc@example.net, {bad_entry}")
    dispatcher, store, pool, _, metrics = _dispatcher(report)

    summary = await dispatcher.dispatch(report)

    assert [item["to"] for item in pool.sent] == ["dmarc@example.net"]
    assert summary.sent == 1
    assert store.deleted == ["r1"]
    assert metrics.deleted == ["delivered"]
