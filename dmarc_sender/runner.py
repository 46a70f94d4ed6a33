"""The batch loop: one report at a time, bounded and throttled."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from rich.console import Console

from .config_loader import SendSettings
from .dispatcher import ReceiverDispatcher
from .errors import FatalSenderError
from .logger import OperationalLog, get_logger
from .models import Report
from .persistence import ReportStore
from .prometheus import SenderMetrics


@dataclass
class RunStats:
    processed: int = 0
    deleted: int = 0
    timeouts: int = 0
    errors: int = 0


class BatchRunner:
    """Process every pending report once.

    Each report gets its own deadline; a timeout or an unexpected error is
    logged against that report and the loop moves on. After every ``batch``
    reports the loop pauses for ``delay`` seconds.
    """

    def __init__(
        self,
        *,
        store: ReportStore,
        dispatcher: ReceiverDispatcher,
        settings: SendSettings,
        oplog: Optional[OperationalLog] = None,
        metrics: Optional[SenderMetrics] = None,
        console: Optional[Console] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger=None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings
        self.oplog = oplog or OperationalLog(enabled=settings.syslog, verbose=settings.verbose)
        self.metrics = metrics or SenderMetrics()
        self.console = console or Console()
        self._sleep = sleep
        self.logger = logger or get_logger("DmarcSender.runner")

    async def run(self) -> RunStats:
        """Drain the queue once and return counters for the run."""
        stats = RunStats()
        self.oplog.record({"info": "dmarc_send_reports starting up"})
        in_batch = 0
        report = await self.store.next_pending()
        while report is not None:
            stats.processed += 1
            await self.process_report(report, stats)
            in_batch += 1
            report = await self.store.next_pending()
            # no pause once the queue is drained
            if report is not None and in_batch >= self.settings.batch:
                in_batch = 0
                await self._pause()
        self.metrics.set_pending(await self.store.count_reports())
        self.oplog.record({"info": "dmarc_send_reports done"})
        self.logger.info(
            "Run finished: processed=%d deleted=%d timeouts=%d errors=%d",
            stats.processed,
            stats.deleted,
            stats.timeouts,
            stats.errors,
        )
        return stats

    async def process_report(self, report: Report, stats: RunStats) -> None:
        """Dispatch one report inside its deadline, isolating its failures."""
        timeout = self.settings.timeout
        try:
            async with asyncio.timeout(timeout):
                summary = await self.dispatcher.dispatch(report)
        except TimeoutError:
            stats.timeouts += 1
            self.metrics.inc_timeout()
            self.oplog.record(
                {"id": report.id, "error": "timeout", "error_detail": f"report not sent within {timeout}s"},
                level=logging.WARNING,
            )
            await self.store.record_error(report.id, f"timeout after {timeout}s")
            return
        except FatalSenderError:
            raise
        except Exception as exc:
            stats.errors += 1
            self.metrics.inc_report_error()
            self.logger.exception("Unhandled error sending report %s", report.id)
            self.oplog.record({"id": report.id, "error": f"error sending report: {exc}"}, level=logging.ERROR)
            return
        if summary.deleted:
            stats.deleted += 1

    async def _pause(self) -> None:
        """Sleep ``delay`` seconds, printing one progress dot per second."""
        delay = self.settings.delay
        if delay <= 0:
            return
        verbose = self.settings.verbose > 0
        if verbose:
            self.console.print(f"sleeping {delay}", end="", markup=False, highlight=False)
        for _ in range(delay):
            if verbose:
                self.console.print(".", end="", markup=False, highlight=False)
            await self._sleep(1)
        if verbose:
            self.console.print("done.", markup=False, highlight=False)
