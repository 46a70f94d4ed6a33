"""Wiring of the sending pipeline for one run."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from rich.console import Console

from .config_loader import Settings
from .delivery import DeliveryEngine
from .dispatcher import ReceiverDispatcher
from .logger import OperationalLog, get_logger
from .persistence import ReportStore
from .prometheus import SenderMetrics
from .runner import BatchRunner, RunStats
from .signer import DKIMSigner
from .smtp_pool import SMTPPool
from .transports import MXLookupFn, TransportSelectFn, TransportSelector, import_select_fn


class ReportSender:
    """Build every collaborator from :class:`Settings` and drain the queue.

    Collaborators that touch the network or the clock can be replaced for
    testing: ``mx_lookup`` resolves mail exchangers, ``select_fn`` overrides
    transport selection and ``sleep`` implements the batch pause.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[ReportStore] = None,
        pool: Optional[SMTPPool] = None,
        metrics: Optional[SenderMetrics] = None,
        console: Optional[Console] = None,
        mx_lookup: Optional[MXLookupFn] = None,
        select_fn: Optional[TransportSelectFn] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        logger=None,
    ):
        self.settings = settings
        self.logger = logger or get_logger()
        self.console = console or Console()
        self.store = store or ReportStore(settings.db_path)
        self.pool = pool or SMTPPool()
        self.metrics = metrics or SenderMetrics()
        self.oplog = OperationalLog(
            enabled=settings.send.syslog,
            verbose=settings.send.verbose,
            console=self.console,
        )
        self.signer = DKIMSigner(settings.report_sign, oplog=self.oplog)
        self.selector = TransportSelector(settings.smtp, mx_lookup=mx_lookup)
        if select_fn is None and settings.smtp.transports:
            select_fn = import_select_fn(settings.smtp.transports)
            self.logger.debug("Using transport selection from %s", settings.smtp.transports)
        self.selector.register(select_fn)
        self.engine = DeliveryEngine(
            store=self.store,
            selector=self.selector,
            signer=self.signer,
            pool=self.pool,
            organization=settings.organization,
            oplog=self.oplog,
            metrics=self.metrics,
        )
        self.dispatcher = ReceiverDispatcher(
            store=self.store,
            engine=self.engine,
            smtp=settings.smtp,
            organization=settings.organization,
            oplog=self.oplog,
            metrics=self.metrics,
        )
        runner_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.runner = BatchRunner(
            store=self.store,
            dispatcher=self.dispatcher,
            settings=settings.send,
            oplog=self.oplog,
            metrics=self.metrics,
            console=self.console,
            **runner_kwargs,
        )

    async def init(self) -> None:
        """Prepare the report store."""
        await self.store.init_db()

    async def run(self) -> RunStats:
        """Process every pending report once, closing SMTP connections at the end.

        Raises:
            FatalSenderError: When a configuration problem makes sending impossible.
        """
        await self.init()
        self.logger.debug("Starting run on %s", self.settings.db_path)
        try:
            return await self.runner.run()
        finally:
            await self.pool.close_all()
