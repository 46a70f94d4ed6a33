"""Fan-out of one report to all of its receivers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config_loader import OrganizationSettings, SMTPSettings
from .delivery import DeliveryEngine
from .errors import ReceiverParseError
from .logger import OperationalLog, get_logger
from .message import build_too_big_message, compress_report, too_big_notice
from .models import DeliveryResult, NoticePayload, ReceiverDescriptor, Report, ReportPayload
from .persistence import ReportStore
from .prometheus import SenderMetrics
from .uri import parse_rua

ResolveFn = Callable[[str], List[ReceiverDescriptor]]


@dataclass
class DispatchSummary:
    """What happened to one report."""

    report_id: str
    sent: int = 0
    deleted: bool = False
    too_big: List[str] = field(default_factory=list)
    cc_sent: bool = False


class ReceiverDispatcher:
    """Deliver a report to every receiver named in its ``rua`` field.

    The report is compressed once and the same bytes go to every receiver.
    It leaves the queue when at least one receiver accepted it, when no valid
    receiver exists, or when a receiver rejected it permanently.
    """

    def __init__(
        self,
        *,
        store: ReportStore,
        engine: DeliveryEngine,
        smtp: SMTPSettings,
        organization: OrganizationSettings,
        resolve_receivers: Optional[ResolveFn] = None,
        oplog: Optional[OperationalLog] = None,
        metrics: Optional[SenderMetrics] = None,
        logger=None,
    ):
        self.store = store
        self.engine = engine
        self.smtp = smtp
        self.organization = organization
        self.resolve_receivers = resolve_receivers or parse_rua
        self.oplog = oplog or OperationalLog()
        self.metrics = metrics or SenderMetrics()
        self.logger = logger or get_logger("DmarcSender.dispatcher")

    async def _delete(self, summary: DispatchSummary, reason: str) -> None:
        if summary.deleted:
            return
        await self.store.delete_report(summary.report_id)
        summary.deleted = True
        self.metrics.inc_deleted(reason)

    async def _track(self, summary: DispatchSummary, result: DeliveryResult) -> None:
        if result.permanent:
            self.oplog.record({"id": summary.report_id, "info": "permanent failure - deleting report"})
            await self._delete(summary, "permanent_failure")

    async def dispatch(self, report: Report) -> DispatchSummary:
        """Resolve receivers, deliver to each of them and update the queue."""
        summary = DispatchSummary(report_id=report.id)
        self.oplog.record({"id": report.id, "domain": report.domain, "rua": report.rua})

        try:
            receivers = self.resolve_receivers(report.rua)
        except ReceiverParseError as exc:
            self.oplog.record(
                {"id": report.id, "error": f"No valid ruas found - deleting report - {exc}"},
                level=logging.WARNING,
            )
            await self._delete(summary, "no_receivers")
            return summary
        if not receivers:
            self.oplog.record({"id": report.id, "error": "No valid ruas found - deleting report"}, level=logging.WARNING)
            await self._delete(summary, "no_receivers")
            return summary

        compressed = compress_report(report)
        size = len(compressed)
        payload = ReportPayload(compressed=compressed, report=report)

        for receiver in receivers:
            uri = receiver.uri
            if receiver.too_big_for(size):
                self.oplog.record(
                    {"id": report.id, "info": f"skipping {uri}: report size ({size}) larger than {receiver.max_bytes}"}
                )
                summary.too_big.append(uri)
                continue

            if receiver.is_mailto:
                if self.smtp.cc_enabled and not summary.cc_sent:
                    summary.cc_sent = True
                    await self._track(summary, await self.engine.deliver(self.smtp.cc, payload))
                result = await self.engine.deliver(receiver.address, payload)
                if result.ok:
                    summary.sent += 1
                await self._track(summary, result)
            elif receiver.is_http:
                # HTTP(S) reporting is not implemented: count it as delivered so
                # the report does not stay queued forever.
                self.oplog.record({"id": report.id, "info": f"http delivery not implemented, skipping {uri}"})
                summary.sent += 1
            else:
                self.logger.warning("Report %s: unsupported receiver %s", report.id, uri)

        if summary.sent:
            await self._delete(summary, "delivered")
        elif summary.too_big:
            await self.notify_too_big(summary.too_big, size, report)
        return summary

    async def notify_too_big(self, oversized_uris: List[str], byte_length: int, report: Report) -> int:
        """Tell each oversized ``mailto:`` receiver that the report was not sent.

        Returns the number of notices accepted.
        """
        submitter = self.organization.org_name or self.organization.domain
        accepted = 0
        for uri in oversized_uris:
            receiver = ReceiverDescriptor(uri=uri)
            if not receiver.is_mailto:
                continue
            to = receiver.address
            body = too_big_notice(
                uri=uri,
                report_bytes=byte_length,
                report_id=report.id,
                report_domain=report.domain,
                submitter=submitter,
            )
            message = build_too_big_message(report, to, body, self.organization)
            result = await self.engine.deliver(to, NoticePayload(message=message))
            if result.ok:
                accepted += 1
        return accepted
