"""Delivery of one message to one recipient across ordered transports."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Union

import aiosmtplib

from .config_loader import OrganizationSettings
from .errors import MissingRecipientError, SendError, SigningError
from .logger import OperationalLog, get_logger
from .message import as_bytes, build_report_message
from .models import (
    DeliveryOutcome,
    DeliveryResult,
    NoticePayload,
    ReportPayload,
    TransportContext,
)
from .persistence import ReportStore
from .prometheus import SenderMetrics
from .signer import DKIMSigner
from .smtp_pool import SMTPPool
from .transports import TransportSelector


def _classify_smtp_error(exc: Exception) -> SendError:
    """Turn a transport exception into a :class:`SendError` with the SMTP code if any.

    Only replies carry a code; connection failures and timeouts have none and
    are therefore never permanent.
    """
    if isinstance(exc, SendError):
        return exc
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        refused = exc.recipients[0]
        return SendError(refused.code, refused.message)
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return SendError(exc.code, exc.message)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return SendError(None, str(exc) or "timeout")
    return SendError(None, str(exc) or exc.__class__.__name__)


class DeliveryEngine:
    """Assemble, sign and send a message, then classify the outcome."""

    def __init__(
        self,
        *,
        store: ReportStore,
        selector: TransportSelector,
        signer: DKIMSigner,
        pool: SMTPPool,
        organization: OrganizationSettings,
        oplog: Optional[OperationalLog] = None,
        metrics: Optional[SenderMetrics] = None,
        logger=None,
    ):
        self.store = store
        self.selector = selector
        self.signer = signer
        self.pool = pool
        self.organization = organization
        self.oplog = oplog or OperationalLog()
        self.metrics = metrics or SenderMetrics()
        self.logger = logger or get_logger("DmarcSender.delivery")

    async def deliver(self, recipient: str, payload: Union[ReportPayload, NoticePayload]) -> DeliveryResult:
        """Send ``payload`` to ``recipient``.

        Report payloads are wrapped in a MIME envelope with the compressed
        report attached; notice payloads are sent verbatim. Transient errors
        are recorded against the report; a permanent (5xx) reply stops the
        attempt and the caller is expected to delete the report.

        Raises:
            MissingRecipientError: If ``recipient`` is empty.
            SigningKeyError: If signing is configured and the key cannot be loaded.
        """
        if not recipient:
            self.oplog.record({"error": "No recipient for email"}, level=logging.ERROR)
            raise MissingRecipientError()

        log_data = {"deliver_to": recipient}
        report = None
        if isinstance(payload, ReportPayload):
            report = payload.report
            message = build_report_message(report, recipient, payload.compressed, self.organization)
            log_data["id"] = report.id
            log_data["to_domain"] = report.domain
        elif isinstance(payload, NoticePayload):
            message = payload.message
        else:
            raise TypeError("No email content")
        body = as_bytes(message)

        if self.signer.enabled:
            try:
                body = self.signer.sign(body)
            except SigningError as exc:
                self.logger.error("DKIM signing error for %s: %s", recipient, exc)
                log_data["error"] = "DKIM Signing error"
                log_data["error_detail"] = str(exc)
                return self._finish(DeliveryOutcome.TRANSIENT_FAILURE, "DKIM Signing error", 0, log_data)
            log_data["dkim"] = 1

        context = TransportContext(recipient=recipient, report=report, log_data=log_data)
        errors: List[SendError] = []
        try:
            candidates = await self.selector.select(context)
        except Exception as exc:
            self.logger.warning("Transport selection failed for %s: %s", recipient, exc)
            candidates = []
            errors.append(SendError(None, f"transport selection failed: {exc}"))
        if not candidates and not errors:
            errors.append(SendError(None, "no transport available"))

        outcome = DeliveryOutcome.TRANSIENT_FAILURE
        reason = ""
        attempts = 0
        for candidate in candidates:
            attempts += 1
            try:
                response = await self.pool.send(candidate, self.organization.email, recipient, body)
            except Exception as exc:
                error = _classify_smtp_error(exc)
                errors.append(error)
                self.logger.debug("Delivery to %s via %s failed: %s", recipient, candidate.label, error)
                if error.permanent:
                    outcome = DeliveryOutcome.PERMANENT_FAILURE
                    reason = str(error)
                    if report is not None:
                        log_data["deleted"] = 1
                    break
                if report is not None:
                    await self.store.record_error(report.id, error.message)
                continue
            outcome = DeliveryOutcome.SUCCESS
            reason = response or "accepted"
            log_data["success"] = reason
            break

        if errors:
            log_data["send_error"] = ", ".join(error.message for error in errors)
            log_data["send_error_code"] = ", ".join(str(error.code) if error.code else "-" for error in errors)
            if outcome is DeliveryOutcome.TRANSIENT_FAILURE:
                reason = log_data["send_error"]
                if report is not None and not candidates:
                    await self.store.record_error(report.id, reason)
        return self._finish(outcome, reason, attempts, log_data)

    def _finish(self, outcome: DeliveryOutcome, reason: str, attempts: int, log_data: dict) -> DeliveryResult:
        level = logging.INFO if outcome is DeliveryOutcome.SUCCESS else logging.WARNING
        self.oplog.record(log_data, level=level)
        self.metrics.inc_delivery(outcome.value)
        return DeliveryResult(outcome=outcome, reason=reason, attempts=attempts, log_data=log_data)
