"""Data types shared by the delivery pipeline.

Models:
    - Report: a queued aggregate report
    - ReceiverDescriptor: one destination parsed from a ``rua`` field
    - TransportCandidate: connection settings for one delivery attempt
    - DeliveryOutcome / DeliveryResult: classified result of a delivery
    - ReportPayload / NoticePayload: what the delivery engine is asked to send
    - TransportContext: input handed to transport selection
"""

from __future__ import annotations

from dataclasses import dataclass, field
from email.message import EmailMessage
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MAILTO = "mailto:"
HTTP_SCHEMES = ("http:", "https:")


class Report(BaseModel):
    """An aggregate report waiting in the queue.

    Attributes:
        id: Unique report identifier.
        domain: Policy domain the report is about.
        rua: Raw ``rua`` tag value naming the receivers.
        body: Aggregate report XML.
        begin: Start of the reporting window (epoch seconds).
        end: End of the reporting window (epoch seconds).
        error: Last transient error recorded for the report.
    """

    model_config = ConfigDict(extra="ignore")

    id: Annotated[str, Field(min_length=1)]
    domain: Annotated[str, Field(min_length=1)]
    rua: str = ""
    body: str = ""
    begin: Optional[int] = None
    end: Optional[int] = None
    error: Optional[str] = None

    def render(self) -> str:
        """Return the report document to be compressed."""
        return self.body


class ReceiverDescriptor(BaseModel):
    """A report receiver: scheme-qualified URI plus optional size cap."""

    model_config = ConfigDict(frozen=True)

    uri: str
    max_bytes: Optional[int] = None

    @property
    def is_mailto(self) -> bool:
        return self.uri.lower().startswith(MAILTO)

    @property
    def is_http(self) -> bool:
        return self.uri.lower().startswith(HTTP_SCHEMES)

    @property
    def address(self) -> str:
        """Target of the URI: everything after the scheme."""
        return self.uri.split(":", 1)[1] if ":" in self.uri else ""

    def too_big_for(self, size: int) -> bool:
        """``True`` when a payload of ``size`` bytes exceeds the declared cap."""
        return bool(self.max_bytes) and size > int(self.max_bytes)


class TransportCandidate(BaseModel):
    """Connection descriptor for one delivery attempt.

    ``encryption`` is ``starttls`` (upgrade after connect), ``tls``
    (implicit TLS) or ``none``. Persistent candidates keep their SMTP
    connection open between messages.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 25
    encryption: Literal["starttls", "tls", "none"] = "starttls"
    timeout: float = 32.0
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    helo: Optional[str] = None
    persistent: bool = False

    @property
    def key(self) -> tuple:
        return (self.host, self.port, self.encryption, self.user, self.password, self.helo)

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}/{self.encryption}"


class DeliveryOutcome(str, Enum):
    """Classification of one delivery request."""

    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass
class DeliveryResult:
    """Outcome of :meth:`DeliveryEngine.deliver` with its log-worthy reason."""

    outcome: DeliveryOutcome
    reason: str = ""
    attempts: int = 0
    log_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome is DeliveryOutcome.SUCCESS

    @property
    def permanent(self) -> bool:
        return self.outcome is DeliveryOutcome.PERMANENT_FAILURE


@dataclass
class ReportPayload:
    """A compressed report to be wrapped in a MIME envelope per recipient."""

    compressed: bytes
    report: Report


@dataclass
class NoticePayload:
    """A pre-rendered message sent verbatim (too-big notifications)."""

    message: EmailMessage


@dataclass
class TransportContext:
    """What transport selection knows about the current delivery."""

    recipient: str
    report: Optional[Report] = None
    log_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def recipient_domain(self) -> str:
        return self.recipient.rpartition("@")[2].strip().lower()
