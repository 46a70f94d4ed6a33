"""Exceptions raised by the report sender."""

from __future__ import annotations

from typing import Optional


class FatalSenderError(RuntimeError):
    """Base for errors that must stop the whole run instead of a single report."""

    code = "fatal"


class MissingRecipientError(FatalSenderError):
    """Raised when a delivery is requested without a recipient address."""

    def __init__(self, message: str = "No recipient for email"):
        super().__init__(message)
        self.code = "missing_recipient"


class SigningKeyError(FatalSenderError):
    """Raised when signing was requested but the DKIM key cannot be loaded."""

    def __init__(self, message: str = "Could not load DKIM key"):
        super().__init__(message)
        self.code = "signing_key"


class SigningError(RuntimeError):
    """Raised when a message could not be signed with an already loaded key."""


class ReceiverParseError(ValueError):
    """Raised when a ``rua`` field cannot be turned into receiver descriptors."""


class SendError(Exception):
    """A single transport attempt failed.

    ``code`` carries the SMTP reply code when the remote answered, ``None``
    for connection level failures.
    """

    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"{code} {message}" if code else message)
        self.code = code
        self.message = message

    @property
    def permanent(self) -> bool:
        """``True`` for 5xx replies: the remote will never accept the message."""
        return self.code is not None and str(self.code).startswith("5")
