"""DKIM signing of outgoing messages."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Tuple

import dkim
from dkim.crypto import UnparsableKeyError, parse_pem_private_key

from .config_loader import SigningSettings
from .errors import SigningError, SigningKeyError
from .logger import OperationalLog, get_logger

_NEWLINE_RE = re.compile(rb"\r?\n")


def normalise_newlines(body: bytes) -> bytes:
    """Convert every line ending to CRLF."""
    return _NEWLINE_RE.sub(b"\r\n", body)


def canonicalization(method: str) -> Tuple[bytes, bytes]:
    """Split a ``header/body`` method; a single value applies to headers only."""
    header, _, body = (method or "relaxed").partition("/")
    return header.strip().encode(), (body.strip() or "simple").encode()


class DKIMSigner:
    """Sign messages with a key loaded once and kept for the signer's lifetime."""

    def __init__(self, settings: SigningSettings, oplog: Optional[OperationalLog] = None, logger=None):
        self.settings = settings
        self.oplog = oplog or OperationalLog()
        self.logger = logger or get_logger("DmarcSender.signer")
        self._key: Optional[bytes] = None
        self.load_count = 0

    @property
    def enabled(self) -> bool:
        """``True`` when a key file is configured."""
        return bool(self.settings.keyfile)

    def get_key(self) -> Optional[bytes]:
        """Return the private key, loading it on first use.

        Raises:
            SigningKeyError: If the key file cannot be read or parsed.
        """
        if self._key is not None:
            return self._key
        if not self.enabled:
            return None
        path = Path(self.settings.keyfile).expanduser()
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise SigningKeyError(f"Could not load DKIM key {path}: {exc}") from exc
        if not data.strip():
            raise SigningKeyError(f"Could not load DKIM key {path}: file is empty")
        if self.settings.algorithm.lower().startswith("rsa"):
            try:
                parse_pem_private_key(data)
            except UnparsableKeyError as exc:
                raise SigningKeyError(f"Could not load DKIM key {path}: {exc}") from exc
        self._key = data
        self.load_count += 1
        self.logger.debug("DKIM key loaded from %s", path)
        self.oplog.record({"info": "DKIM signing key loaded"})
        return self._key

    def sign(self, body: bytes) -> bytes:
        """Return ``body`` with CRLF line endings and a DKIM-Signature header prepended.

        Raises:
            SigningKeyError: If the key cannot be loaded (fatal).
            SigningError: If signing this body failed; the key stays loaded.
        """
        key = self.get_key()
        if key is None:
            return body
        if not self.settings.domain or not self.settings.selector:
            raise SigningError("DKIM domain and selector must be configured")
        normalised = normalise_newlines(body)
        try:
            signature = dkim.sign(
                normalised,
                self.settings.selector.encode(),
                self.settings.domain.encode(),
                key,
                canonicalize=canonicalization(self.settings.method),
                signature_algorithm=self.settings.algorithm.encode(),
                linesep=b"\r\n",
            )
        except (dkim.DKIMException, ValueError, TypeError) as exc:
            raise SigningError(str(exc)) from exc
        return signature + normalised
