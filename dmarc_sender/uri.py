"""Parse ``rua`` tag values into receiver descriptors.

A ``rua`` value is a comma separated list of URIs, each optionally followed by
``!`` and a maximum report size with an optional ``k``, ``m``, ``g`` or ``t``
multiplier (powers of 1024)::

    mailto:dmarc@example.com!10m, https://reports.example.net/dmarc
"""

from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import unquote

from .errors import ReceiverParseError
from .logger import get_logger
from .models import ReceiverDescriptor

SUPPORTED_SCHEMES = ("mailto", "http", "https")
SIZE_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}

_SIZE_RE = re.compile(r"^(\d+)([kmgt]?)$", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.-]*):(.+)$", re.IGNORECASE)

logger = get_logger("DmarcSender.uri")


def parse_size(value: str) -> int:
    """Convert a size limit such as ``10m`` into bytes."""
    match = _SIZE_RE.match(value.strip())
    if not match:
        raise ReceiverParseError(f"invalid size limit '{value}'")
    number, unit = match.groups()
    return int(number) * SIZE_UNITS[unit.lower()]


def parse_uri(item: str) -> Optional[ReceiverDescriptor]:
    """Parse a single ``uri[!size]`` element.

    Returns ``None`` for syntactically valid URIs whose scheme cannot be used
    for report delivery.
    """
    uri, bang, size = item.strip().partition("!")
    uri = uri.strip()
    match = _SCHEME_RE.match(uri)
    if not match:
        raise ReceiverParseError(f"invalid URI '{item.strip()}'")
    scheme, rest = match.groups()
    scheme = scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        logger.warning("Ignoring rua URI with unsupported scheme: %s", uri)
        return None
    if scheme == "mailto":
        address = unquote(rest.split("?", 1)[0]).strip()
        if "@" not in address or address.startswith("@") or address.endswith("@"):
            raise ReceiverParseError(f"invalid mailto address in '{uri}'")
        uri = f"mailto:{address}"
    else:
        uri = f"{scheme}:{rest}"
    max_bytes = parse_size(size) if bang else None
    return ReceiverDescriptor(uri=uri, max_bytes=max_bytes)


def parse_rua(rua: Optional[str]) -> List[ReceiverDescriptor]:
    """Return the receivers named by ``rua`` in declaration order.

    Entries that cannot be parsed are skipped with a warning so the remaining
    receivers still get the report.
    """
    if not rua or not rua.strip():
        return []
    receivers: List[ReceiverDescriptor] = []
    for item in rua.split(","):
        if not item.strip():
            continue
        try:
            receiver = parse_uri(item)
        except ReceiverParseError as exc:
            logger.warning("Ignoring malformed rua entry: %s", exc)
            continue
        if receiver is not None:
            receivers.append(receiver)
    return receivers
