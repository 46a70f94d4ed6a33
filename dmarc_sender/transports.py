"""Selection of the transports a message is offered to, in order."""

from __future__ import annotations

import importlib
import inspect
import socket
from typing import Awaitable, Callable, List, Optional, Sequence, Union

import dns.asyncresolver
import dns.resolver

from .config_loader import SMTPSettings
from .logger import get_logger
from .models import TransportCandidate, TransportContext

SMTP_PORT = 25
SUBMISSION_PORT = 587
TRANSPORT_TIMEOUT = 32.0

TransportSelectFn = Callable[
    [TransportContext],
    Union[Sequence[TransportCandidate], Awaitable[Sequence[TransportCandidate]]],
]
MXLookupFn = Callable[[str], Awaitable[List[str]]]


async def lookup_mx(domain: str, lifetime: float = 10.0) -> List[str]:
    """Return the mail exchangers of ``domain`` ordered by preference.

    A domain without MX records is its own exchanger; a domain that does not
    exist or publishes a null MX has none.
    """
    try:
        answer = await dns.asyncresolver.resolve(domain, "MX", lifetime=lifetime)
    except dns.resolver.NoAnswer:
        return [domain]
    except dns.resolver.NXDOMAIN:
        return []
    records = sorted(answer, key=lambda record: record.preference)
    hosts = [record.exchange.to_text(omit_final_dot=True) for record in records]
    return [host for host in hosts if host and host != "."]


def import_select_fn(target: str) -> TransportSelectFn:
    """Load a selection function from ``package.module:attribute``.

    A class is instantiated without arguments and the instance is used.
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Invalid transports reference '{target}', expected 'module:attribute'")
    module = importlib.import_module(module_name)
    select_fn = getattr(module, attribute)
    if inspect.isclass(select_fn):
        select_fn = select_fn()
    if not callable(select_fn):
        raise ValueError(f"Transports reference '{target}' is not callable")
    return select_fn


class TransportSelector:
    """Decide which transports to try for a delivery.

    Resolution order, first match wins: a registered selection function, the
    configured smarthost, then direct delivery to the first MX of the
    recipient domain (STARTTLS first, plaintext as fallback).
    """

    def __init__(
        self,
        settings: SMTPSettings,
        *,
        mx_lookup: Optional[MXLookupFn] = None,
        logger=None,
    ):
        self.settings = settings
        self.logger = logger or get_logger("DmarcSender.transports")
        self._mx_lookup = mx_lookup or lookup_mx
        self._select_fn: Optional[TransportSelectFn] = None
        self._smarthost: Optional[TransportCandidate] = None
        self._helo: Optional[str] = settings.helo

    def register(self, select_fn: Optional[TransportSelectFn]) -> None:
        """Install (or with ``None`` remove) a custom selection function."""
        self._select_fn = select_fn

    @property
    def helo(self) -> str:
        if not self._helo:
            self._helo = socket.getfqdn()
        return self._helo

    def smarthost_candidate(self) -> TransportCandidate:
        """Return the smarthost transport, building it on first use."""
        if self._smarthost is None:
            self._smarthost = TransportCandidate(
                host=self.settings.smarthost,
                port=SUBMISSION_PORT,
                encryption="starttls",
                timeout=TRANSPORT_TIMEOUT,
                user=self.settings.smartuser or None,
                password=self.settings.smartpass or None,
                helo=self.helo,
                persistent=True,
            )
        return self._smarthost

    async def select(self, context: TransportContext) -> List[TransportCandidate]:
        """Return the candidates to try, in order, for ``context``."""
        if self._select_fn is not None:
            result = self._select_fn(context)
            if inspect.isawaitable(result):
                result = await result
            return list(result or [])

        if self.settings.smarthost:
            return [self.smarthost_candidate()]

        hosts = await self._mx_lookup(context.recipient_domain)
        if not hosts:
            self.logger.warning("No mail exchanger found for %s", context.recipient_domain)
            return []
        # TODO: fall back to the remaining MX hosts when the first one is unreachable.
        first_host = hosts[0]
        context.log_data["smtp_host"] = first_host
        return [
            TransportCandidate(
                host=first_host,
                port=SMTP_PORT,
                encryption=encryption,
                timeout=TRANSPORT_TIMEOUT,
                helo=self.helo,
            )
            for encryption in ("starttls", "none")
        ]
