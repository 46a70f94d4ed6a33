"""SMTP connections for transport candidates.

Single-use candidates get a fresh connection per message; persistent ones
(the smarthost) keep theirs in the pool while it stays fresh and alive.
"""

import asyncio
import time
from typing import Dict, Tuple

import aiosmtplib

from .models import TransportCandidate


class SMTPPool:
    """Open, reuse and close SMTP connections on behalf of the delivery engine."""

    def __init__(self, ttl: int = 300):
        """Create a pool whose persistent connections live at most ``ttl`` seconds."""
        self.ttl = ttl
        self.pool: Dict[tuple, Tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, candidate: TransportCandidate) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        smtp = aiosmtplib.SMTP(
            hostname=candidate.host,
            port=candidate.port,
            use_tls=candidate.encryption == "tls",
            start_tls=candidate.encryption == "starttls",
            timeout=candidate.timeout,
            local_hostname=candidate.helo,
        )

        async def _do_connect():
            await smtp.connect()
            if candidate.user and candidate.password:
                await smtp.login(candidate.user, candidate.password)

        # aiosmtplib applies the timeout per command; bound the whole handshake too
        try:
            await asyncio.wait_for(_do_connect(), timeout=candidate.timeout + 5.0)
        except BaseException:
            smtp.close()
            raise
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    @staticmethod
    async def _close(smtp: aiosmtplib.SMTP) -> None:
        """Say goodbye politely, falling back to dropping the socket."""
        try:
            if smtp.is_connected:
                await smtp.quit()
        except Exception:
            smtp.close()

    async def get_connection(self, candidate: TransportCandidate) -> aiosmtplib.SMTP:
        """Return a connection for ``candidate``, reusing the pooled one when possible."""
        if not candidate.persistent:
            return await self._connect(candidate)

        key = candidate.key
        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[key] = (smtp, time.time())
                return smtp
            await self._close(smtp)

        smtp = await self._connect(candidate)
        async with self.lock:
            self.pool[key] = (smtp, time.time())
        return smtp

    async def send(self, candidate: TransportCandidate, sender: str, recipient: str, body: bytes) -> str:
        """Deliver ``body`` to ``recipient`` and return the server's final reply."""
        smtp = await self.get_connection(candidate)
        try:
            _, response = await smtp.sendmail(sender, [recipient], body, timeout=candidate.timeout)
        except BaseException:
            # the connection state is unknown after a failed transaction
            if candidate.persistent:
                async with self.lock:
                    self.pool.pop(candidate.key, None)
            smtp.close()
            raise
        if not candidate.persistent:
            await self._close(smtp)
        return response

    async def close_all(self) -> None:
        """Close every pooled connection (end of run)."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in entries:
            await self._close(smtp)
