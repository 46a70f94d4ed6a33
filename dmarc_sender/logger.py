"""Logging utilities for the report sender.

Two kinds of output live here. Diagnostic messages go through plain
standard library loggers obtained with :func:`get_logger`; their handlers are
configured once by the entry point with ``logging.basicConfig()``.

Operational events (one per report, one per delivery attempt) are flat
key/value records rendered by :func:`format_record` and emitted by
:class:`OperationalLog` to the ``dmarc_sender.operational`` logger, which the
CLI routes to syslog when requested.

Example:
    >>> format_record({"id": "r1", "error": "a,b"})
    'error=a#044b, id=r1'
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from typing import Any, Mapping, Optional

from rich.console import Console

OPERATIONAL_LOGGER = "dmarc_sender.operational"
SYSLOG_IDENT = "dmarc_send_reports"
COMMA_SENTINEL = "#044"


def get_logger(name: str = "DmarcSender") -> logging.Logger:
    """Return a standard library logger bound to ``name``.

    Handlers and levels are left to the entry point.
    """
    return logging.getLogger(name)


def format_record(fields: Mapping[str, Any]) -> str:
    """Render ``fields`` as ``key=value`` pairs sorted by key.

    Line breaks inside values are folded into spaces and commas are replaced
    by :data:`COMMA_SENTINEL`, so each record stays on one line and can
    always be split back on ``", "``.
    """
    parts = []
    for key in sorted(fields):
        value = fields[key]
        text = "" if value is None else " ".join(str(value).splitlines())
        parts.append(f"{key}={text.replace(',', COMMA_SENTINEL)}")
    return ", ".join(parts)


class OperationalLog:
    """Emit structured operational records to the log sink and the console."""

    def __init__(
        self,
        *,
        enabled: int = 0,
        verbose: int = 1,
        logger: Optional[logging.Logger] = None,
        console: Optional[Console] = None,
    ):
        self.enabled = int(enabled or 0)
        self.verbose = int(verbose or 0)
        self.logger = logger or get_logger(OPERATIONAL_LOGGER)
        self.console = console or Console()

    @property
    def echo(self) -> bool:
        """Echo records on the console when verbosity was raised above the default."""
        return self.verbose > 1

    def record(self, fields: Mapping[str, Any], level: int = logging.INFO) -> Optional[str]:
        """Format and emit one record; return the rendered line when emitted."""
        if not self.enabled and not self.echo:
            return None
        line = format_record(fields)
        if self.enabled:
            self.logger.log(level, line)
        if self.echo:
            self.console.print(line, markup=False, highlight=False)
        return line


def configure_operational_sink(address: str | None = "/dev/log", logger_name: str = OPERATIONAL_LOGGER) -> logging.Handler:
    """Attach a handler for operational records and return it.

    ``address`` is a unix socket path or ``host:port`` for syslog; the value
    ``stderr`` installs a stream handler instead.
    """
    logger = get_logger(logger_name)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if not address or address == "stderr":
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(f"{SYSLOG_IDENT}[%(process)d]: %(message)s"))
    else:
        if ":" in address and not os.path.exists(address):
            host, _, port = address.rpartition(":")
            target: Any = (host, int(port))
        else:
            target = address
        handler = logging.handlers.SysLogHandler(
            address=target,
            facility=logging.handlers.SysLogHandler.LOG_MAIL,
        )
        handler.ident = f"{SYSLOG_IDENT}[{os.getpid()}]: "
    logger.addHandler(handler)
    return handler
