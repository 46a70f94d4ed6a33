"""Configuration loading for the report sender.

Settings come from an INI file (default ``dmarc-sender.ini``) with
environment variables as fallbacks, then get validated into pydantic models.

Environment variables (all prefixed with DMARC_SENDER_):
  DMARC_SENDER_CONFIG - Path to the INI file
  DMARC_SENDER_DB_PATH - Report queue database path
  DMARC_SENDER_ORG_EMAIL - Sender address for reports
  DMARC_SENDER_SMARTHOST / _SMARTUSER / _SMARTPASS - Outbound relay
  DMARC_SENDER_CC - Courtesy copy address
  DMARC_SENDER_DKIM_KEYFILE - Private key used for DKIM signing
  DMARC_SENDER_DELAY / _BATCH / _TIMEOUT - Run loop throttling
  DMARC_SENDER_SYSLOG_ADDRESS - Syslog socket or host:port
  DMARC_SENDER_LOG_LEVEL - Diagnostic log level

Config file sections/keys:
  [organization] email, org_name, domain
  [smtp] smarthost, smartuser, smartpass, cc, transports, helo
  [report_sign] keyfile, algorithm, method, domain, selector
  [storage] db_path
  [send] delay, batch, timeout, syslog, verbose
  [logging] syslog_address, level
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Annotated, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .logger import get_logger

DEFAULT_CONFIG_PATH = "dmarc-sender.ini"
CC_PLACEHOLDER = "set.this@for.a.while.example.com"
ENV_PREFIX = "DMARC_SENDER_"

logger = get_logger("DmarcSender.config")


class OrganizationSettings(BaseModel):
    """Identity of the organization sending the reports."""

    model_config = ConfigDict(extra="forbid")

    email: str = ""
    org_name: str = ""
    domain: str = ""


class SMTPSettings(BaseModel):
    """Outbound mail settings.

    Attributes:
        smarthost: Relay used for every message instead of direct MX delivery.
        smartuser: SMTP AUTH user for the smarthost.
        smartpass: SMTP AUTH password for the smarthost.
        cc: Address receiving one courtesy copy of each report.
        transports: ``module:attribute`` of a custom transport selection callable.
        helo: Name announced in EHLO/HELO.
    """

    model_config = ConfigDict(extra="forbid")

    smarthost: Optional[str] = None
    smartuser: Optional[str] = None
    smartpass: Optional[str] = Field(default=None, repr=False)
    cc: Optional[str] = None
    transports: Optional[str] = None
    helo: Optional[str] = None

    @property
    def cc_enabled(self) -> bool:
        return bool(self.cc) and self.cc != CC_PLACEHOLDER


class SigningSettings(BaseModel):
    """DKIM signing parameters; signing is active when ``keyfile`` is set."""

    model_config = ConfigDict(extra="forbid")

    keyfile: Optional[str] = None
    algorithm: str = "rsa-sha256"
    method: str = "relaxed"
    domain: Optional[str] = None
    selector: Optional[str] = None


class SendSettings(BaseModel):
    """Run loop options, also exposed as command line flags."""

    model_config = ConfigDict(extra="forbid")

    delay: Annotated[int, Field(ge=0)] = 5
    batch: Annotated[int, Field(ge=1)] = 1
    timeout: Annotated[int, Field(ge=1)] = 120
    syslog: Annotated[int, Field(ge=0)] = 0
    verbose: Annotated[int, Field(ge=0)] = 1


class Settings(BaseModel):
    """Complete sender configuration."""

    model_config = ConfigDict(extra="forbid")

    organization: OrganizationSettings = Field(default_factory=OrganizationSettings)
    smtp: SMTPSettings = Field(default_factory=SMTPSettings)
    report_sign: SigningSettings = Field(default_factory=SigningSettings)
    send: SendSettings = Field(default_factory=SendSettings)
    db_path: str = "dmarc_reports.db"
    syslog_address: str = "/dev/log"
    log_level: str = "INFO"


def load_settings(
    config_path: str | Path | None = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from ``config_path`` (or ``DMARC_SENDER_CONFIG``).

    A missing file is not an error: defaults and environment variables apply.

    Raises:
        ValueError: If a value fails validation.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH))
    parser = configparser.ConfigParser(interpolation=None)
    if path.exists():
        parser.read(path)
        logger.debug("Loaded configuration from %s", path)
    else:
        logger.debug("Configuration file %s not found, using defaults", path)

    def get(section: str, option: str, env_name: str | None = None) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or None
        if env_name:
            value = env.get(f"{ENV_PREFIX}{env_name}")
            if value is not None:
                return value.strip() or None
        return None

    def section(name: str, options: dict[str, str | None]) -> dict[str, str]:
        values = {}
        for option, env_name in options.items():
            value = get(name, option, env_name)
            if value is not None:
                values[option] = value
        return values

    raw = {
        "organization": section("organization", {"email": "ORG_EMAIL", "org_name": "ORG_NAME", "domain": "ORG_DOMAIN"}),
        "smtp": section(
            "smtp",
            {
                "smarthost": "SMARTHOST",
                "smartuser": "SMARTUSER",
                "smartpass": "SMARTPASS",
                "cc": "CC",
                "transports": "TRANSPORTS",
                "helo": "HELO",
            },
        ),
        "report_sign": section(
            "report_sign",
            {
                "keyfile": "DKIM_KEYFILE",
                "algorithm": "DKIM_ALGORITHM",
                "method": "DKIM_METHOD",
                "domain": "DKIM_DOMAIN",
                "selector": "DKIM_SELECTOR",
            },
        ),
        "send": section(
            "send",
            {"delay": "DELAY", "batch": "BATCH", "timeout": "TIMEOUT", "syslog": "SYSLOG", "verbose": "VERBOSE"},
        ),
    }
    if db_path := get("storage", "db_path", "DB_PATH"):
        raw["db_path"] = os.path.expanduser(db_path)
    if syslog_address := get("logging", "syslog_address", "SYSLOG_ADDRESS"):
        raw["syslog_address"] = syslog_address
    if level := get("logging", "level", "LOG_LEVEL"):
        raw["log_level"] = level.upper()

    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration in {path}: {exc}") from exc
