"""Relay configuration.

Settings are pydantic-settings models, so every field can also come from an
environment variable.  The TOML config file is the primary source: values
found in the file are passed as init arguments and win over the
environment, which is useful for keeping the password out of the file
(``MAIL_PASSWORD``).
"""

from __future__ import annotations

from typing import Any

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

from .persistence import ConfigFile


class MailConfig(BaseSettings):
    """IMAP and SMTP server settings for the list mailbox."""

    model_config = {"env_prefix": "MAIL_"}

    imap_host: str = Field(description="IMAP server hostname")
    imap_port: int = Field(default=993, description="IMAP server port")
    imap_ssl: bool = Field(default=True, description="Use an implicit-TLS IMAP connection")
    mailbox: str = Field(default="INBOX", description="Mailbox to watch")
    smtp_host: str = Field(description="SMTP server hostname")
    smtp_port: int = Field(default=587, description="SMTP server port")
    smtp_tls: bool = Field(default=False, description="Use an implicit-TLS SMTP connection")
    smtp_start_tls: bool | None = Field(
        default=None,
        description="Force STARTTLS on/off; None upgrades when the server offers it",
    )
    address: str = Field(description="List address, used as From and envelope sender")
    user: str = Field(description="Login username for IMAP and SMTP")
    password: SecretStr = Field(description="Login password for IMAP and SMTP")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Network timeout")


class ListConfig(BaseSettings):
    """Mailing list behaviour and membership."""

    model_config = {"env_prefix": "LIST_"}

    interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between polls; also the IDLE fallback timeout",
    )
    recipients: list[str] = Field(default_factory=list, description="Subscribed addresses")
    admins: list[str] = Field(default_factory=list, description="Addresses allowed to *add")
    fetch_workers: int = Field(
        default=10,
        ge=1,
        description="Upper bound on concurrent per-message header fetches",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=5, ge=1, description="Maximum attempts per operation")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=60.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class RelayConfig(BaseSettings):
    """Root configuration for a relay process."""

    model_config = {"env_prefix": "RELAY_"}

    health_port: int = Field(
        default=8080,
        description="Port for the /health and /ready endpoints (0 disables)",
    )
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")
    reconnect: bool = Field(
        default=True,
        description="Reconnect after the mailbox connection drops",
    )

    mail: MailConfig
    list: ListConfig = Field(default_factory=ListConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @classmethod
    def from_file(cls, config_file: ConfigFile) -> RelayConfig:
        """Build the config from a loaded TOML document.

        The file uses camelCase keys (``imapHost``, ``pass``); they are
        mapped onto the snake_case fields here.  Unknown keys are ignored.
        """
        relay = _translate(config_file.section("relay"), _RELAY_KEYS)
        return cls(
            **relay,
            mail=MailConfig(**_translate(config_file.section("mail"), _MAIL_KEYS)),
            list=ListConfig(**_translate(config_file.section("list"), _LIST_KEYS)),
            retry=RetryConfig(**_translate(config_file.section("retry"), _RETRY_KEYS)),
        )


_MAIL_KEYS = {
    "imapHost": "imap_host",
    "imapPort": "imap_port",
    "imapSsl": "imap_ssl",
    "mailbox": "mailbox",
    "smtpHost": "smtp_host",
    "smtpPort": "smtp_port",
    "smtpTls": "smtp_tls",
    "smtpStartTls": "smtp_start_tls",
    "address": "address",
    "user": "user",
    "pass": "password",
    "timeout": "timeout_seconds",
}
_LIST_KEYS = {
    "interval": "interval",
    "recipients": "recipients",
    "admins": "admins",
    "fetchWorkers": "fetch_workers",
}
_RETRY_KEYS = {
    "maxAttempts": "max_attempts",
    "initialWait": "initial_wait_seconds",
    "maxWait": "max_wait_seconds",
    "multiplier": "multiplier",
}
_RELAY_KEYS = {
    "healthPort": "health_port",
    "logLevel": "log_level",
    "logJson": "log_json",
    "reconnect": "reconnect",
}


def _translate(section: dict[str, Any], keys: dict[str, str]) -> dict[str, Any]:
    return {keys[key]: value for key, value in section.items() if key in keys}
