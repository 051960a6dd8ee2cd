"""calendarbot configuration loading and validation.

Reads calendarbot.toml from a config directory, resolves ``${VAR}``
references from the environment, and returns a validated
CalendarBotConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calendarbot.completion import (
    DEFAULT_COMPLETION_ENDPOINT,
    DEFAULT_COMPLETION_USER,
    DEFAULT_TIMEOUT_SECONDS,
)

CONFIG_FILE_NAME = "calendarbot.toml"

# Matches ${VAR_NAME}; names are alphanumeric plus underscore.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class CompletionConfig:
    """Completion service settings from the [completion] section."""

    api_key: str
    endpoint: str = DEFAULT_COMPLETION_ENDPOINT
    user: str = DEFAULT_COMPLETION_USER
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


@dataclass
class FormattingConfig:
    """Display settings from the [formatting] section."""

    timezone: str = "UTC"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass
class CalendarBotConfig:
    """Parsed and validated configuration."""

    completion: CompletionConfig
    formatting: FormattingConfig = field(default_factory=FormattingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Substitute ``${VAR_NAME}`` references throughout a parsed TOML tree.

    Tables and arrays are walked; strings are substituted; other scalars pass
    through untouched.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, str):
        return _resolve_string(value)
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}
    return value


def _resolve_string(text: str) -> str:
    """Substitute every reference in *text*, failing once for all unset names."""
    names = _ENV_VAR_PATTERN.findall(text)
    unset = [name for name in dict.fromkeys(names) if name not in os.environ]
    if unset:
        # Raw value omitted: it may hold a secret.
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(unset)}"
        )
    return _ENV_VAR_PATTERN.sub(lambda m: os.environ[m.group(1)], text)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _parse_completion(section: dict[str, Any]) -> CompletionConfig:
    api_key = section.get("api_key")
    if not isinstance(api_key, str) or not api_key.strip():
        raise ConfigError("Missing required field: completion.api_key")

    endpoint = str(section.get("endpoint", DEFAULT_COMPLETION_ENDPOINT)).strip()
    if not endpoint.startswith(("http://", "https://")):
        raise ConfigError(f"Invalid completion.endpoint: {endpoint!r}. Expected an http(s) URL.")

    user = str(section.get("user", DEFAULT_COMPLETION_USER)).strip()
    if not user:
        raise ConfigError("completion.user must be a non-empty string")

    raw_timeout = section.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
    try:
        timeout_seconds = float(raw_timeout)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid completion.timeout_seconds: {raw_timeout!r}") from exc
    if timeout_seconds <= 0:
        raise ConfigError(
            f"Invalid completion.timeout_seconds: {raw_timeout!r}. Must be a positive number."
        )

    return CompletionConfig(
        api_key=api_key.strip(),
        endpoint=endpoint,
        user=user,
        timeout_seconds=timeout_seconds,
    )


def _parse_formatting(section: dict[str, Any]) -> FormattingConfig:
    timezone = str(section.get("timezone", "UTC")).strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid formatting.timezone: {timezone!r}") from exc
    return FormattingConfig(timezone=timezone)


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def load_config(config_dir: Path) -> CalendarBotConfig:
    """Load and validate calendarbot.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    path = config_dir / CONFIG_FILE_NAME
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with path.open("rb") as fh:
            raw = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    data = resolve_env_vars(raw)
    return CalendarBotConfig(
        completion=_parse_completion(_section(data, "completion")),
        formatting=_parse_formatting(_section(data, "formatting")),
        logging=_parse_logging(_section(data, "logging")),
    )
