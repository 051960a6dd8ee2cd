"""Structured logging for calendarbot.

Plain ``logging.getLogger(__name__)`` loggers are routed through structlog's
``ProcessorFormatter``, so records from this package and from httpx share one
pipeline of processors. The console renders either ``text`` (structlog's dev
renderer) or ``json``; files under ``log_root`` are always JSON.

Every record is stamped with:
- ``run_id``: the pipeline run bound via :func:`set_run_context`
- ``trace_id`` / ``span_id``: the active OpenTelemetry span, zeroed when none
"""

from __future__ import annotations

import contextvars
import logging
import re
import sys
from pathlib import Path

import structlog
from opentelemetry import trace

_run_context: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "calendarbot_run_id", default=None
)


def set_run_context(run_id: str) -> contextvars.Token[str | None]:
    """Bind the pipeline run id for the current async context."""
    return _run_context.set(run_id)


def reset_run_context(token: contextvars.Token[str | None]) -> None:
    _run_context.reset(token)


def get_run_context() -> str | None:
    return _run_context.get()


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_run_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    event_dict["run_id"] = get_run_context()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Copy the active span's ids into the record (all zeros outside a span)."""
    span_context = trace.get_current_span().get_span_context()
    trace_id = span_context.trace_id if span_context.is_valid else 0
    span_id = span_context.span_id if span_context.is_valid else 0
    event_dict["trace_id"] = f"{trace_id:032x}"
    event_dict["span_id"] = f"{span_id:016x}"
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_run_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_REDACTION_PATTERNS = (
    (re.compile(r"(?i)\bBearer\s+[^\s,;\"']+"), "Bearer [REDACTED]"),
    (re.compile(r"(?i)\b(api_key|apikey)(['\"]?\s*[:=]\s*['\"]?)[^\s,;'\"]+"), r"\1\2[REDACTED]"),
)


def redact(message: str) -> str:
    """Mask bearer tokens and ``api_key`` values in *message*."""
    for pattern, replacement in _REDACTION_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class CredentialRedactionFilter(logging.Filter):
    """Rewrites records whose rendered message carries a credential."""

    def filter(self, record: logging.LogRecord) -> bool:
        rendered = record.getMessage()
        scrubbed = redact(rendered)
        if scrubbed != rendered:
            record.msg = scrubbed
            record.args = ()
        return True


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

# Transport loggers; routed to their own handlers by configure_logging().
_NOISE_LOGGERS = ("httpx", "httpcore")

_APP_LOG_NAME = "calendarbot.log"
_HTTP_LOG_NAME = "http.log"


def _structured_formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def _attach(
    handler: logging.Handler, formatter: logging.Formatter, level: int = logging.NOTSET
) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.setLevel(level)
    handler.addFilter(CredentialRedactionFilter())
    return handler


def _detach_all(target: logging.Logger) -> None:
    for existing in target.handlers[:]:
        target.removeHandler(existing)
        existing.close()


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install structured handlers on the root logger.

    Handlers from a previous call are removed and closed, so reconfiguring
    never leaves a stale file open. The transport loggers (httpx, httpcore)
    do not propagate: they print WARNING and above to the console and, when
    ``log_root`` is set, write every record down to DEBUG into ``http.log``.

    Parameters
    ----------
    level:
        Root log level name, case-insensitive.
    fmt:
        Console format: ``"text"`` or ``"json"``.
    log_root:
        When given, also write ``calendarbot.log`` and ``http.log`` (JSON)
        into this directory, creating it if needed.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        console_renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        console_renderer = structlog.dev.ConsoleRenderer()
    console_formatter = _structured_formatter(console_renderer, pre_chain)

    root = logging.getLogger()
    _detach_all(root)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.addHandler(_attach(logging.StreamHandler(sys.stderr), console_formatter))

    transport_handlers = [
        _attach(logging.StreamHandler(sys.stderr), console_formatter, logging.WARNING)
    ]

    if log_root is not None:
        directory = Path(log_root)
        directory.mkdir(parents=True, exist_ok=True)
        json_formatter = _structured_formatter(
            structlog.processors.JSONRenderer(), _pre_chain("iso")
        )
        root.addHandler(
            _attach(logging.FileHandler(directory / _APP_LOG_NAME), json_formatter, logging.DEBUG)
        )
        transport_handlers.append(
            _attach(logging.FileHandler(directory / _HTTP_LOG_NAME), json_formatter, logging.DEBUG)
        )

    for name in _NOISE_LOGGERS:
        transport = logging.getLogger(name)
        _detach_all(transport)
        transport.setLevel(logging.DEBUG if log_root is not None else logging.WARNING)
        transport.propagate = False
        for handler in transport_handlers:
            transport.addHandler(handler)

    # Loggers obtained from structlog.get_logger() go through the same chain.
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
