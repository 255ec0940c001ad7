"""Structured JSON logging for the loyalty service.

Operations and workers scope identifiers with :func:`log_context`; every line
emitted inside the block carries them under ``context`` so a single account,
outbox entry or worker can be followed across services and retries.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, TextIO

from loguru import logger
from opentelemetry import trace

# Keys lifted out of ``extra`` into the ``context`` object of each line.
CONTEXT_KEYS = (
    "unit_of_work",
    "worker_id",
    "entry_id",
    "operation",
    "resource_id",
    "account_id",
    "redemption_id",
    "referral_id",
    "gift_link_id",
    "benefit_id",
)

_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
}


class InterceptHandler(logging.Handler):
    """Forward stdlib records (uvicorn, sqlalchemy, httpx) to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging's own frames so Loguru reports the original caller.
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(logger_name=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach identifiers to every log line emitted inside the block.

    ``None`` values are dropped; everything else is stored as text. Nested
    blocks add to (and may override) the enclosing context.
    """

    bound = {key: str(value) for key, value in fields.items() if value is not None}
    with logger.contextualize(**bound):
        yield


def render_record(record: Dict[str, Any], metadata: Dict[str, str]) -> Dict[str, Any]:
    extra = dict(record["extra"])
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": extra.pop("logger_name", None) or record["name"],
        "service": metadata["service_name"],
        "environment": metadata["environment"],
        "version": metadata["version"],
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    context = {key: extra.pop(key) for key in CONTEXT_KEYS if key in extra}
    if context:
        payload["context"] = context
    if extra:
        payload["fields"] = extra

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    return payload


def _json_sink(metadata: Dict[str, str], stream: TextIO) -> Callable[[Any], None]:
    def _write(message: Any) -> None:
        stream.write(json.dumps(render_record(message.record, metadata), default=str) + "\n")
        stream.flush()

    return _write


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Replace Loguru's sinks with one JSON sink and route stdlib logging to it."""

    logger.remove()
    metadata = {"service_name": service_name, "environment": environment, "version": version}
    logger.add(
        _json_sink(metadata, stream or sys.stdout),
        level=level.upper(),
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


__all__ = ["CONTEXT_KEYS", "InterceptHandler", "configure_logging", "log_context", "render_record"]
