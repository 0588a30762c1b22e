"""
buildline — run logging

File: src/buildline/observability/logging.py

Purpose
- Write one JSON-lines log per command run under ``<log_dir>/<run_id>/``.
- Route structlog events from every stage into that same sink.

Functional requirements
- Emitting a record never blocks a build thread: records go through a bounded
  queue drained by a listener thread, and a full queue drops the record.
- Records carry the run id plus any correlation fields (pipeline, stage, step)
  bound with ``correlation_scope``.
- Secret-looking keys and inline credentials are masked unless redaction is
  turned off in ``[observability]``.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import os
import queue
import re
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final, cast

import structlog

REDACTED: Final[str] = "***REDACTED***"
CORRELATION_FIELDS: Final[tuple[str, ...]] = ("run_id", "pipeline", "stage", "step")

_SECRET_KEY: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|passw(or)?d|passphrase|api_?key|authorization|credential|cookie"
    r"|private_key"
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*"
    r"[^\s,;]+"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_URL_USERINFO: Final[re.Pattern[str]] = re.compile(r"(?i)\b(https?://)[^/\s:@]+:[^/\s@]+@")

# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_correlation: ContextVar[Mapping[str, str]] = ContextVar(
    "buildline_correlation", default=MappingProxyType({})
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one run's log sink."""

    run_id: str
    base_log_dir: Path | str = Path(".buildline/logs")
    logger_name: str = "buildline"
    level: int | str = "INFO"
    log_format: str = "json"
    queue_size: int = 4096
    log_filename: str = "buildline.jsonl"
    log_to_stdout: bool = False
    redact_secrets: bool = True


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Correlation lives in a contextvar of the emitting thread, not the listener's.
        record.correlation = get_correlation_context()
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _RunLogFormatter(logging.Formatter):
    def __init__(self, *, run_id: str, redact: bool, text: bool = False) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redact
        self._text = text

    def payload(self, record: logging.LogRecord) -> dict[str, Any]:
        timestamp = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "timestamp": timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": self._run_id,
        }
        payload.update(getattr(record, "correlation", None) or {})

        fields: dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            if key in CORRELATION_FIELDS and isinstance(value, str) and value.strip():
                payload[key] = value.strip()
                continue
            fields[key] = _jsonable(value)
        if fields:
            payload["fields"] = fields
        return default_log_redactor(payload) if self._redact else payload

    def format(self, record: logging.LogRecord) -> str:
        payload = self.payload(record)
        if not self._text:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

        fields = payload.pop("fields", {})
        parts = [
            payload.pop("timestamp"),
            f"{payload.pop('level'):<7}",
            payload.pop("logger"),
            payload.pop("message"),
        ]
        parts.extend(f"{key}={value}" for key, value in sorted(payload.items()))
        parts.extend(
            f"{key}={json.dumps(value, sort_keys=True, ensure_ascii=False)}"
            for key, value in sorted(fields.items())
        )
        return " ".join(parts)


class StructuredLoggingHandle:
    """Live log sink for one run; ``shutdown`` drains the queue and closes files."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        log_queue: queue.Queue[Any],
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def run_log_dir(self) -> Path:
        return self.log_path.parent

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.logger.removeHandler(self._queue_handler)
        self.flush(timeout_seconds=timeout_seconds)
        self._listener.stop()
        self._queue_handler.close()
        for sink in self._sinks:
            sink.close()


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = "buildline",
) -> StructuredLoggingHandle:
    """Open the run log described by an ``[observability]`` table and route structlog into it."""

    settings = dict(observability_config or {})
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=log_dir or str(settings.get("log_dir", ".buildline/logs")),
            logger_name=logger_name,
            level=str(settings.get("log_level", "INFO")),
            log_format=str(settings.get("log_format", "json")),
            log_to_stdout=bool(settings.get("log_to_stdout", False)),
            redact_secrets=bool(settings.get("redact_secrets", True)),
        )
    )
    configure_structlog()
    return handle


def configure_structlog() -> None:
    """Hand structlog events to stdlib logging.

    The event name becomes the record message and bound key/values become
    record extras, which the run log writes under ``fields``.
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start a queue-backed sink for ``config.run_id``, replacing any active one."""

    run_id = config.run_id.strip()
    if not run_id:
        raise ValueError("run_id must not be empty")
    if not config.log_filename or Path(config.log_filename).name != config.log_filename:
        raise ValueError("log_filename must be a plain file name")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    if config.log_format not in {"json", "text"}:
        raise ValueError(f"unsupported log format {config.log_format!r}")
    level = _parse_level(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / config.log_filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_sink = logging.FileHandler(log_path, encoding="utf-8")
    file_sink.setFormatter(_RunLogFormatter(run_id=run_id, redact=config.redact_secrets))
    sinks: list[logging.Handler] = [file_sink]
    if config.log_to_stdout:
        console = logging.StreamHandler()
        console.setFormatter(
            _RunLogFormatter(
                run_id=run_id,
                redact=config.redact_secrets,
                text=config.log_format == "text",
            )
        )
        sinks.append(console)
    for sink in sinks:
        sink.setLevel(level)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[Any] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    global _active, _atexit_registered
    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return handle


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Close ``handle`` (default: the active one) and clear it if it was active."""

    global _active
    with _active_lock:
        target = handle if handle is not None else _active
        if target is None:
            return
        if _active is target:
            _active = None
    target.shutdown(timeout_seconds=timeout_seconds)


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[dict[str, str]]:
    """Bind correlation fields for records emitted in this context; ``None`` unbinds."""

    bound = dict(_correlation.get())
    for key, value in fields.items():
        if value is None:
            bound.pop(key, None)
            continue
        if not value.strip():
            raise ValueError(f"correlation field {key!r} must not be empty")
        bound[key] = value.strip()
    token = _correlation.set(MappingProxyType(bound))
    try:
        yield dict(bound)
    finally:
        _correlation.reset(token)


def default_log_redactor(value: Any) -> Any:
    """Mask values under secret-looking keys and credentials embedded in strings."""

    return _redact(value, key=None)


def _redact(value: Any, *, key: str | None) -> Any:
    if key is not None and _SECRET_KEY.search(key):
        return REDACTED
    if isinstance(value, str):
        return _scrub(value)
    if isinstance(value, list):
        return [_redact(item, key=None) for item in value]
    if isinstance(value, dict):
        return {name: _redact(item, key=name) for name, item in value.items()}
    return value


def _scrub(text: str) -> str:
    text = _INLINE_SECRET.sub(lambda match: f"{match[1]}{match[2]}{REDACTED}", text)
    text = _BEARER.sub(f"Bearer {REDACTED}", text)
    return _URL_USERINFO.sub(lambda match: f"{match[1]}{REDACTED}@", text)


def _jsonable(value: object) -> Any:
    if value is None or isinstance(value, (str, int, bool)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=str)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return repr(value)


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    try:
        return logging.getLevelNamesMapping()[value.strip().upper()]
    except KeyError:
        raise ValueError(f"unsupported logging level {value!r}") from None


__all__ = [
    "CORRELATION_FIELDS",
    "REDACTED",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
