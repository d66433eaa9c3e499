"""
VeilKYC Observability

Structured logging and correlation for every pipeline component.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Pipeline Components                   │
    │  logger.info("msg", protected_data=addr)                 │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │              KycLogger (bound to a LogContext)           │
    │  Correlation IDs, layer, redaction of identity fields    │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                       Handlers                           │
    │  StructuredHandler (stderr) │ LogBuffer (bounded ring)   │
    └─────────────────────────────────────────────────────────┘

There is no module-level mutable logger. A ``LogContext`` is created once per
process (or per test) and handed to each component, which derives its own
``KycLogger`` from it.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Deque, Dict, List, Optional, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

# Identity fields that must never reach a log sink in the clear.
REDACTED_FIELDS = frozenset({
    "documentNumber",
    "document_number",
    "fullName",
    "full_name",
    "dateOfBirth",
    "date_of_birth",
    "expiryDate",
    "expiry_date",
    "documentData",
})

DEFAULT_BUFFER_SIZE = 100


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class PipelineLayer(Enum):
    """Pipeline layers for categorization."""
    COMMITMENT = "commitment"
    PROOF = "proof"
    VERIFIER = "verifier"
    CONFIDENTIAL = "confidential"
    WORKER = "worker"
    ENCLAVE = "enclave"
    ORCHESTRATOR = "orchestrator"
    LEDGER = "ledger"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        ctx = " ".join(f"{k}={v}" for k, v in self.context.items())
        head = f"[{self.level.upper()}] {self.layer or self.logger}: {self.message}"
        return f"{head} {ctx}".rstrip()


def redact(context: Dict[str, Any]) -> Dict[str, Any]:
    """Replace identity values with a fixed marker, recursively."""
    out: Dict[str, Any] = {}
    for key, value in context.items():
        if key in REDACTED_FIELDS:
            out[key] = "[redacted]"
        elif isinstance(value, dict):
            out[key] = redact(value)
        else:
            out[key] = value
    return out


def _event_from_record(record: logging.LogRecord) -> LogEvent:
    event = LogEvent(
        timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        level=record.levelname.lower(),
        logger=record.name,
        message=record.getMessage(),
        correlation_id=getattr(record, "correlation_id", "") or correlation_id_var.get(),
        layer=getattr(record, "layer", ""),
        operation=getattr(record, "operation", ""),
        duration_ms=getattr(record, "duration_ms", None),
        error_code=getattr(record, "error_code", ""),
        context=redact(getattr(record, "context", {}) or {}),
    )
    if record.exc_info:
        event.exception = "".join(traceback.format_exception(*record.exc_info))
    return event


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON (or text) lines."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream or sys.stderr
        self.fmt = fmt

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = _event_from_record(record)
            line = event.to_json() if self.fmt == "json" else event.to_text()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class LogBuffer(logging.Handler):
    """
    Bounded in-memory ring buffer of log events.

    Holds at most ``max_entries`` events; appending past the bound evicts
    the oldest entry. Persisting the buffer is the caller's concern.
    """

    def __init__(self, max_entries: int = DEFAULT_BUFFER_SIZE):
        super().__init__()
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._events: Deque[LogEvent] = deque(maxlen=max_entries)
        self._buffer_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = _event_from_record(record)
        except Exception:
            self.handleError(record)
            return
        with self._buffer_lock:
            self._events.append(event)

    def entries(self) -> List[LogEvent]:
        with self._buffer_lock:
            return list(self._events)

    def clear(self) -> None:
        with self._buffer_lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._buffer_lock:
            return len(self._events)


class LogContext:
    """
    Process-scoped logging state handed to each component.

    Owns the handlers (stream + ring buffer) and the level, so two contexts
    never share buffered entries.
    """

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        fmt: str = "json",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        stream: Any = None,
        namespace: Optional[str] = None,
    ):
        self.level = level
        self.fmt = fmt
        self.buffer = LogBuffer(buffer_size)
        self.namespace = namespace or f"veilkyc.{uuid.uuid4().hex[:8]}"
        self._handlers: List[logging.Handler] = [
            StructuredHandler(stream=stream, fmt=fmt),
            self.buffer,
        ]
        self._loggers: List[logging.Logger] = []

    @classmethod
    def from_config(cls, config: Any, stream: Any = None) -> "LogContext":
        """Build a context from ``VeilKycConfig.observability``."""
        obs = config.observability
        return cls(
            level=LogLevel(obs.log_level.get()),
            fmt=obs.log_format.get(),
            buffer_size=obs.buffer_size.get(),
            stream=stream,
        )

    def add_handler(self, handler: logging.Handler) -> None:
        self._handlers.append(handler)
        for std_logger in self._loggers:
            std_logger.addHandler(handler)

    def remove_handler(self, handler: logging.Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)
        for std_logger in self._loggers:
            std_logger.removeHandler(handler)

    def get_logger(self, name: str, layer: PipelineLayer) -> "KycLogger":
        return KycLogger(name, layer, self)

    def _attach(self, std_logger: logging.Logger) -> None:
        std_logger.setLevel(getattr(logging, self.level.value.upper()))
        std_logger.propagate = False
        if std_logger not in self._loggers:
            self._loggers.append(std_logger)
        for handler in self._handlers:
            if handler not in std_logger.handlers:
                std_logger.addHandler(handler)


class KycLogger:
    """
    Structured logger for pipeline components.

    Includes the correlation ID, layer and operation in every event.
    """

    def __init__(self, name: str, layer: PipelineLayer, context: LogContext):
        self.name = name
        self.layer = layer
        self.context = context
        self._logger = logging.getLogger(f"{context.namespace}.{layer.value}.{name}")
        context._attach(self._logger)

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


T = TypeVar("T")


def timed_operation(
    logger: KycLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging synchronous operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


def default_context() -> LogContext:
    """A quiet context for components constructed without one."""
    return LogContext(level=LogLevel.WARNING)
