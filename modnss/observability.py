"""
Logging for the generation swap.

The core modules only emit leveled messages through ``get_logger``; where
those messages end up (terminal, JSON lines, or the system log) is decided
once by the command line layer through ``configure_logging``.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Swap components                       │
    │  log.info("msg", path=p)      @timed_operation(log, op)  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │              SwapLogger  (modnss.<component>.<name>)     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  "modnss" root handlers                  │
    │   TextFormatter │ StructuredHandler │ SysLogHandler      │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

ROOT_LOGGER = "modnss"

# syslog's LOG_NOTICE sits between INFO and WARNING
NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    def to_logging(self) -> int:
        if self is LogLevel.NOTICE:
            return NOTICE
        return getattr(logging, self.name)


class LogSink(Enum):
    """Where log records are delivered."""
    STDERR = "stderr"
    SYSLOG = "syslog"


class Component(Enum):
    """Swap components, used to name loggers."""
    COPIER = "copier"
    BOOTSTRAP = "bootstrap"
    DATABASE = "database"
    SWAP = "swap"
    ORCHESTRATOR = "orchestrator"
    IDENTITY = "identity"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    component: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                component=getattr(record, "component", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextFormatter(logging.Formatter):
    """``LEVEL: component: message [key=value ...]``"""

    def format(self, record: logging.LogRecord) -> str:
        text = f"{record.levelname}: "
        component = getattr(record, "component", "")
        if component:
            text += f"{component}: "
        text += record.getMessage()
        context = getattr(record, "context", None) or {}
        if context:
            text += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


class SwapLogger:
    """
    Leveled logger for one swap component.

    Keyword arguments become structured context on the record; ``operation``
    and ``duration_ms`` are lifted into their own fields.
    """

    def __init__(self, name: str, component: Component):
        self.name = name
        self.component = component
        self._logger = logging.getLogger(f"{ROOT_LOGGER}.{component.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "component": self.component.value,
            "operation": operation,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def is_enabled(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def notice(self, message: str, **context: Any) -> None:
        self._log(NOTICE, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, exc_info: bool = False, **context: Any) -> None:
        self._log(logging.ERROR, message, exc_info=exc_info, **context)

    def critical(self, message: str, exc_info: bool = False, **context: Any) -> None:
        self._log(logging.CRITICAL, message, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def get_logger(name: str, component: Component) -> SwapLogger:
    """Get a logger for a swap component."""
    return SwapLogger(name, component)


def configure_logging(
    sink: LogSink = LogSink.STDERR,
    level: LogLevel = LogLevel.NOTICE,
    fmt: str = "text",
    stream: Any = None,
    syslog_address: str = "/dev/log",
) -> logging.Handler:
    """Install the single handler for all ``modnss`` loggers.

    Replaces any handler installed by a previous call.  Returns the handler.
    """
    root = logging.getLogger(ROOT_LOGGER)
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    handler: logging.Handler
    if sink is LogSink.SYSLOG:
        handler = logging.handlers.SysLogHandler(
            address=syslog_address,
            facility=logging.handlers.SysLogHandler.LOG_DAEMON,
        )
        handler.ident = "update-mod-nss: "
        # SysLogHandler has no mapping for the custom level
        handler.priority_map = dict(handler.priority_map, NOTICE="notice")
        handler.setFormatter(TextFormatter())
    elif fmt == "json":
        handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(TextFormatter())

    root.addHandler(handler)
    root.setLevel(level.to_logging())
    root.propagate = False
    return handler


T = TypeVar("T")


def timed_operation(
    logger: SwapLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
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
        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        return wrapper
    return decorator
