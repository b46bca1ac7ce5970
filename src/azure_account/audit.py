from __future__ import annotations

import json
import logging
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

_PROMOTED_FIELDS = {"tenant_id", "subscription_id", "correlation_id"}


@dataclass
class AuditEvent:
    timestamp: str
    level: str
    message: str
    tenant_id: Optional[str] = None
    subscription_id: Optional[str] = None
    correlation_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class InMemoryAuditStore:
    """Thread-safe buffer of recent account events, newest first."""

    def __init__(self, max_events: int = 1000):
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.appendleft(event)

    def list(self, limit: int = 100) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)[:limit]

    def messages(self) -> List[str]:
        with self._lock:
            return [event.message for event in reversed(self._events)]

    def find(self, message: str) -> List[AuditEvent]:
        with self._lock:
            return [event for event in reversed(self._events) if event.message == message]


class JsonAuditLogger:
    """Structured logger for discovery, token and session lifecycle events.

    Each event is written as one JSON line to stdout and, when a store is
    attached, mirrored into it so callers can inspect what happened during
    ``initialize`` without parsing log output. Exceptions passed as ``error``
    are rendered as ``"<Type>: <message>"``.
    """

    def __init__(
        self,
        name: str = "azure_account",
        level: int = logging.INFO,
        store: Optional[InMemoryAuditStore] = None,
    ):
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(_JsonFormatter())
            self.logger.addHandler(handler)
        self.logger.setLevel(level)
        self.logger.propagate = False
        self.store = store

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        fields = {key: _render(value) for key, value in kwargs.items()}
        if self.store is not None:
            self.store.append(self._build_event(level, message, fields))
        self.logger.log(level, message, extra={"extra": fields})

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)

    @staticmethod
    def _build_event(level: int, message: str, fields: Dict[str, Any]) -> AuditEvent:
        return AuditEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=logging.getLevelName(level),
            message=message,
            tenant_id=fields.get("tenant_id"),
            subscription_id=fields.get("subscription_id"),
            correlation_id=fields.get("correlation_id"),
            extra={k: v for k, v in fields.items() if k not in _PROMOTED_FIELDS},
        )


def _render(value: Any) -> Any:
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return value


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra: Optional[Dict[str, Any]] = getattr(record, "extra", None)  # type: ignore[attr-defined]
        if extra:
            payload.update(extra)

        return json.dumps(payload, default=str)
