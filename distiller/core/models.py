"""
Data models (plain dataclasses) for KnowledgeDistiller.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from distiller.core.constants import (
    JobStatus, LogLevel, TERMINAL_STATUSES, DEFAULT_REQUEST_TIMEOUT_SEC,
)
from distiller.core.error_codes import IllegalStateError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    level: str
    message: str

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'level': self.level,
            'message': self.message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LogEntry":
        return cls(
            timestamp=datetime.fromisoformat(data['timestamp']),
            level=data.get('level', LogLevel.INFO),
            message=data.get('message', ''),
        )


@dataclass(frozen=True)
class JobFailure:
    kind: str
    message: str


@dataclass
class Job:
    id: str                          # UUID
    source_kind: str
    source_ref: str
    status: str = JobStatus.QUEUED
    processing_step: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: list[LogEntry] = field(default_factory=list)
    raw_content: Optional[str] = None
    result_content: Optional[str] = None
    error: Optional[JobFailure] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    config_version: Optional[int] = None
    _cancel_event: threading.Event = field(default_factory=threading.Event,
                                           repr=False, compare=False)
    _log_lock: threading.Lock = field(default_factory=threading.Lock,
                                      repr=False, compare=False)

    # ── Derived state ─────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        if self.started_at is None:
            return 0.0
        end = self.completed_at if self.completed_at else (now or utc_now())
        return max(0.0, (end - self.started_at).total_seconds())

    # ── Mutators ──────────────────────────────────────────────────────

    def request_cancel(self):
        self._cancel_event.set()

    def wait_for_cancel(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; returns True if a stop was requested."""
        return self._cancel_event.wait(timeout)

    def add_log(self, message: str, level: str = LogLevel.INFO) -> LogEntry:
        with self._log_lock:
            entry = LogEntry(timestamp=utc_now(), level=level, message=message)
            self.logs.append(entry)
        return entry

    def set_raw_content(self, text: str):
        if self.raw_content is not None:
            raise IllegalStateError(f"Job {self.id} already has extracted content")
        self.raw_content = text

    def set_result_content(self, text: str):
        if self.raw_content is None:
            raise IllegalStateError(f"Job {self.id} has no extracted content yet")
        if self.result_content is not None:
            raise IllegalStateError(f"Job {self.id} already has a distillation")
        self.result_content = text

    # ── Projection ────────────────────────────────────────────────────

    def to_dict(self, include_content: bool = True) -> dict:
        """Read-only status projection for the reporting layer."""
        with self._log_lock:
            logs = [entry.to_dict() for entry in self.logs]
        data = {
            'id': self.id,
            'source_kind': self.source_kind,
            'source_ref': self.source_ref,
            'status': self.status,
            'processing_step': self.processing_step,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'elapsed_seconds': round(self.elapsed_seconds(), 3),
            'logs': logs,
            'error': ({'kind': self.error.kind, 'message': self.error.message}
                      if self.error else None),
            'cancel_requested': self.cancel_requested,
            'provider': self.provider,
            'model': self.model,
            'config_version': self.config_version,
        }
        if include_content:
            data['raw_content'] = self.raw_content
            data['result_content'] = self.result_content
        return data


@dataclass(frozen=True)
class ProviderConfig:
    mode: str
    provider: str
    model: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = field(default=None, repr=False)
    timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC


@dataclass(frozen=True)
class ConfigSnapshot:
    version: int
    config: ProviderConfig
