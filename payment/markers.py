"""
Typed views over the idempotency markers kept in ``metadata`` JSON columns.

Each marker reads from and writes back to the same keys the rest of the
system (admin, reports, older rows) already uses, so rows written before
these types existed are understood unchanged.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from django.utils import timezone


def _stamp(value: Optional[datetime] = None) -> str:
    return (value or timezone.now()).isoformat()


@dataclass(frozen=True)
class EscrowMarker:
    """Order-level flag guarding the single wallet credit per order."""

    KEY = "payout_processed"

    processed: bool = False

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> "EscrowMarker":
        return cls(processed=(metadata or {}).get(cls.KEY) is True)

    def apply(self, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        meta = dict(metadata or {})
        meta[self.KEY] = self.processed
        return meta


@dataclass(frozen=True)
class CompletionMarker:
    """Timestamp marker recording that a payment-driven completion ran."""

    completed: bool = False
    completed_at: Optional[str] = None
    key: str = "order_completed_at"

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]], key: str = "order_completed_at") -> "CompletionMarker":
        value = (metadata or {}).get(key)
        return cls(completed=bool(value), completed_at=value or None, key=key)

    def mark(self, at: Optional[datetime] = None) -> "CompletionMarker":
        return CompletionMarker(completed=True, completed_at=_stamp(at), key=self.key)

    def apply(self, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        meta = dict(metadata or {})
        if self.completed:
            meta[self.key] = self.completed_at
        else:
            meta.pop(self.key, None)
        return meta


@dataclass(frozen=True)
class DeliveryAttempt:
    attempt: int
    success: bool
    timestamp: str
    error: str = ""

    def as_dict(self) -> Dict[str, Any]:
        data = {"timestamp": self.timestamp, "success": self.success, "attempt": self.attempt}
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryAttempt":
        return cls(
            attempt=int(data.get("attempt") or 0),
            success=bool(data.get("success")),
            timestamp=str(data.get("timestamp") or ""),
            error=str(data.get("error") or ""),
        )


@dataclass(frozen=True)
class DeliveryLog:
    """Append-only confirmation delivery log kept on a payment."""

    sent: bool = False
    sent_at: Optional[str] = None
    attempts: Tuple[DeliveryAttempt, ...] = field(default_factory=tuple)

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> "DeliveryLog":
        meta = metadata or {}
        raw_attempts = meta.get("email_attempts") or []
        return cls(
            sent=meta.get("email_sent") is True,
            sent_at=meta.get("email_sent_at"),
            attempts=tuple(DeliveryAttempt.from_dict(a) for a in raw_attempts if isinstance(a, dict)),
        )

    def record(self, attempt: int, success: bool, error: str = "", at: Optional[datetime] = None) -> "DeliveryLog":
        entry = DeliveryAttempt(attempt=attempt, success=success, timestamp=_stamp(at), error=error)
        return DeliveryLog(
            sent=self.sent or success,
            sent_at=entry.timestamp if success and not self.sent else self.sent_at,
            attempts=self.attempts + (entry,),
        )

    @property
    def failed_attempts(self) -> int:
        return len([a for a in self.attempts if not a.success])

    def apply(self, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        meta = dict(metadata or {})
        meta["email_sent"] = self.sent
        if self.sent_at:
            meta["email_sent_at"] = self.sent_at
        meta["email_attempts"] = [a.as_dict() for a in self.attempts]
        return meta
