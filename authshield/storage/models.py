from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from authshield.clock import parse_timestamp


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class Increment:
    """Post-increment counter value.

    ``first`` is true only for the write that created the key. Applying the
    key's TTL is a second, separate store call, so a crash between the two
    leaves a counter without expiry.
    """

    value: int

    @property
    def first(self) -> bool:
        return self.value == 1


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_seconds: int = 0
    message: Optional[str] = None


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    attempts_remaining: int
    lock_until: Optional[datetime] = None
    retry_after_seconds: int = 0


@dataclass
class SuspicionReport:
    suspicious: bool = False
    reasons: List[str] = field(default_factory=list)
    risk_score: int = 0


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    email: str
    role: str
    refresh_token: str
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    # Per-user creation order; breaks created_at ties on eviction
    sequence: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "user_id": self.user_id,
                "email": self.email,
                "role": self.role,
                "refresh_token": self.refresh_token,
                "created_at": self.created_at.isoformat(),
                "expires_at": self.expires_at.isoformat(),
                "last_accessed_at": self.last_accessed_at.isoformat(),
                "ip_address": self.ip_address,
                "user_agent": self.user_agent,
                "metadata": self.metadata,
                "sequence": self.sequence,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> Optional["SessionRecord"]:
        """Decode a stored record; corrupted payloads decode to None."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(data, dict):
            return None
        created_at = parse_timestamp(data.get("created_at"))
        expires_at = parse_timestamp(data.get("expires_at"))
        last_accessed_at = parse_timestamp(data.get("last_accessed_at")) or created_at
        if not data.get("session_id") or not data.get("user_id"):
            return None
        if created_at is None or expires_at is None:
            return None
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            email=data.get("email") or "",
            role=data.get("role") or "user",
            refresh_token=data.get("refresh_token") or "",
            created_at=created_at,
            expires_at=expires_at,
            last_accessed_at=last_accessed_at,
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            metadata=data.get("metadata"),
            sequence=_as_int(data.get("sequence")),
        )


@dataclass
class SessionMeta:
    """Lightweight per-session record used for listing and eviction."""

    user_id: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    sequence: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "created_at": self.created_at.isoformat(),
                "last_accessed_at": self.last_accessed_at.isoformat(),
                "expires_at": self.expires_at.isoformat(),
                "ip_address": self.ip_address,
                "user_agent": self.user_agent,
                "sequence": self.sequence,
            }
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["SessionMeta"]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(data, dict):
            return None
        created_at = parse_timestamp(data.get("created_at"))
        if created_at is None:
            return None
        return cls(
            user_id=data.get("user_id") or "",
            created_at=created_at,
            last_accessed_at=parse_timestamp(data.get("last_accessed_at")) or created_at,
            expires_at=parse_timestamp(data.get("expires_at")) or created_at,
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            sequence=_as_int(data.get("sequence")),
        )

    @classmethod
    def for_record(cls, record: SessionRecord) -> "SessionMeta":
        return cls(
            user_id=record.user_id,
            created_at=record.created_at,
            last_accessed_at=record.last_accessed_at,
            expires_at=record.expires_at,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            sequence=record.sequence,
        )


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_current: bool = False


@dataclass(frozen=True)
class CSRFTokenEntry:
    session_id: str
    token: str
    expires_at: float


__all__ = [
    "Increment",
    "RateLimitResult",
    "LockStatus",
    "SuspicionReport",
    "SessionRecord",
    "SessionMeta",
    "SessionInfo",
    "CSRFTokenEntry",
]
