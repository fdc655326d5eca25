from __future__ import annotations

import secrets
from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from authshield.clock import Clock, SystemClock, now_utc
from authshield.logging import get_logger
from authshield.service.errors import SessionExpiredError, SessionNotFoundError
from authshield.storage.common import CounterStore, op
from authshield.storage.errors import StoreUnavailable
from authshield.storage.models import SessionInfo, SessionMeta, SessionRecord

logger = get_logger(__name__)

SESSION_PREFIX = "session:"
SESSION_META_PREFIX = "session:meta:"
USER_SESSIONS_PREFIX = "user_sessions:"
SESSION_SEQ_PREFIX = "session_seq:"

_UPDATABLE_FIELDS = frozenset({"email", "role", "refresh_token", "metadata"})


def _short(session_id: str) -> str:
    return session_id[:8]


class SessionRegistry:
    """Session records plus a per-user index capped at ``max_sessions_per_user``.

    Keys:
    - ``session:{id}``: full record (JSON), TTL = session duration
    - ``session:meta:{id}``: lightweight listing/eviction record
    - ``user_sessions:{user_id}``: set of the user's session ids

    Expiry is enforced lazily on read against the stored ``expires_at``;
    the store TTL is only a backstop. A successful read slides both.
    Reads fail closed: an unreachable store means "not authenticated".
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        session_duration_seconds: int = 30 * 24 * 60 * 60,
        max_sessions_per_user: int = 10,
        clock: Optional[Clock] = None,
        on_revoke: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.session_duration = timedelta(seconds=session_duration_seconds)
        self.max_sessions_per_user = max_sessions_per_user
        self.clock = clock or SystemClock()
        self.on_revoke = on_revoke

    @property
    def _ttl_ms(self) -> int:
        return int(self.session_duration.total_seconds() * 1000)

    @staticmethod
    def _record_key(session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}"

    @staticmethod
    def _meta_key(session_id: str) -> str:
        return f"{SESSION_META_PREFIX}{session_id}"

    @staticmethod
    def _index_key(user_id: str) -> str:
        return f"{USER_SESSIONS_PREFIX}{user_id}"

    @staticmethod
    def _sequence_key(user_id: str) -> str:
        return f"{SESSION_SEQ_PREFIX}{user_id}"

    def _revoked(self, session_ids: List[str]) -> None:
        if self.on_revoke is None:
            return
        for session_id in session_ids:
            self.on_revoke(session_id)

    def _write_ops(self, record: SessionRecord) -> list:
        ttl = self._ttl_ms
        index_key = self._index_key(record.user_id)
        return [
            op("set", self._record_key(record.session_id), record.to_json(), ttl_ms=ttl),
            op("set", self._meta_key(record.session_id), SessionMeta.for_record(record).to_json(), ttl_ms=ttl),
            op("sadd", index_key, record.session_id),
            op("expire", index_key, ttl),
        ]

    def _renew_ops(self, record: SessionRecord) -> list:
        """Rewrite a live session without recreating one deleted meanwhile."""
        ttl = self._ttl_ms
        return [
            op("set", self._record_key(record.session_id), record.to_json(), ttl_ms=ttl, xx=True),
            op("set", self._meta_key(record.session_id), SessionMeta.for_record(record).to_json(), ttl_ms=ttl, xx=True),
            op("expire", self._index_key(record.user_id), ttl),
        ]

    async def _purge(self, session_id: str, user_id: Optional[str]) -> int:
        """Remove a record, its metadata and its index membership."""
        ops = [op("delete", self._record_key(session_id), self._meta_key(session_id))]
        if user_id:
            ops.append(op("srem", self._index_key(user_id), session_id))
        results = await self.store.batch(ops)
        self._revoked([session_id])
        return results[0] or 0

    async def create(
        self,
        user_id: str,
        email: str,
        role: str,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create a session and return its opaque id.

        Raises ``StoreUnavailable`` if the record cannot be written.
        """
        await self._evict_excess(user_id, reserve=1)
        sequence = await self.store.incr(self._sequence_key(user_id))

        now = now_utc(self.clock)
        record = SessionRecord(
            session_id=secrets.token_urlsafe(32),
            user_id=user_id,
            email=email,
            role=role,
            refresh_token=refresh_token,
            created_at=now,
            expires_at=now + self.session_duration,
            last_accessed_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
            sequence=sequence.value,
        )
        ops = self._write_ops(record)
        ops.append(op("expire", self._sequence_key(user_id), self._ttl_ms))
        results = await self.store.batch(ops)
        if not results[0]:
            raise StoreUnavailable("session record write failed", operation="set")
        logger.info("session_created", user_id=user_id, session=_short(record.session_id))
        return record.session_id

    async def _evict_excess(self, user_id: str, *, reserve: int = 0) -> int:
        """Delete the oldest sessions so the index has room for ``reserve`` more.

        Sessions whose metadata already expired are stale: they are purged
        and do not count against the cap. Not transactional; concurrent
        creators may briefly overshoot the cap until the next create.
        """
        session_ids = sorted(await self.store.smembers(self._index_key(user_id)))
        if len(session_ids) + reserve <= self.max_sessions_per_user:
            return 0

        raw_metas = await self.store.batch([op("get", self._meta_key(sid)) for sid in session_ids])
        live: List[Tuple[Any, int, str]] = []
        for session_id, raw in zip(session_ids, raw_metas):
            meta = SessionMeta.from_json(raw)
            if meta is None:
                logger.info("session_index_stale_entry", user_id=user_id, session=_short(session_id))
                await self._purge(session_id, user_id)
                continue
            live.append((meta.created_at, meta.sequence, session_id))

        live.sort()
        excess = len(live) + reserve - self.max_sessions_per_user
        evicted = 0
        for _, _, session_id in live[: max(0, excess)]:
            await self._purge(session_id, user_id)
            evicted += 1
        if evicted:
            logger.info("sessions_evicted", user_id=user_id, count=evicted)
        return evicted

    async def _read(self, session_id: str) -> Tuple[Optional[SessionRecord], bool]:
        """Return ``(record, expired)`` with lazy expiry and sliding renewal."""
        raw = await self.store.get(self._record_key(session_id))
        if raw is None:
            return None, False
        record = SessionRecord.from_json(raw)
        if record is None:
            meta = SessionMeta.from_json(await self.store.get(self._meta_key(session_id)))
            user_id = meta.user_id if meta else None
            await self._purge(session_id, user_id)
            logger.warning("session_record_corrupted", user_id=user_id, session=_short(session_id))
            return None, False

        now = now_utc(self.clock)
        if now > record.expires_at:
            await self._purge(session_id, record.user_id)
            logger.info("session_expired", user_id=record.user_id, session=_short(session_id))
            return None, True

        renewed = replace(record, last_accessed_at=now, expires_at=now + self.session_duration)
        results = await self.store.batch(self._renew_ops(renewed))
        if results[0] is False:
            # Deleted between the read and the renewal
            logger.info("session_renewal_skipped", user_id=record.user_id, session=_short(session_id))
            return None, False
        return renewed, False

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        if not session_id:
            return None
        try:
            record, _ = await self._read(session_id)
        except StoreUnavailable as exc:
            logger.error("session_read_failed", operation=exc.operation, error=exc.message)
            return None
        return record

    async def require(self, session_id: Optional[str]) -> SessionRecord:
        """Return the live session or raise an authentication error."""
        if not session_id:
            raise SessionNotFoundError("Session required")
        try:
            record, expired = await self._read(session_id)
        except StoreUnavailable as exc:
            logger.error("session_read_failed", operation=exc.operation, error=exc.message)
            raise SessionNotFoundError("Session unavailable") from exc
        if expired:
            raise SessionExpiredError("Session expired")
        if record is None:
            raise SessionNotFoundError("Session not found")
        return record

    async def validate(self, session_id: str) -> Optional[Dict[str, str]]:
        record = await self.get(session_id)
        if record is None:
            return None
        return {"user_id": record.user_id, "email": record.email, "role": record.role}

    async def update(self, session_id: str, **changes: Any) -> Optional[SessionRecord]:
        """Change ``email``, ``role``, ``refresh_token`` or ``metadata`` of a live session."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {', '.join(sorted(unknown))}")
        record = await self.get(session_id)
        if record is None:
            return None
        updated = replace(record, **changes)
        try:
            results = await self.store.batch(self._renew_ops(updated))
        except StoreUnavailable as exc:
            logger.error("session_update_failed", operation=exc.operation, error=exc.message)
            return None
        if not results[0]:
            return None
        return updated

    async def delete(self, session_id: str) -> bool:
        try:
            raw_record, raw_meta = await self.store.batch(
                [op("get", self._record_key(session_id)), op("get", self._meta_key(session_id))]
            )
            user_id = None
            record = SessionRecord.from_json(raw_record) if raw_record else None
            if record is not None:
                user_id = record.user_id
            else:
                meta = SessionMeta.from_json(raw_meta)
                user_id = meta.user_id if meta else None
            removed = await self._purge(session_id, user_id)
        except StoreUnavailable as exc:
            logger.error("session_delete_failed", operation=exc.operation, error=exc.message)
            return False
        if removed:
            logger.info("session_deleted", user_id=user_id, session=_short(session_id))
        return bool(removed)

    async def delete_all_for_user(self, user_id: str) -> int:
        index_key = self._index_key(user_id)
        try:
            session_ids = sorted(await self.store.smembers(index_key))
            if not session_ids:
                return 0
            ops = []
            for session_id in session_ids:
                ops.append(op("delete", self._record_key(session_id), self._meta_key(session_id)))
            ops.append(op("delete", index_key))
            await self.store.batch(ops)
        except StoreUnavailable as exc:
            logger.error("session_delete_all_failed", operation=exc.operation, error=exc.message)
            return 0
        self._revoked(session_ids)
        logger.info("sessions_deleted_for_user", user_id=user_id, count=len(session_ids))
        return len(session_ids)

    async def list_for_user(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionInfo]:
        """Metadata of the user's sessions, most recently active first."""
        try:
            session_ids = sorted(await self.store.smembers(self._index_key(user_id)))
            if not session_ids:
                return []
            raw_metas = await self.store.batch([op("get", self._meta_key(sid)) for sid in session_ids])
        except StoreUnavailable as exc:
            logger.error("session_list_failed", operation=exc.operation, error=exc.message)
            return []

        sessions = []
        for session_id, raw in zip(session_ids, raw_metas):
            meta = SessionMeta.from_json(raw)
            if meta is None:
                continue
            sessions.append(
                SessionInfo(
                    session_id=session_id,
                    created_at=meta.created_at,
                    last_accessed_at=meta.last_accessed_at,
                    expires_at=meta.expires_at,
                    ip_address=meta.ip_address,
                    user_agent=meta.user_agent,
                    is_current=session_id == current_session_id,
                )
            )
        sessions.sort(key=lambda info: info.last_accessed_at, reverse=True)
        return sessions

    async def stats(self) -> Dict[str, int]:
        try:
            session_keys = await self.store.scan_keys(f"{SESSION_PREFIX}*")
            user_keys = await self.store.scan_keys(f"{USER_SESSIONS_PREFIX}*")
        except StoreUnavailable as exc:
            logger.warning("session_stats_failed", operation=exc.operation, error=exc.message)
            return {"total_sessions": 0, "total_users": 0}
        records = [key for key in session_keys if not key.startswith(SESSION_META_PREFIX)]
        return {"total_sessions": len(records), "total_users": len(user_keys)}
