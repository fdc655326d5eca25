from __future__ import annotations

import asyncio
import hmac
import secrets
import threading
from typing import Dict, Optional

from authshield.clock import Clock, SystemClock
from authshield.logging import get_logger
from authshield.service.errors import CSRFInvalidError
from authshield.storage.models import CSRFTokenEntry

logger = get_logger(__name__)

TOKEN_BYTES = 32


class CSRFTokenStore:
    """Process-local CSRF tokens, one active token per session.

    Issuing a token replaces the previous one for that session. Tokens are
    not shared between processes, so clients must hit the process that
    issued their token (or re-fetch one).
    """

    def __init__(self, ttl_minutes: int = 60, *, clock: Optional[Clock] = None):
        self.ttl_seconds = ttl_minutes * 60
        self.clock = clock or SystemClock()
        self._tokens: Dict[str, CSRFTokenEntry] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def issue(self, session_id: str) -> str:
        token = secrets.token_hex(TOKEN_BYTES)
        entry = CSRFTokenEntry(
            session_id=session_id,
            token=token,
            expires_at=self.clock.time() + self.ttl_seconds,
        )
        with self._lock:
            self._tokens[session_id] = entry
        return token

    def _discard(self, entry: CSRFTokenEntry) -> None:
        # Only drop the exact entry that was read; a concurrent issue may have replaced it
        with self._lock:
            if self._tokens.get(entry.session_id) is entry:
                del self._tokens[entry.session_id]

    def verify(self, session_id: Optional[str], token: Optional[str]) -> bool:
        if not session_id or not token:
            return False
        with self._lock:
            entry = self._tokens.get(session_id)
        if entry is None:
            return False
        if self.clock.time() >= entry.expires_at:
            self._discard(entry)
            return False
        return hmac.compare_digest(entry.token.encode("utf-8"), token.encode("utf-8"))

    def enforce(self, session_id: Optional[str], token: Optional[str]) -> None:
        if not self.verify(session_id, token):
            logger.warning("csrf_token_rejected", has_session=bool(session_id), has_token=bool(token))
            raise CSRFInvalidError("Invalid or missing CSRF token")

    def revoke(self, session_id: str) -> bool:
        with self._lock:
            return self._tokens.pop(session_id, None) is not None

    def sweep(self) -> int:
        """Remove every expired token; returns how many were removed."""
        now = self.clock.time()
        with self._lock:
            expired = [sid for sid, entry in self._tokens.items() if now >= entry.expires_at]
            for session_id in expired:
                del self._tokens[session_id]
        if expired:
            logger.info("csrf_tokens_swept", removed=len(expired))
        return len(expired)

    async def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweep_task is not None:
            logger.warning("csrf_sweeper_already_running")
            return
        if interval_seconds <= 0:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))
        logger.info("csrf_sweeper_started", interval_seconds=interval_seconds)

    async def stop_sweeper(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
        logger.info("csrf_sweeper_stopped")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.error("csrf_sweep_failed", error=str(exc), error_type=type(exc).__name__)

    def stats(self) -> dict:
        now = self.clock.time()
        with self._lock:
            entries = list(self._tokens.values())
        expired = sum(1 for entry in entries if now >= entry.expires_at)
        return {
            "active_tokens": len(entries) - expired,
            "expired_tokens": expired,
            "sweeper_running": self._sweep_task is not None,
        }
