from __future__ import annotations

from typing import Optional

from authshield.clock import Clock, SystemClock, now_ms
from authshield.logging import get_logger
from authshield.storage.common import CounterStore
from authshield.storage.errors import StoreUnavailable
from authshield.storage.models import SuspicionReport

logger = get_logger(__name__)

BURST_WINDOW_MS = 60 * 1000
BURST_THRESHOLD = 60
SPRAY_WINDOW_MS = 15 * 60 * 1000
SPRAY_THRESHOLD = 10
MIN_USER_AGENT_LENGTH = 10

BURST_SCORE = 30
USER_AGENT_SCORE = 25
SPRAY_SCORE = 50
SUSPICIOUS_THRESHOLD = 50

_AUTOMATION_MARKERS = ("bot", "crawler")


def user_agent_is_suspicious(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return True
    lowered = user_agent.lower()
    return len(user_agent) < MIN_USER_AGENT_LENGTH or any(m in lowered for m in _AUTOMATION_MARKERS)


class SuspiciousActivityDetector:
    """Advisory risk scoring. Never raises and never blocks a request."""

    def __init__(self, store: CounterStore, *, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()

    async def assess(
        self, ip: str, user_agent: Optional[str], email: Optional[str] = None
    ) -> SuspicionReport:
        report = SuspicionReport()
        now = now_ms(self.clock)

        if user_agent_is_suspicious(user_agent):
            report.reasons.append("Suspicious user agent")
            report.risk_score += USER_AGENT_SCORE

        try:
            burst_key = f"heur:burst:{ip}:{now // BURST_WINDOW_MS}"
            increment = await self.store.incr(burst_key)
            await self.store.expire_if_first(burst_key, increment, BURST_WINDOW_MS)
            if increment.value > BURST_THRESHOLD:
                report.reasons.append("Rapid requests from IP")
                report.risk_score += BURST_SCORE

            if email:
                spray_key = f"heur:spray:{ip}:{now // SPRAY_WINDOW_MS}"
                added = await self.store.sadd(spray_key, email.strip().lower())
                if added:
                    await self.store.expire(spray_key, SPRAY_WINDOW_MS)
                if await self.store.scard(spray_key) > SPRAY_THRESHOLD:
                    report.reasons.append("Password spraying pattern detected")
                    report.risk_score += SPRAY_SCORE
        except StoreUnavailable as exc:
            logger.warning("suspicious_activity_check_degraded", operation=exc.operation, error=exc.message)

        report.suspicious = report.risk_score >= SUSPICIOUS_THRESHOLD
        if report.suspicious:
            logger.warning(
                "suspicious_activity_detected",
                ip=ip,
                reasons=report.reasons,
                risk_score=report.risk_score,
            )
        return report
