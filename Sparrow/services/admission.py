from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException

from Sparrow.rate_limiters.chat_rate_limiter import get_chat_rate_limiter

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 24 * 60 * 60

# (anonymous, premium) -> requests per 24h, plus the message shown when the ceiling is hit
CHAT_TIERS: dict[tuple[bool, bool], tuple[int, str]] = {
    (True, True): (0, "Premium models require a signed-in account. Please sign in to use more."),
    (True, False): (
        10,
        "You have reached the maximum of 10 requests per 24 hours for free users. "
        "Please sign in for a free account to get more usage.",
    ),
    (False, True): (
        10,
        "You have reached the maximum of 10 requests per 24 hours for premium models. "
        "Please try again after 24 hours or use a non-premium model.",
    ),
    (False, False): (30, "You have reached the maximum of 30 requests per 24 hours. Please try again after 24 hours."),
}

IMAGE_TIERS: dict[tuple[bool, bool], tuple[int, str]] = {
    (True, True): (0, "Premium image generation requires a signed-in account. Please sign in to use this feature."),
    (True, False): (
        10,
        "You have reached the maximum of 10 image generation requests per 24 hours for free users. "
        "Please sign in for a free account to get more usage.",
    ),
    (False, True): (3, "You have reached the maximum of 3 image generation requests per 24 hours. Please try again later."),
    (False, False): (3, "You have reached the maximum of 3 image generation requests per 24 hours. Please try again later."),
}


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    status_code: int = 200
    reason: Optional[str] = None
    remaining: Optional[int] = None   # None when quota does not apply


ADMIT_UNLIMITED = AdmissionDecision(allowed=True)


# Per-user, per-tier quota check run before any costly work
class AdmissionController:
    def __init__(self, limiter=None):
        self._limiter = limiter

    @property
    def limiter(self):
        if self._limiter is None:
            self._limiter = get_chat_rate_limiter()
        return self._limiter

    async def admit_chat(self, *, identity: str, is_premium: bool, is_byok: bool, is_anonymous: bool) -> AdmissionDecision:
        if is_byok:
            logger.info("admission.bypass: identity=%s (own API key)", identity)
            return ADMIT_UNLIMITED
        limit, message = CHAT_TIERS[(is_anonymous, is_premium)]
        key = f"{identity}:{'premium' if is_premium else 'free'}"
        return await self._admit(key, limit, message)

    async def admit_image(self, *, identity: str, is_premium: bool, is_anonymous: bool) -> AdmissionDecision:
        limit, message = IMAGE_TIERS[(is_anonymous, is_premium)]
        key = f"{identity}:image:{'premium' if is_premium else 'free'}"
        return await self._admit(key, limit, message)

    async def _admit(self, key: str, limit: int, message: str) -> AdmissionDecision:
        if limit <= 0:
            logger.warning("admission.denied: key=%s ceiling=0", key)
            return AdmissionDecision(allowed=False, status_code=403, reason=message, remaining=0)

        decision = await self.limiter.check(key, limit, WINDOW_SECONDS)
        if not decision.allowed:
            logger.warning("admission.denied: key=%s ceiling=%d", key, limit)
            return AdmissionDecision(allowed=False, status_code=429, reason=message, remaining=0)
        return AdmissionDecision(allowed=True, remaining=decision.remaining)

    # Raise the HTTP error for a denied decision
    @staticmethod
    def enforce(decision: AdmissionDecision) -> None:
        if decision.allowed:
            return
        raise HTTPException(status_code=decision.status_code, detail=decision.reason)
