"""
Fixed-window rate limiting.

Each scope (caller identity + route tier) owns one window. When
now - window_start >= window_seconds the counter resets and the window
restarts. Boundary bursts up to twice the ceiling are a known trade-off
of the fixed window.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from ..config import RateLimitSettings
from .exceptions import RateLimitExceeded

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitWindow:
    """Counter state for one scope."""

    scope_key: str
    window_start: float
    count: int
    max_requests: int
    window_seconds: int

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    def reset_at(self) -> float:
        return self.window_start + self.window_seconds


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one hit, with the values for the standard headers."""

    allowed: bool
    tier: str
    limit: int
    remaining: int
    reset_at: float
    retry_after: int

    def headers(self) -> Dict[str, str]:
        reset_in = max(0, math.ceil(self.reset_at - time.time()))
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(reset_in),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RouteTierClassifier:
    """Maps a request path to exactly one tier, or None when exempt."""

    def __init__(self, route_tiers: Dict[str, List[str]], default_tier: str, exempt_paths: List[str]) -> None:
        self.default_tier = default_tier
        self.exempt_paths = set(exempt_paths)
        # Longest prefix wins
        self._prefixes = sorted(
            ((prefix, tier) for tier, prefixes in route_tiers.items() for prefix in prefixes),
            key=lambda item: len(item[0]),
            reverse=True,
        )

    def classify(self, path: str) -> Optional[str]:
        if path in self.exempt_paths:
            return None
        for prefix, tier in self._prefixes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return tier
        return self.default_tier


class FixedWindowRateLimiter:
    """
    Per-scope fixed-window counters with independently ceilinged tiers.

    Read-check-increment happens under one lock, so concurrent requests
    cannot both pass a boundary check.
    """

    def __init__(self, settings: RateLimitSettings) -> None:
        self.settings = settings
        self.tiers = settings.tiers
        self.classifier = RouteTierClassifier(
            settings.route_tiers,
            settings.default_tier,
            settings.exempt_paths,
        )
        self.windows: Dict[str, RateLimitWindow] = {}
        self.lock = asyncio.Lock()

    @staticmethod
    def scope_key(identity: str, tier: str) -> str:
        return f"{tier}:{identity}"

    async def hit(self, identity: str, tier: str) -> RateLimitDecision:
        """
        Count one request for identity in tier.

        Rejected hits do not increment the counter.
        """
        config = self.tiers[tier]
        max_requests = int(config["max_requests"])
        window_seconds = int(config["window_seconds"])
        key = self.scope_key(identity, tier)

        async with self.lock:
            now = time.time()
            window = self.windows.get(key)

            if window is None or window.expired(now):
                window = RateLimitWindow(
                    scope_key=key,
                    window_start=now,
                    count=0,
                    max_requests=max_requests,
                    window_seconds=window_seconds,
                )
                self.windows[key] = window
                if len(self.windows) > self.settings.max_tracked_scopes:
                    self._prune(now)

            if window.count >= window.max_requests:
                retry_after = min(
                    window.window_seconds,
                    max(1, math.ceil(window.reset_at() - now)),
                )
                return RateLimitDecision(
                    allowed=False,
                    tier=tier,
                    limit=window.max_requests,
                    remaining=0,
                    reset_at=window.reset_at(),
                    retry_after=retry_after,
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                tier=tier,
                limit=window.max_requests,
                remaining=window.max_requests - window.count,
                reset_at=window.reset_at(),
                retry_after=0,
            )

    async def check(self, identity: str, path: str) -> Optional[RateLimitDecision]:
        """
        Classify path and count the hit.

        Returns None for exempt paths; raises RateLimitExceeded when the
        scope is over its ceiling.
        """
        tier = self.classifier.classify(path)
        if tier is None:
            return None

        decision = await self.hit(identity, tier)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                tier=tier,
                limit=decision.limit,
                retry_after=decision.retry_after,
            )
            raise RateLimitExceeded(
                message=f"Too many requests for this route tier, retry in {decision.retry_after} seconds",
                retry_after=decision.retry_after,
                tier=tier,
                headers=decision.headers(),
            )
        return decision

    def _prune(self, now: float) -> None:
        """Drop expired windows; they would reset on next access anyway."""
        expired = [key for key, window in self.windows.items() if window.expired(now)]
        for key in expired:
            del self.windows[key]
        if expired:
            logger.debug("Pruned expired rate limit windows", count=len(expired))
