# ABOUTME: Override guard for the kube-green override service
# ABOUTME: Implements read-only mode, protected environments, and per-requester rate limiting

"""Admission checks applied to an override request before an attempt starts."""

from __future__ import annotations

import time
from collections import defaultdict
from typing import TYPE_CHECKING

import structlog

from kube_green_override.errors import OperationBlocked
from kube_green_override.models import DesiredState

if TYPE_CHECKING:
    from collections.abc import Callable

    from kube_green_override.config import GuardSettings
    from kube_green_override.models import OverrideRequest

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Sliding-window call counter per key."""

    def __init__(
        self,
        max_calls: int = 10,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize rate limiter.

        Args:
            max_calls: Maximum calls allowed in window
            window_seconds: Window size in seconds
            clock: Monotonic time source
        """
        self._max_calls = max_calls
        self._window = window_seconds
        self._clock = clock
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Count a call for ``key``; False when the window is already full."""
        now = self._clock()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class OverrideGuard:
    """Decides whether an override request may start an attempt."""

    def __init__(self, settings: GuardSettings, clock: Callable[[], float] = time.monotonic) -> None:
        self._settings = settings
        self._protected = frozenset(settings.protected_environments)
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
            clock=clock,
        )

    def check(self, request: OverrideRequest) -> OperationBlocked | None:
        """Return OperationBlocked when the request must be refused, else None.

        Checks run in order: read-only mode, protected environment, then the
        requester's rate limit, so refused requests do not consume quota.
        """
        if self._settings.read_only:
            return OperationBlocked(
                operation="override",
                reason="Overrides are disabled (read-only mode)",
                setting="OVERRIDE_GUARD_READ_ONLY",
            )

        if request.desired_state is DesiredState.SLEEPING and request.target in self._protected:
            return OperationBlocked(
                operation="override",
                reason=f"Environment '{request.target}' is protected and cannot be put to sleep",
                setting="OVERRIDE_GUARD_PROTECTED_ENVIRONMENTS",
            )

        if not self._rate_limiter.check(f"requester:{request.requested_by}"):
            return OperationBlocked(
                operation="override",
                reason=f"Too many overrides from '{request.requested_by}'",
                setting="OVERRIDE_GUARD_RATE_LIMIT_CALLS",
            )

        return None
