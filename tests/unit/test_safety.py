# ABOUTME: Unit tests for the override guard
# ABOUTME: Tests read-only mode, protected environments, and rate limiting

import pytest

from kube_green_override.config import GuardSettings
from kube_green_override.errors import OperationBlocked
from kube_green_override.models import DesiredState, OverrideRequest
from kube_green_override.utils.safety import OverrideGuard, RateLimiter


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def override(target: str, state: DesiredState, user: str = "alice") -> OverrideRequest:
    return OverrideRequest(target=target, desired_state=state, requested_by=user)


@pytest.mark.unit
class TestRateLimiter:
    """Tests for RateLimiter class."""

    def test_allows_calls_within_limit(self):
        """Test that calls within limit are allowed."""
        limiter = RateLimiter(max_calls=3, window_seconds=60)

        assert limiter.check("key") is True
        assert limiter.check("key") is True
        assert limiter.check("key") is True

    def test_blocks_calls_over_limit(self):
        """Test that calls over limit are blocked."""
        limiter = RateLimiter(max_calls=2, window_seconds=60)

        limiter.check("key")
        limiter.check("key")

        assert limiter.check("key") is False

    def test_window_slides(self):
        """Test that old calls fall out of the window."""
        clock = FakeClock()
        limiter = RateLimiter(max_calls=1, window_seconds=60, clock=clock)

        assert limiter.check("key") is True
        assert limiter.check("key") is False
        clock.now += 61
        assert limiter.check("key") is True

    def test_keys_are_independent(self):
        """Test that separate keys have separate budgets."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)

        assert limiter.check("a") is True
        assert limiter.check("b") is True
        assert limiter.check("a") is False

    def test_reset_key(self):
        """Test resetting rate limit for specific key."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)
        limiter.check("key1")
        limiter.check("key2")

        limiter.reset("key1")

        assert limiter.check("key1") is True
        assert limiter.check("key2") is False

    def test_reset_all(self):
        """Test resetting all rate limits."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)
        limiter.check("key1")
        limiter.check("key2")

        limiter.reset()

        assert limiter.check("key1") is True
        assert limiter.check("key2") is True


@pytest.mark.unit
class TestOverrideGuard:
    """Tests for OverrideGuard class."""

    def test_allows_normal_override(self, guard_settings: GuardSettings):
        """Test that ordinary overrides pass."""
        guard = OverrideGuard(guard_settings)

        assert guard.check(override("staging", DesiredState.SLEEPING)) is None

    def test_read_only_blocks(self):
        """Test that read-only mode blocks every override."""
        guard = OverrideGuard(GuardSettings(read_only=True))

        blocked = guard.check(override("staging", DesiredState.AWAKE))

        assert isinstance(blocked, OperationBlocked)
        assert "read-only" in blocked.reason
        assert blocked.setting == "OVERRIDE_GUARD_READ_ONLY"

    def test_protected_environment_cannot_sleep(self, guard_settings: GuardSettings):
        """Test that a protected environment cannot be forced to sleep."""
        guard = OverrideGuard(guard_settings)

        blocked = guard.check(override("production", DesiredState.SLEEPING))

        assert blocked is not None
        assert "production" in blocked.reason
        assert "OPERATION BLOCKED" in blocked.format_message()

    def test_protected_environment_can_wake(self, guard_settings: GuardSettings):
        """Test that waking a protected environment is allowed."""
        guard = OverrideGuard(guard_settings)

        assert guard.check(override("production", DesiredState.AWAKE)) is None

    def test_rate_limit_per_requester(self):
        """Test that each requester has their own override budget."""
        guard = OverrideGuard(GuardSettings(rate_limit_calls=2, protected_environments=[]))

        assert guard.check(override("staging", DesiredState.AWAKE, "alice")) is None
        assert guard.check(override("staging", DesiredState.SLEEPING, "alice")) is None
        blocked = guard.check(override("staging", DesiredState.AWAKE, "alice"))

        assert blocked is not None
        assert "alice" in blocked.reason
        assert guard.check(override("staging", DesiredState.AWAKE, "bob")) is None

    def test_refused_requests_do_not_consume_quota(self):
        """Test that protected-environment refusals leave the rate budget intact."""
        guard = OverrideGuard(GuardSettings(rate_limit_calls=1, protected_environments=["prod"]))

        assert guard.check(override("prod", DesiredState.SLEEPING)) is not None
        assert guard.check(override("staging", DesiredState.SLEEPING)) is None

    def test_rate_window_uses_clock(self):
        """Test that the guard's limiter follows the injected clock."""
        clock = FakeClock()
        guard = OverrideGuard(
            GuardSettings(rate_limit_calls=1, rate_limit_window=10, protected_environments=[]),
            clock=clock,
        )

        assert guard.check(override("staging", DesiredState.AWAKE)) is None
        assert guard.check(override("staging", DesiredState.AWAKE)) is not None
        clock.now += 11
        assert guard.check(override("staging", DesiredState.AWAKE)) is None
