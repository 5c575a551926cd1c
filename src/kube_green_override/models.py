# ABOUTME: Domain model for sleep/wake overrides and their lifecycle records
# ABOUTME: Defines requests, attempts, the attempt state machine, and environment config

"""Domain model for manual sleep/wake overrides."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from kube_green_override.errors import IllegalTransition


def utc_now() -> datetime:
    return datetime.now(UTC)


class DesiredState(str, Enum):
    """Sleep/wake state an override forces a target into."""

    SLEEPING = "Sleeping"
    AWAKE = "Awake"


class AttemptStatus(str, Enum):
    """Lifecycle status of an OverrideAttempt."""

    PENDING = "Pending"
    RECORDED = "Recorded"
    SYNCING = "Syncing"
    APPLIED = "Applied"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AttemptStatus.APPLIED, AttemptStatus.FAILED, AttemptStatus.TIMED_OUT}
)

# Strictly forward: no cycles, no skipping, nothing leaves a terminal state.
ALLOWED_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.PENDING: frozenset({AttemptStatus.RECORDED, AttemptStatus.FAILED}),
    AttemptStatus.RECORDED: frozenset({AttemptStatus.SYNCING, AttemptStatus.FAILED}),
    AttemptStatus.SYNCING: frozenset(
        {AttemptStatus.APPLIED, AttemptStatus.FAILED, AttemptStatus.TIMED_OUT}
    ),
    AttemptStatus.APPLIED: frozenset(),
    AttemptStatus.FAILED: frozenset(),
    AttemptStatus.TIMED_OUT: frozenset(),
}


class PriorityTier(str, Enum):
    """Workload tier of an environment, used for ordering and reporting."""

    BACKGROUND = "background"
    WEB = "web"
    DATA = "data"


class SyncStatus(str, Enum):
    """Convergence status reported by the sync trigger."""

    IN_PROGRESS = "InProgress"
    CONVERGED = "Converged"
    ERRORED = "Errored"


# =============================================================================
# OVERRIDES
# =============================================================================


@dataclass(frozen=True)
class OverrideRequest:
    """An intent to force a target environment into a sleep or wake state."""

    target: str
    desired_state: DesiredState
    requested_by: str
    requested_at: datetime = field(default_factory=utc_now)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "desired_state": self.desired_state.value,
            "requested_by": self.requested_by,
            "requested_at": self.requested_at.isoformat(),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class StatusTransition:
    """One entry of an attempt's audit history."""

    at: datetime
    status: AttemptStatus
    detail: str | None = None


@dataclass
class OverrideAttempt:
    """
    Lifecycle record of one OverrideRequest being carried out.

    Owned by the OverrideCoordinator; other components only read it. The
    history is append-only and always starts with Pending. Use
    ``transition`` to move the attempt, never assign ``status`` directly.
    """

    request: OverrideRequest
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: AttemptStatus = AttemptStatus.PENDING
    revision: str | None = None
    error: str | None = None
    _history: list[StatusTransition] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if not self._history:
            self._history.append(StatusTransition(at=utc_now(), status=self.status))

    @property
    def target(self) -> str:
        return self.request.target

    @property
    def history(self) -> tuple[StatusTransition, ...]:
        return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: AttemptStatus, detail: str | None = None) -> None:
        """Move to ``status``, raising IllegalTransition if the move is not allowed."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise IllegalTransition(
                f"Attempt {self.id}: {self.status.value} -> {status.value} not allowed"
            )
        self.status = status
        self._history.append(StatusTransition(at=utc_now(), status=status, detail=detail))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request": self.request.to_dict(),
            "status": self.status.value,
            "revision": self.revision,
            "error": self.error,
            "history": [
                {"at": t.at.isoformat(), "status": t.status.value, "detail": t.detail}
                for t in self._history
            ],
        }


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

_CLOCK_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class SleepSchedule(BaseModel):
    """Default kube-green SleepInfo schedule of an environment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    weekdays: str = Field(default="1-5", description="Cron-style weekday range")
    sleep_at: str = Field(default="20:00", alias="sleepAt")
    wake_up_at: str | None = Field(default="08:00", alias="wakeUpAt")
    time_zone: str = Field(default="UTC", alias="timeZone")
    suspend_cronjobs: bool = Field(default=False, alias="suspendCronJobs")

    @field_validator("sleep_at", "wake_up_at")
    @classmethod
    def validate_clock(cls, v: str | None) -> str | None:
        if v is not None and not _CLOCK_RE.match(v):
            raise ValueError(f"'{v}' is not a 24h HH:MM time")
        return v


class EnvironmentConfig(BaseModel):
    """Static mapping of an environment to its namespace, schedule and tier."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = Field(description="Environment name used as override target")
    namespace: str = Field(default="", description="Kubernetes namespace")
    argocd_application: str = Field(
        default="",
        alias="argocdApplication",
        description="ArgoCD Application that syncs this environment",
    )
    schedule: SleepSchedule = Field(default_factory=SleepSchedule)
    tier: PriorityTier = Field(default=PriorityTier.WEB)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("environment name must not be empty")
        return v

    def model_post_init(self, __context: Any) -> None:
        if not self.namespace:
            self.namespace = self.name
        if not self.argocd_application:
            self.argocd_application = f"kube-green-{self.name}"
