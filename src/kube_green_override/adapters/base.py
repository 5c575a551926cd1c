# ABOUTME: Capability interfaces the override coordinator depends on
# ABOUTME: One narrow protocol per external collaborator (Git, GitOps, operator, messaging)

"""
Capability interfaces for the external collaborators.

The coordinator only ever talks to these protocols. Production wiring plugs
in the GitLab, ArgoCD, Kubernetes and Slack adapters; tests plug in fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from kube_green_override.models import (
        AttemptStatus,
        DesiredState,
        EnvironmentConfig,
        OverrideAttempt,
        OverrideRequest,
        SyncStatus,
    )


@runtime_checkable
class DesiredStateStore(Protocol):
    """Versioned store of declarative sleep/wake configuration."""

    async def record_change(
        self, environment: EnvironmentConfig, request: OverrideRequest
    ) -> str:
        """
        Persist ``request.desired_state`` for the environment.

        Must be idempotent under retry: if a previous call for the same
        logical change landed but was reported as failed, calling again
        returns that revision instead of committing a second one.

        Returns:
            Revision identifier (commit SHA) that carries the change.

        Raises:
            StoreUnavailable: Store unreachable or server-side failure.
            WriteConflict: Head moved concurrently; retry against new head.
        """
        ...


@runtime_checkable
class SyncTrigger(Protocol):
    """GitOps controller converging the cluster to a revision."""

    async def trigger_sync(self, environment: EnvironmentConfig, revision: str) -> None:
        """Raises SyncRejected if the controller refuses the revision."""
        ...

    async def poll_status(self, environment: EnvironmentConfig, revision: str) -> SyncStatus:
        """Non-blocking convergence check. Raises SyncUnavailable on transient failure."""
        ...


@runtime_checkable
class ScheduleAuthority(Protocol):
    """Operator-managed workloads, read back independently of the GitOps report."""

    async def get_applied_state(self, environment: EnvironmentConfig) -> DesiredState:
        """Raises TargetNotFound if the environment's namespace does not exist."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Outbound status messages. Best-effort: never raises."""

    async def notify(
        self, attempt: OverrideAttempt, status: AttemptStatus, detail: str
    ) -> bool:
        """Return True if the message was delivered."""
        ...
