# ABOUTME: In-process desired-state store and simulated cluster
# ABOUTME: Lets the coordinator run end-to-end without GitLab, ArgoCD or a cluster

"""
In-memory adapters for local runs and tests.

``InMemoryStateStore`` keeps a linear commit history of the overrides
document. ``SimulatedCluster`` plays both the sync trigger and the schedule
authority: syncing a revision immediately applies the desired states that
revision records.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
from typing import TYPE_CHECKING, Any

import structlog

from kube_green_override.adapters.gitlab import override_entry
from kube_green_override.errors import SyncRejected, TargetNotFound
from kube_green_override.models import DesiredState, SyncStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

    from kube_green_override.models import EnvironmentConfig, OverrideRequest

logger = structlog.get_logger(__name__)


class InMemoryStateStore:
    """DesiredStateStore with a linear in-process commit history."""

    def __init__(self) -> None:
        self._commits: list[tuple[str, dict[str, Any]]] = []
        self._lock = asyncio.Lock()

    @property
    def head(self) -> str | None:
        return self._commits[-1][0] if self._commits else None

    @property
    def revisions(self) -> list[str]:
        return [sha for sha, _ in self._commits]

    def document(self, revision: str | None = None) -> dict[str, Any]:
        """Overrides document at ``revision`` (head when None)."""
        if not self._commits:
            return {"overrides": {}}
        if revision is None:
            return copy.deepcopy(self._commits[-1][1])
        for sha, doc in self._commits:
            if sha == revision:
                return copy.deepcopy(doc)
        raise KeyError(revision)

    def desired_state_at(self, revision: str, target: str) -> DesiredState | None:
        entry = self.document(revision)["overrides"].get(target)
        return DesiredState(entry["desiredState"]) if entry else None

    def _commit(self, document: dict[str, Any]) -> str:
        parent = self.head or ""
        digest = hashlib.sha1(
            (parent + json.dumps(document, sort_keys=True)).encode(),
            usedforsecurity=False,
        ).hexdigest()
        self._commits.append((digest, document))
        return digest

    async def record_change(
        self, environment: EnvironmentConfig, request: OverrideRequest
    ) -> str:
        entry = override_entry(environment, request)
        async with self._lock:
            document = self.document()
            if self.head is not None and document["overrides"].get(environment.name) == entry:
                return self.head
            document["overrides"][environment.name] = entry
            revision = self._commit(document)

        logger.info("Override committed", target=environment.name, revision=revision)
        return revision


class SimulatedCluster:
    """SyncTrigger and ScheduleAuthority over an InMemoryStateStore."""

    def __init__(
        self,
        store: InMemoryStateStore,
        initial: dict[str, DesiredState] | None = None,
        missing: Iterable[str] = (),
    ) -> None:
        self._store = store
        self._applied: dict[str, DesiredState] = dict(initial or {})
        self._synced: dict[str, str] = {}
        self._missing = set(missing)
        self.sync_calls: list[tuple[str, str]] = []

    def set_applied(self, target: str, state: DesiredState) -> None:
        self._applied[target] = state

    async def trigger_sync(self, environment: EnvironmentConfig, revision: str) -> None:
        self.sync_calls.append((environment.name, revision))
        if revision not in self._store.revisions:
            raise SyncRejected(f"Unknown revision {revision}")
        self._synced[environment.name] = revision
        state = self._store.desired_state_at(revision, environment.name)
        if state is not None:
            self._applied[environment.name] = state

    async def poll_status(self, environment: EnvironmentConfig, revision: str) -> SyncStatus:
        if self._synced.get(environment.name) == revision:
            return SyncStatus.CONVERGED
        return SyncStatus.IN_PROGRESS

    async def get_applied_state(self, environment: EnvironmentConfig) -> DesiredState:
        if environment.name in self._missing:
            raise TargetNotFound(f"Namespace '{environment.namespace}' does not exist")
        return self._applied.get(environment.name, DesiredState.AWAKE)
