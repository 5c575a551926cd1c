# ABOUTME: ArgoCD-backed sync trigger for sleep/wake overrides
# ABOUTME: Syncs an environment's Application to a revision and reports convergence

"""
Sync trigger on top of the ArgoCD REST API.

Each environment is deployed by one ArgoCD Application (by default
``kube-green-<environment>``). Triggering a sync pins that Application's
sync operation to the override's commit; convergence is read back from the
Application status:

    status.sync.status / status.sync.revision      what the cluster is synced to
    status.operationState.phase                    Running, Succeeded, Failed, Error
    status.operationState.syncResult.revision      revision the operation targeted

API endpoints used:

    GET  /api/v1/applications/{name}
    POST /api/v1/applications/{name}/sync
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from kube_green_override.errors import SyncRejected, SyncUnavailable
from kube_green_override.models import SyncStatus
from kube_green_override.utils.client import ApiError, RestClient

if TYPE_CHECKING:
    from kube_green_override.config import ArgocdSettings
    from kube_green_override.models import EnvironmentConfig

logger = structlog.get_logger(__name__)

FAILED_PHASES = frozenset({"Failed", "Error"})
ACTIVE_PHASES = frozenset({"Running", "Terminating"})


@dataclass
class Application:
    """The slice of an ArgoCD Application this service cares about."""

    name: str
    sync_status: str
    sync_revision: str
    health_status: str
    operation_phase: str | None = None
    operation_revision: str | None = None
    operation_message: str | None = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Application:
        metadata = data.get("metadata", {})
        status = data.get("status", {})
        sync = status.get("sync", {})
        operation = status.get("operationState") or {}

        op_revision = (operation.get("syncResult") or {}).get("revision") or (
            (operation.get("operation") or {}).get("sync", {}).get("revision")
        )

        return cls(
            name=metadata.get("name", ""),
            sync_status=sync.get("status", "Unknown"),
            sync_revision=sync.get("revision", ""),
            health_status=status.get("health", {}).get("status", "Unknown"),
            operation_phase=operation.get("phase"),
            operation_revision=op_revision,
            operation_message=operation.get("message"),
        )

    def convergence(self, revision: str) -> SyncStatus:
        """
        Classify this status snapshot against the revision being synced.

        Every environment's entry lives on the same branch, so an override
        for another environment committed after ours leaves the Application
        Synced at a later revision that still carries our entry. Synced at any
        revision counts as converged; the caller confirms against the
        workloads.
        """
        if self.operation_revision == revision and self.operation_phase in FAILED_PHASES:
            return SyncStatus.ERRORED

        if self.operation_phase in ACTIVE_PHASES:
            return SyncStatus.IN_PROGRESS

        if self.sync_status == "Synced":
            return SyncStatus.CONVERGED

        if self.operation_revision == revision and self.operation_phase == "Succeeded":
            return SyncStatus.CONVERGED

        return SyncStatus.IN_PROGRESS


class ArgocdSyncTrigger(RestClient):
    """SyncTrigger driving one ArgoCD Application per environment."""

    service_name = "ArgoCD"

    def __init__(self, settings: ArgocdSettings, timeout: float = 30.0) -> None:
        super().__init__(
            base_url=f"{settings.server}/api/v1",
            token=settings.token.get_secret_value(),
            timeout=timeout,
            verify=not settings.insecure,
        )

    async def get_application(self, name: str) -> Application:
        data = await self._request("GET", f"/applications/{name}")
        return Application.from_api_response(data)

    async def sync_application(self, name: str, revision: str) -> dict[str, Any]:
        """Start a real (non dry-run, non-pruning) sync pinned to ``revision``."""
        body: dict[str, Any] = {
            "revision": revision,
            "dryRun": False,
            "prune": False,
        }
        return await self._request("POST", f"/applications/{name}/sync", json_data=body)

    async def trigger_sync(self, environment: EnvironmentConfig, revision: str) -> None:
        app_name = environment.argocd_application
        try:
            await self.sync_application(app_name, revision)
        except ApiError as e:
            raise SyncRejected(f"{app_name}@{revision[:12]}: {e}") from e
        except httpx.HTTPError as e:
            raise SyncRejected(f"{app_name}@{revision[:12]}: ArgoCD unreachable: {e}") from e

        logger.info("Sync triggered", application=app_name, revision=revision)

    async def poll_status(self, environment: EnvironmentConfig, revision: str) -> SyncStatus:
        app_name = environment.argocd_application
        try:
            app = await self.get_application(app_name)
        except (ApiError, httpx.HTTPError) as e:
            raise SyncUnavailable(f"{app_name}: {e}") from e

        status = app.convergence(revision)
        if status is SyncStatus.ERRORED:
            logger.warning(
                "Sync operation failed",
                application=app_name,
                revision=revision,
                message=app.operation_message,
            )

        logger.debug(
            "Sync status",
            application=app_name,
            revision=revision,
            status=status.value,
            phase=app.operation_phase,
            sync_status=app.sync_status,
        )
        return status
