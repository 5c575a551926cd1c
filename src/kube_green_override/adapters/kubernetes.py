# ABOUTME: Kubernetes-backed schedule authority for sleep/wake overrides
# ABOUTME: Reads the applied sleep/wake state of an environment's workloads

"""
Schedule authority reading workload state straight from the Kubernetes API.

ArgoCD reporting a revision as synced only means the override manifest was
applied; kube-green still has to scale the workloads. This adapter looks at
the workloads themselves:

- Sleeping: every Deployment in the namespace wants zero replicas, and, when
  the environment's schedule suspends CronJobs, every CronJob is suspended.
  A namespace with no workloads counts as Sleeping.
- Awake: anything else.

API endpoints used:

    GET /api/v1/namespaces/{ns}
    GET /apis/apps/v1/namespaces/{ns}/deployments
    GET /apis/batch/v1/namespaces/{ns}/cronjobs
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from kube_green_override.errors import AuthorityUnavailable, TargetNotFound
from kube_green_override.models import DesiredState
from kube_green_override.utils.client import ApiError, RestClient

if TYPE_CHECKING:
    from kube_green_override.config import KubernetesSettings
    from kube_green_override.models import EnvironmentConfig

logger = structlog.get_logger(__name__)


def deployment_replicas(item: dict[str, Any]) -> int:
    # Kubernetes defaults spec.replicas to 1 when omitted.
    replicas = item.get("spec", {}).get("replicas")
    return 1 if replicas is None else int(replicas)


def cronjob_suspended(item: dict[str, Any]) -> bool:
    return bool(item.get("spec", {}).get("suspend", False))


class KubernetesScheduleAuthority(RestClient):
    """ScheduleAuthority backed by Deployment and CronJob specs."""

    service_name = "Kubernetes"

    def __init__(self, settings: KubernetesSettings, timeout: float = 15.0) -> None:
        super().__init__(
            base_url=settings.resolved_api_url(),
            token=settings.resolved_token() or None,
            timeout=timeout,
            verify=settings.resolved_verify(),
        )

    async def _get(self, path: str) -> dict[str, Any]:
        try:
            return await self._request("GET", path)
        except ApiError as e:
            if e.code == 404:
                raise
            raise AuthorityUnavailable(str(e)) from e
        except httpx.HTTPError as e:
            raise AuthorityUnavailable(f"Kubernetes API unreachable: {e}") from e

    async def get_applied_state(self, environment: EnvironmentConfig) -> DesiredState:
        ns = environment.namespace
        try:
            await self._get(f"/api/v1/namespaces/{ns}")
        except ApiError as e:
            raise TargetNotFound(f"Namespace '{ns}' does not exist") from e

        try:
            deployments = (await self._get(f"/apis/apps/v1/namespaces/{ns}/deployments")).get(
                "items"
            ) or []
            cronjobs: list[dict[str, Any]] = []
            if environment.schedule.suspend_cronjobs:
                cronjobs = (await self._get(f"/apis/batch/v1/namespaces/{ns}/cronjobs")).get(
                    "items"
                ) or []
        except ApiError as e:
            # Namespace vanished between the two reads.
            raise TargetNotFound(f"Namespace '{ns}' does not exist") from e

        running = [d.get("metadata", {}).get("name") for d in deployments if deployment_replicas(d) > 0]
        active_cronjobs = [c.get("metadata", {}).get("name") for c in cronjobs if not cronjob_suspended(c)]

        state = DesiredState.AWAKE if running or active_cronjobs else DesiredState.SLEEPING
        logger.debug(
            "Applied state",
            namespace=ns,
            state=state.value,
            deployments=len(deployments),
            running=running[:5],
            active_cronjobs=active_cronjobs[:5],
        )
        return state
