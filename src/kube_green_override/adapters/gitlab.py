# ABOUTME: GitLab-backed desired-state store for sleep/wake overrides
# ABOUTME: Commits per-environment override entries to a shared YAML document

"""
Desired-state store on top of the GitLab repository files API.

All overrides live in one YAML document on the branch ArgoCD tracks:

    overrides:
      staging:
        namespace: staging
        desiredState: Awake
        requestedBy: alice
        requestedAt: '2026-10-18T10:00:00+00:00'
        reason: demo in 10 minutes

A write replaces only the target's entry, so concurrent overrides for
different environments never clobber each other; the shared document itself
is protected by GitLab's ``last_commit_id`` check, which rejects a write
whose base is no longer head. The caller retries those as WriteConflict.

API endpoints used:

    GET  /projects/{id}/repository/files/{path}?ref={branch}
    PUT  /projects/{id}/repository/files/{path}     (update)
    POST /projects/{id}/repository/files/{path}     (create)
"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog
import yaml

from kube_green_override.errors import StoreUnavailable, WriteConflict
from kube_green_override.models import DesiredState
from kube_green_override.utils.client import ApiError, RestClient

if TYPE_CHECKING:
    from kube_green_override.config import GitlabSettings
    from kube_green_override.models import EnvironmentConfig, OverrideRequest

logger = structlog.get_logger(__name__)

# Phrases GitLab uses when the optimistic-concurrency check fails.
_CONFLICT_MARKERS = ("changed since", "already exists", "conflict")


def override_entry(environment: EnvironmentConfig, request: OverrideRequest) -> dict[str, Any]:
    """Serialized form of one environment's override in the shared document."""
    entry: dict[str, Any] = {
        "namespace": environment.namespace,
        "desiredState": request.desired_state.value,
        "requestedBy": request.requested_by,
        "requestedAt": request.requested_at.isoformat(),
    }
    if request.reason:
        entry["reason"] = request.reason
    return entry


def parse_document(content: str) -> dict[str, Any]:
    """Load the overrides document, tolerating an empty file."""
    data = yaml.safe_load(content) if content.strip() else None
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise StoreUnavailable("Overrides document is not a YAML mapping")
    overrides = data.setdefault("overrides", {})
    if overrides is None:
        data["overrides"] = {}
    elif not isinstance(overrides, dict):
        raise StoreUnavailable("'overrides' in the overrides document is not a mapping")
    return data


def render_document(data: dict[str, Any]) -> str:
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


class GitlabStateStore(RestClient):
    """DesiredStateStore committing override entries through the GitLab API."""

    service_name = "GitLab"

    def __init__(self, settings: GitlabSettings, timeout: float = 30.0) -> None:
        super().__init__(
            base_url=f"{settings.url}/api/v4",
            token=settings.token.get_secret_value(),
            timeout=timeout,
            verify=not settings.insecure,
        )
        self._settings = settings
        self._file_url = (
            f"/projects/{quote(settings.project_id, safe='')}"
            f"/repository/files/{quote(settings.overrides_path, safe='')}"
        )
        # Entry this store last tried to write, per target. Compared against
        # head before each write so a landed-but-unacknowledged commit is
        # never repeated.
        self._attempted: dict[str, dict[str, Any]] = {}

    async def read_head(self) -> tuple[dict[str, Any], str | None]:
        """
        Read the overrides document at branch head.

        Returns:
            (document, last_commit_id); last_commit_id is None when the file
            does not exist yet.
        """
        try:
            data = await self._request("GET", self._file_url, params={"ref": self._settings.branch})
        except ApiError as e:
            if e.code == 404:
                return parse_document(""), None
            raise StoreUnavailable(str(e)) from e
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"GitLab unreachable: {e}") from e

        raw = data.get("content", "")
        if data.get("encoding") == "base64":
            raw = base64.b64decode(raw).decode("utf-8")
        return parse_document(raw), data.get("last_commit_id")

    async def record_change(
        self, environment: EnvironmentConfig, request: OverrideRequest
    ) -> str:
        target = environment.name
        entry = override_entry(environment, request)
        log = logger.bind(target=target, desired_state=request.desired_state.value)

        document, head = await self.read_head()
        current = document["overrides"].get(target)

        if head is not None and current == entry:
            if self._attempted.get(target) == entry:
                log.info("Previous write already landed, reusing head", revision=head)
            else:
                log.info("Desired state already recorded at head", revision=head)
            self._attempted.pop(target, None)
            return head

        document["overrides"][target] = entry
        self._attempted[target] = entry

        body: dict[str, Any] = {
            "branch": self._settings.branch,
            "content": render_document(document),
            "encoding": "text",
            "commit_message": self._commit_message(request),
        }
        method = "POST" if head is None else "PUT"
        if head is not None:
            body["last_commit_id"] = head

        try:
            await self._request(method, self._file_url, json_data=body)
        except ApiError as e:
            if e.code in (400, 409) and any(m in str(e).lower() for m in _CONFLICT_MARKERS):
                raise WriteConflict(f"Overrides document moved past {head}: {e.message}") from e
            raise StoreUnavailable(str(e)) from e
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"GitLab write failed: {e}") from e

        _, revision = await self.read_head()
        if revision is None:
            raise StoreUnavailable("Overrides document missing right after commit")

        self._attempted.pop(target, None)
        log.info("Override committed", revision=revision)
        return revision

    @staticmethod
    def _commit_message(request: OverrideRequest) -> str:
        verb = "sleep" if request.desired_state is DesiredState.SLEEPING else "wake"
        message = f"override({request.target}): {verb} requested by {request.requested_by}"
        if request.reason:
            message += f"\n\n{request.reason}"
        return message
