# ABOUTME: Pytest fixtures and configuration for kube-green override tests
# ABOUTME: Provides shared fixtures for unit and integration tests

import os
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from fakes import RecordingNotifier, ScriptedCluster
from kube_green_override.adapters.memory import InMemoryStateStore
from kube_green_override.config import (
    ArgocdSettings,
    CoordinatorSettings,
    GitlabSettings,
    GuardSettings,
    KubernetesSettings,
    SlackSettings,
)
from kube_green_override.coordinator import OverrideCoordinator
from kube_green_override.models import (
    DesiredState,
    EnvironmentConfig,
    OverrideRequest,
    PriorityTier,
    SleepSchedule,
)
from kube_green_override.utils.logging import AuditLogger


@pytest.fixture
def environments() -> list[EnvironmentConfig]:
    """Create the development/staging/production environment set."""
    return [
        EnvironmentConfig(name="development", tier=PriorityTier.BACKGROUND),
        EnvironmentConfig(name="staging", tier=PriorityTier.WEB),
        EnvironmentConfig(
            name="production",
            tier=PriorityTier.DATA,
            schedule=SleepSchedule(weekdays="0,6", sleep_at="22:00", wake_up_at="06:00"),
        ),
    ]


@pytest.fixture
def staging(environments: list[EnvironmentConfig]) -> EnvironmentConfig:
    """Get the staging environment."""
    return environments[1]


@pytest.fixture
def coordinator_settings() -> CoordinatorSettings:
    """Create coordinator settings with test-sized timings."""
    return CoordinatorSettings(
        poll_interval=0.01,
        convergence_timeout=0.2,
        store_write_attempts=3,
        store_retry_max_wait=0,
        notify_progress=True,
    )


@pytest.fixture
def guard_settings() -> GuardSettings:
    """Create guard settings for testing."""
    return GuardSettings(
        read_only=False,
        protected_environments=["production"],
        rate_limit_calls=100,
        rate_limit_window=60,
        audit_log=None,
    )


@pytest.fixture
def store() -> InMemoryStateStore:
    """Create an empty in-memory desired-state store."""
    return InMemoryStateStore()


@pytest.fixture
def cluster(store: InMemoryStateStore) -> ScriptedCluster:
    """Create a well-behaved cluster where staging is asleep."""
    return ScriptedCluster(store, initial={"staging": DesiredState.SLEEPING})


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Create a notifier that records messages."""
    return RecordingNotifier()


@pytest.fixture
def audit_logger(tmp_path: Any) -> AuditLogger:
    """Create an audit logger writing to a temporary file."""
    return AuditLogger(tmp_path / "audit.jsonl")


@pytest.fixture
def coordinator(
    environments: list[EnvironmentConfig],
    store: InMemoryStateStore,
    cluster: ScriptedCluster,
    notifier: RecordingNotifier,
    coordinator_settings: CoordinatorSettings,
    audit_logger: AuditLogger,
) -> OverrideCoordinator:
    """Create a coordinator over the in-memory store and scripted cluster."""
    return OverrideCoordinator(
        environments=environments,
        store=store,
        sync=cluster,
        authority=cluster,
        notifier=notifier,
        settings=coordinator_settings,
        audit_logger=audit_logger,
    )


@pytest.fixture
def wake_staging() -> OverrideRequest:
    """Create a request to wake staging."""
    return OverrideRequest(
        target="staging",
        desired_state=DesiredState.AWAKE,
        requested_by="alice",
        reason="demo",
    )


@pytest.fixture
def gitlab_settings() -> GitlabSettings:
    """Create GitLab settings for respx-based tests."""
    return GitlabSettings(
        url="https://gitlab.example.com",
        token=SecretStr("glpat-test-token"),
        project_id="platform/gitops",
        branch="main",
        overrides_path="apps/kube-green/overrides.yaml",
    )


@pytest.fixture
def argocd_settings() -> ArgocdSettings:
    """Create ArgoCD settings for respx-based tests."""
    return ArgocdSettings(server="https://argocd.example.com", token=SecretStr("argo-token"))


@pytest.fixture
def kubernetes_settings(tmp_path: Any) -> KubernetesSettings:
    """Create Kubernetes settings that ignore any mounted service account."""
    return KubernetesSettings(
        api_url="https://k8s.example.com:6443",
        token=SecretStr("k8s-token"),
        token_file=tmp_path / "missing-token",
        ca_file=tmp_path / "missing-ca.crt",
    )


@pytest.fixture
def slack_settings() -> SlackSettings:
    """Create Slack settings with a webhook configured."""
    return SlackSettings(
        webhook_url=SecretStr("https://hooks.slack.com/services/T000/B000/XXXX"),
        signing_secret=SecretStr("8f742231b10e8888abcd99yyyzzz85a5"),
        channel="#kube-green",
    )


@pytest.fixture
def mock_context() -> Any:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def live_backends_configured() -> bool:
    """Check whether live GitLab, ArgoCD and Kubernetes are configured."""
    return all(
        os.environ.get(name)
        for name in ("GITLAB_PROJECT_ID", "GITLAB_TOKEN", "ARGOCD_SERVER", "KUBERNETES_API_URL")
    )
