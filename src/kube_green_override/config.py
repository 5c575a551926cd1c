# ABOUTME: Configuration management for the kube-green override service
# ABOUTME: Handles environment variables, external service settings, and environment mapping

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module holds all configuration for the override service. It:

1. READS environment variables (GITLAB_TOKEN, ARGOCD_SERVER, SLACK_WEBHOOK_URL...)
2. VALIDATES them (URLs get a scheme, intervals must be positive, ...)
3. PROVIDES typed access to settings throughout the application

The variable names for the external services are the ones the deploy and
setup scripts already export, so one ``.env`` file serves both.

=============================================================================
ARCHITECTURE: ONE SETTINGS CLASS PER COLLABORATOR
=============================================================================

    GitlabSettings       GITLAB_*            desired-state store (Git)
    ArgocdSettings       ARGOCD_*            sync trigger (GitOps controller)
    KubernetesSettings   KUBERNETES_*        schedule authority (cluster API)
    SlackSettings        SLACK_*             notification sink
    CoordinatorSettings  OVERRIDE_*          polling, timeouts, retries
    GuardSettings        OVERRIDE_GUARD_*    read-only mode, protection, rate limits
    ServerSettings       KGO_*               environments, logging

ServerSettings nests all the others, the same way every component receives
exactly the slice it needs.

=============================================================================
ENVIRONMENTS
=============================================================================

The set of override targets is static configuration. It can be given as a
JSON list in KGO_ENVIRONMENTS, or as a YAML file named by
KGO_ENVIRONMENTS_FILE:

    environments:
      - name: staging
        namespace: staging
        argocdApplication: kube-green-staging
        tier: web
        schedule:
          weekdays: "1-5"
          sleepAt: "20:00"
          wakeUpAt: "08:00"
          timeZone: Europe/Rome

Without either, the development/staging/production trio the deploy script
knows about is used.
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any

import yaml
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kube_green_override.models import EnvironmentConfig, PriorityTier, SleepSchedule

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")


def _normalize_url(v: str) -> str:
    """Add https:// when the scheme is missing and drop trailing slashes."""
    if not v:
        return v
    if not v.startswith(("http://", "https://")):
        v = f"https://{v}"
    return v.rstrip("/")


# =============================================================================
# EXTERNAL SERVICES
# =============================================================================


class GitlabSettings(BaseSettings):
    """GitLab project holding the desired-state overrides file."""

    model_config = SettingsConfigDict(env_prefix="GITLAB_", extra="ignore")

    url: str = Field(default="https://gitlab.com", description="GitLab base URL")
    token: SecretStr = Field(default=SecretStr(""), description="GitLab API token")
    project_id: str = Field(default="", description="Numeric id or url-encoded path")
    branch: str = Field(default="main", description="Branch ArgoCD tracks")
    overrides_path: str = Field(
        default="apps/kube-green/overrides.yaml",
        description="Repository path of the shared overrides document",
    )
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _normalize_url(v)

    @property
    def configured(self) -> bool:
        return bool(self.project_id and self.token.get_secret_value())


class ArgocdSettings(BaseSettings):
    """
    ArgoCD server used to trigger and observe syncs.

    Reads ARGOCD_SERVER / ARGOCD_TOKEN / ARGOCD_INSECURE, the same names the
    deploy script uses for ``argocd app sync``.
    """

    model_config = SettingsConfigDict(env_prefix="ARGOCD_", extra="ignore")

    server: str = Field(default="", description="ArgoCD server URL")
    token: SecretStr = Field(default=SecretStr(""), description="ArgoCD API token")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("server")
    @classmethod
    def validate_server(cls, v: str) -> str:
        return _normalize_url(v)

    @property
    def configured(self) -> bool:
        return bool(self.server)


class KubernetesSettings(BaseSettings):
    """
    Kubernetes API access for reading back applied sleep/wake state.

    In a pod, KUBERNETES_SERVICE_HOST/PORT are injected by the kubelet and
    land in ``service_host``/``service_port`` through the env prefix, and the
    service-account token and CA are read from their mounted files. Outside
    the cluster, set KUBERNETES_API_URL and KUBERNETES_TOKEN.
    """

    model_config = SettingsConfigDict(env_prefix="KUBERNETES_", extra="ignore")

    api_url: str = Field(default="", description="Explicit API server URL")
    service_host: str = Field(default="", description="In-cluster service host")
    service_port: int = Field(default=443, description="In-cluster service port")
    token: SecretStr = Field(default=SecretStr(""), description="Bearer token")
    token_file: Path = Field(default=SERVICE_ACCOUNT_DIR / "token")
    ca_file: Path = Field(default=SERVICE_ACCOUNT_DIR / "ca.crt")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        return _normalize_url(v)

    @property
    def configured(self) -> bool:
        return bool(self.resolved_api_url())

    def resolved_api_url(self) -> str:
        if self.api_url:
            return self.api_url
        if self.service_host:
            return f"https://{self.service_host}:{self.service_port}"
        return ""

    def resolved_token(self) -> str:
        token = self.token.get_secret_value()
        if not token and self.token_file.is_file():
            token = self.token_file.read_text().strip()
        return token

    def resolved_verify(self) -> bool | str:
        if self.insecure:
            return False
        if self.ca_file.is_file():
            return str(self.ca_file)
        return True


class SlackSettings(BaseSettings):
    """Slack webhook for notifications and signing secret for slash commands."""

    model_config = SettingsConfigDict(env_prefix="SLACK_", extra="ignore")

    webhook_url: SecretStr = Field(default=SecretStr(""), description="Incoming webhook URL")
    signing_secret: SecretStr = Field(
        default=SecretStr(""), description="Secret used to verify slash-command requests"
    )
    channel: str | None = Field(default=None, description="Channel override for messages")
    timeout: float = Field(default=10.0, gt=0, description="Webhook request timeout")


# =============================================================================
# COORDINATION
# =============================================================================


class CoordinatorSettings(BaseSettings):
    """
    Tunables of the override state machine.

    Defaults follow the latency targets: an override is acknowledged well
    within 30 seconds, a wake completes in under 5 minutes, so convergence is
    bounded at 300 seconds and polled every 5.
    """

    model_config = SettingsConfigDict(env_prefix="OVERRIDE_", extra="ignore")

    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between polls")
    convergence_timeout: float = Field(
        default=300.0, gt=0, description="Maximum seconds spent in Syncing"
    )
    store_write_attempts: int = Field(
        default=3, ge=1, description="Total desired-state write attempts"
    )
    store_retry_max_wait: float = Field(
        default=4.0, ge=0, description="Upper bound of the write retry backoff"
    )
    notify_progress: bool = Field(
        default=True, description="Send a progress message on entering Syncing"
    )


class GuardSettings(BaseSettings):
    """Who may override what, and how often."""

    model_config = SettingsConfigDict(env_prefix="OVERRIDE_GUARD_", extra="ignore")

    read_only: bool = Field(default=False, description="Reject every override")
    protected_environments: list[str] = Field(
        default_factory=lambda: ["production"],
        description="Environments that can never be forced to sleep",
    )
    rate_limit_calls: int = Field(default=10, ge=1, description="Overrides per window")
    rate_limit_window: int = Field(default=60, ge=1, description="Window in seconds")
    audit_log: Path | None = Field(default=None, description="JSON-lines audit file")


# =============================================================================
# MAIN SETTINGS
# =============================================================================

DEFAULT_ENVIRONMENTS: tuple[EnvironmentConfig, ...] = (
    EnvironmentConfig(
        name="development",
        tier=PriorityTier.BACKGROUND,
        schedule=SleepSchedule(sleep_at="19:00", wake_up_at="08:00"),
    ),
    EnvironmentConfig(name="staging", tier=PriorityTier.WEB),
    EnvironmentConfig(
        name="production",
        tier=PriorityTier.DATA,
        schedule=SleepSchedule(weekdays="0,6", sleep_at="22:00", wake_up_at="06:00"),
    ),
)


class ServerSettings(BaseSettings):
    """
    Top-level configuration container.

    USAGE:
    ------
        settings = load_settings()
        settings.coordinator.poll_interval
        settings.environment_map()["staging"].namespace
    """

    model_config = SettingsConfigDict(
        env_prefix="KGO_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    gitlab: GitlabSettings = Field(default_factory=GitlabSettings)
    argocd: ArgocdSettings = Field(default_factory=ArgocdSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    slack: SlackSettings = Field(default_factory=SlackSettings)
    coordinator: CoordinatorSettings = Field(default_factory=CoordinatorSettings)
    guard: GuardSettings = Field(default_factory=GuardSettings)

    environments: list[EnvironmentConfig] = Field(
        default_factory=list,
        description="Override targets; JSON list in KGO_ENVIRONMENTS",
    )
    environments_file: Path | None = Field(
        default=None,
        description="YAML file with an 'environments' list",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    def environment_map(self) -> dict[str, EnvironmentConfig]:
        """
        Resolve the configured environments keyed by name.

        Precedence: explicit ``environments``, then ``environments_file``,
        then DEFAULT_ENVIRONMENTS.

        Raises:
            ValueError: On duplicate environment names or a malformed file.
        """
        if self.environments:
            envs = list(self.environments)
        elif self.environments_file:
            envs = load_environments_file(self.environments_file)
        else:
            envs = list(DEFAULT_ENVIRONMENTS)

        mapping: dict[str, EnvironmentConfig] = {}
        for env in envs:
            if env.name in mapping:
                raise ValueError(f"Duplicate environment '{env.name}'")
            mapping[env.name] = env
        return mapping


def load_environments_file(path: Path) -> list[EnvironmentConfig]:
    """Parse a YAML document with a top-level ``environments`` list."""
    with path.open() as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict) or not isinstance(data.get("environments"), list):
        raise ValueError(f"{path}: expected a mapping with an 'environments' list")

    return [EnvironmentConfig.model_validate(item) for item in data["environments"]]


def load_settings() -> ServerSettings:
    """
    Load settings from the environment with validation.

    If KGO_ENV_FILE is set, additional variables are read from that file,
    which is handy for local development:

        GITLAB_TOKEN=glpat-...
        GITLAB_PROJECT_ID=4242
        ARGOCD_SERVER=localhost:8443
        ARGOCD_INSECURE=true

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    env_file = os.environ.get("KGO_ENV_FILE")
    if not env_file:
        return ServerSettings()

    # Nested settings classes read their own prefixes, so each gets the file too.
    return ServerSettings(
        _env_file=env_file,
        gitlab=GitlabSettings(_env_file=env_file),
        argocd=ArgocdSettings(_env_file=env_file),
        kubernetes=KubernetesSettings(_env_file=env_file),
        slack=SlackSettings(_env_file=env_file),
        coordinator=CoordinatorSettings(_env_file=env_file),
        guard=GuardSettings(_env_file=env_file),
    )
