# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Exposes override submission, status queries and Slack commands as MCP tools

"""kube-green override service - manual sleep/wake overrides via MCP and Slack."""

from __future__ import annotations

import sys
from contextlib import AsyncExitStack, asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from kube_green_override.adapters.argocd import ArgocdSyncTrigger
from kube_green_override.adapters.gitlab import GitlabStateStore
from kube_green_override.adapters.kubernetes import KubernetesScheduleAuthority
from kube_green_override.adapters.memory import InMemoryStateStore, SimulatedCluster
from kube_green_override.adapters.slack import SlackNotifier
from kube_green_override.commands import (
    format_attempt,
    handle_command,
    parse_form,
    verify_slack_signature,
)
from kube_green_override.config import ServerSettings, load_settings
from kube_green_override.coordinator import OverrideCoordinator
from kube_green_override.errors import OperationBlocked, OverrideError
from kube_green_override.models import AttemptStatus, DesiredState, OverrideRequest
from kube_green_override.utils.logging import AuditLogger, configure_logging, set_correlation_id
from kube_green_override.utils.safety import OverrideGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ServerSettings | None = None
_coordinator: OverrideCoordinator | None = None
_audit_logger: AuditLogger | None = None


async def build_coordinator(
    settings: ServerSettings,
    stack: AsyncExitStack,
    audit_logger: AuditLogger | None = None,
) -> OverrideCoordinator:
    """
    Wire the coordinator to its adapters.

    With GitLab, ArgoCD and Kubernetes all configured the live adapters are
    used. With none of them configured the service runs against an
    in-process store and simulated cluster. A partial configuration is an
    error rather than a silent mix of real and simulated state.
    """
    backends = {
        "GitLab (GITLAB_PROJECT_ID, GITLAB_TOKEN)": settings.gitlab.configured,
        "ArgoCD (ARGOCD_SERVER)": settings.argocd.configured,
        "Kubernetes (KUBERNETES_API_URL or in-cluster)": settings.kubernetes.configured,
    }

    if all(backends.values()):
        store: Any = await stack.enter_async_context(GitlabStateStore(settings.gitlab))
        sync: Any = await stack.enter_async_context(ArgocdSyncTrigger(settings.argocd))
        authority: Any = await stack.enter_async_context(
            KubernetesScheduleAuthority(settings.kubernetes)
        )
        logger.info(
            "Using live backends",
            gitlab=settings.gitlab.url,
            argocd=settings.argocd.server,
            kubernetes=settings.kubernetes.resolved_api_url(),
        )
    elif not any(backends.values()):
        store = InMemoryStateStore()
        sync = authority = SimulatedCluster(store)
        logger.warning("No backends configured, running against a simulated cluster")
    else:
        missing = [name for name, ok in backends.items() if not ok]
        raise RuntimeError(f"Incomplete backend configuration, missing: {', '.join(missing)}")

    notifier = await stack.enter_async_context(SlackNotifier(settings.slack))

    coordinator = OverrideCoordinator(
        environments=settings.environment_map().values(),
        store=store,
        sync=sync,
        authority=authority,
        notifier=notifier,
        settings=settings.coordinator,
        guard=OverrideGuard(settings.guard),
        audit_logger=audit_logger,
    )
    stack.push_async_callback(coordinator.aclose)
    return coordinator


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config, connect backends, cleanup on shutdown."""
    global _settings, _coordinator, _audit_logger

    logger.info("Starting kube-green override server")

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    _audit_logger = AuditLogger(_settings.guard.audit_log)

    async with AsyncExitStack() as stack:
        _coordinator = await build_coordinator(_settings, stack, _audit_logger)
        logger.info(
            "Override coordinator ready",
            environments=[env.name for env in _coordinator.environments],
        )

        yield {"settings": _settings, "coordinator": _coordinator}

    _coordinator = None
    logger.info("kube-green override server stopped")


mcp = FastMCP("kube-green-override", lifespan=lifespan)


def get_settings() -> ServerSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_coordinator() -> OverrideCoordinator:
    """Get the override coordinator."""
    if not _coordinator:
        raise RuntimeError("Server not initialized")
    return _coordinator


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording queries."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


# =============================================================================
# OVERRIDES
# =============================================================================


class SubmitOverrideParams(BaseModel):
    """Parameters for submit_override tool."""

    environment: str = Field(description="Environment to override (e.g. staging)")
    desired_state: DesiredState = Field(description="Sleeping or Awake")
    requested_by: str = Field(min_length=1, description="Person requesting the override")
    reason: str | None = Field(default=None, description="Why the override is needed")
    wait: bool = Field(
        default=False,
        description="Wait until the override is applied, failed or timed out",
    )


@mcp.tool()
async def submit_override(params: SubmitOverrideParams, ctx: MCPContext) -> str:
    """
    Force an environment to sleep or wake up outside its schedule.

    The override is committed to Git, synced by ArgoCD and confirmed against
    the workloads. Only one override per environment runs at a time. Without
    ``wait`` this returns as soon as the override is accepted.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    request = OverrideRequest(
        target=params.environment,
        desired_state=params.desired_state,
        requested_by=params.requested_by,
        reason=params.reason,
    )
    coordinator = get_coordinator()

    try:
        if params.wait:
            await ctx.report_progress(0, 1, f"Overriding {params.environment}")
            attempt = await coordinator.submit(request)
            await ctx.report_progress(1, 1, attempt.status.value)
        else:
            attempt = await coordinator.start(request)
    except OperationBlocked as e:
        return e.format_message()
    except OverrideError as e:
        return f"Error: {e}"

    if params.wait:
        return format_attempt(attempt)
    return (
        f"Override {attempt.id} accepted: {attempt.target} -> {params.desired_state.value}\n"
        f"Use get_override_status with attempt_id='{attempt.id}' to follow it."
    )


class GetOverrideStatusParams(BaseModel):
    """Parameters for get_override_status tool."""

    attempt_id: str = Field(description="Attempt id returned by submit_override")


@mcp.tool()
async def get_override_status(params: GetOverrideStatusParams, ctx: MCPContext) -> str:
    """Show status, revision and history of one override attempt."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    try:
        attempt = get_coordinator().get_attempt(params.attempt_id)
    except OverrideError as e:
        return f"Error: {e}"

    get_audit_logger().log_query("get_override_status", params.attempt_id)
    return format_attempt(attempt)


class ListOverridesParams(BaseModel):
    """Parameters for list_overrides tool."""

    environment: str | None = Field(default=None, description="Only this environment")
    limit: int = Field(default=20, ge=1, le=200, description="Maximum attempts to show")


@mcp.tool()
async def list_overrides(params: ListOverridesParams, ctx: MCPContext) -> str:
    """List override attempts, newest first."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    attempts = get_coordinator().list_attempts(params.environment)[: params.limit]
    get_audit_logger().log_query("list_overrides", params.environment or "all")

    if not attempts:
        return "No override attempts found."

    lines = [f"Found {len(attempts)} override attempt(s):", ""]
    for attempt in attempts:
        marker = "[OK]" if attempt.status is AttemptStatus.APPLIED else ""
        if attempt.status in (AttemptStatus.FAILED, AttemptStatus.TIMED_OUT):
            marker = "[!]"
        lines.append(
            f"- {attempt.id} {attempt.target} -> {attempt.request.desired_state.value} "
            f"status={attempt.status.value} {marker} by {attempt.request.requested_by}"
        )
    return "\n".join(lines)


class ListEnvironmentsParams(BaseModel):
    """Parameters for list_environments tool."""

    tier: str | None = Field(default=None, description="Filter by tier (background, web, data)")


@mcp.tool()
async def list_environments(params: ListEnvironmentsParams, ctx: MCPContext) -> str:
    """List environments that can be overridden, with schedule and active override."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    coordinator = get_coordinator()
    envs = coordinator.environments
    if params.tier:
        envs = [e for e in envs if e.tier.value == params.tier]

    if not envs:
        return "No environments found matching the specified filters."

    lines = [f"Found {len(envs)} environment(s):", ""]
    for env in envs:
        schedule = env.schedule
        active = coordinator.active_attempt(env.name)
        line = (
            f"- {env.name} [{env.tier.value}] ns={env.namespace} "
            f"app={env.argocd_application} "
            f"sleeps {schedule.sleep_at}-{schedule.wake_up_at or 'never'} "
            f"{schedule.time_zone} on {schedule.weekdays}"
        )
        if active:
            line += f" (override {active.id} {active.status.value})"
        lines.append(line)
    return "\n".join(lines)


class RunSlackCommandParams(BaseModel):
    """Parameters for run_slack_command tool."""

    text: str = Field(default="", description="Slash-command text, e.g. 'wake staging demo'")
    user_name: str = Field(default="", description="Slack user issuing the command")
    body: str | None = Field(default=None, description="Raw form body of the Slack request")
    timestamp: str | None = Field(default=None, description="X-Slack-Request-Timestamp")
    signature: str | None = Field(default=None, description="X-Slack-Signature")


@mcp.tool()
async def run_slack_command(params: RunSlackCommandParams, ctx: MCPContext) -> str:
    """
    Run a /kube-green slash command relayed from Slack.

    When a signing secret is configured, the raw request body, timestamp and
    signature are required and verified; text and user are then taken from
    the signed body.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    text, user = params.text, params.user_name
    secret = get_settings().slack.signing_secret.get_secret_value()

    if secret:
        if not verify_slack_signature(
            secret, params.timestamp or "", params.body or "", params.signature or ""
        ):
            get_audit_logger().log("slack_command", "unknown", "rejected", {"code": "BadSignature"})
            return "Error: Slack request signature verification failed"
        form = parse_form(params.body or "")
        text, user = form.get("text", ""), form.get("user_name", "")

    if not user:
        return "Error: user_name is required"

    return await handle_command(get_coordinator(), text, user)


# =============================================================================
# RESOURCES
# =============================================================================


@mcp.resource("override://environments")
async def get_environments_resource() -> str:
    """Get configured environments."""
    coordinator = get_coordinator()
    lines = ["Configured Environments:"]
    for env in coordinator.environments:
        lines.append(
            f"  {env.name}: namespace={env.namespace} application={env.argocd_application} "
            f"tier={env.tier.value}"
        )
    return "\n".join(lines)


@mcp.resource("override://settings")
async def get_settings_resource() -> str:
    """Get current coordinator and guard settings."""
    settings = get_settings()
    coord = settings.coordinator
    guard = settings.guard

    return (
        "Override Settings:\n"
        f"  Poll interval: {coord.poll_interval}s\n"
        f"  Convergence timeout: {coord.convergence_timeout}s\n"
        f"  Store write attempts: {coord.store_write_attempts}\n"
        f"  Progress notifications: {coord.notify_progress}\n"
        f"  Read-only mode: {guard.read_only}\n"
        f"  Protected environments: {', '.join(guard.protected_environments) or 'none'}\n"
        f"  Rate limit: {guard.rate_limit_calls} overrides per {guard.rate_limit_window}s\n"
        f"  Slack notifications: {bool(settings.slack.webhook_url.get_secret_value())}"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the kube-green override server."""
    configure_logging(level="INFO")
    logger.info("kube-green override server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
