# ABOUTME: Override coordinator driving sleep/wake overrides from intent to outcome
# ABOUTME: Owns the in-flight registry and the Pending -> Recorded -> Syncing state machine

"""
Override coordinator.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

A human asks for an environment to be put to sleep or woken up. This module
turns that request into a Git commit, asks the GitOps controller to sync it,
waits until the workloads actually reflect it, and tells Slack how it went.

Every request becomes an OverrideAttempt that moves strictly forward:

    Pending --> Recorded --> Syncing --> Applied
       |           |           |-------> TimedOut
       +-----------+-----------+-------> Failed

    Pending   validate, commit the per-environment entry to the store
    Recorded  trigger a sync of that exact revision
    Syncing   poll the sync trigger and the schedule authority until both
              agree, or the convergence bound elapses

=============================================================================
ONE ATTEMPT PER TARGET
=============================================================================

Two overrides racing on the same environment would produce two GitOps
revisions fighting each other. The coordinator keeps a registry of in-flight
attempts keyed by target, and the check-and-register step of ``submit`` runs
under one asyncio.Lock. A second request for a busy target is rejected with
ConflictingOverride naming the attempt in flight; it is never queued.
Attempts for different targets run concurrently.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kube_green_override.config import CoordinatorSettings
from kube_green_override.errors import (
    RETRYABLE_STORE_ERRORS,
    TRANSIENT_POLL_ERRORS,
    AttemptNotFound,
    AuthorityUnavailable,
    ConflictingOverride,
    OverrideError,
    SyncErrored,
    UnknownTarget,
)
from kube_green_override.models import AttemptStatus, OverrideAttempt, SyncStatus
from kube_green_override.utils.logging import AuditLogger, correlation_id

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tenacity import RetryCallState

    from kube_green_override.adapters.base import (
        DesiredStateStore,
        NotificationSink,
        ScheduleAuthority,
        SyncTrigger,
    )
    from kube_green_override.models import EnvironmentConfig, OverrideRequest
    from kube_green_override.utils.safety import OverrideGuard

logger = structlog.get_logger(__name__)

INTERNAL_ERROR = "InternalError"


class OverrideCoordinator:
    """Drives override requests through the attempt state machine."""

    def __init__(
        self,
        environments: Iterable[EnvironmentConfig],
        store: DesiredStateStore,
        sync: SyncTrigger,
        authority: ScheduleAuthority,
        notifier: NotificationSink,
        settings: CoordinatorSettings | None = None,
        guard: OverrideGuard | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._environments = {env.name: env for env in environments}
        self._store = store
        self._sync = sync
        self._authority = authority
        self._notifier = notifier
        self._settings = settings or CoordinatorSettings()
        self._guard = guard
        self._audit = audit_logger or AuditLogger()

        self._lock = asyncio.Lock()
        self._in_flight: dict[str, OverrideAttempt] = {}
        self._attempts: dict[str, OverrideAttempt] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    @property
    def environments(self) -> list[EnvironmentConfig]:
        return list(self._environments.values())

    def environment(self, name: str) -> EnvironmentConfig:
        try:
            return self._environments[name]
        except KeyError:
            raise UnknownTarget(name, self._environments) from None

    def get_attempt(self, attempt_id: str) -> OverrideAttempt:
        try:
            return self._attempts[attempt_id]
        except KeyError:
            raise AttemptNotFound(f"No override attempt '{attempt_id}'") from None

    def active_attempt(self, target: str) -> OverrideAttempt | None:
        return self._in_flight.get(target)

    def list_attempts(self, target: str | None = None) -> list[OverrideAttempt]:
        """Attempts newest first, optionally for one target."""
        attempts = reversed(self._attempts.values())
        return [a for a in attempts if target is None or a.target == target]

    # -------------------------------------------------------------------------
    # SUBMISSION
    # -------------------------------------------------------------------------

    async def submit(self, request: OverrideRequest) -> OverrideAttempt:
        """
        Carry out ``request`` and return the attempt once it is terminal.

        Returns after at most the store retries, one sync trigger and the
        convergence bound; an attempt that does not converge in time comes
        back TimedOut.

        Raises:
            UnknownTarget: ``request.target`` is not a configured environment.
            ConflictingOverride: Another attempt for the target is in flight.
            OperationBlocked: The override guard refused the request.
        """
        environment, attempt = await self._register(request)
        await self._run(environment, attempt)
        return attempt

    async def start(self, request: OverrideRequest) -> OverrideAttempt:
        """
        Register ``request`` and drive it in a background task.

        Same admission checks and errors as ``submit``, but returns the
        Pending attempt immediately. Slack expects a slash command to be
        answered within three seconds, far less than a wake takes.
        """
        environment, attempt = await self._register(request)
        task = asyncio.create_task(self._run(environment, attempt), name=f"override-{attempt.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return attempt

    async def aclose(self) -> None:
        """Cancel background attempts; each is closed out as Failed."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _register(self, request: OverrideRequest) -> tuple[EnvironmentConfig, OverrideAttempt]:
        log = logger.bind(target=request.target, requested_by=request.requested_by)

        environment = self._environments.get(request.target)
        if environment is None:
            error = UnknownTarget(request.target, self._environments)
            self._audit.log_rejected(request.target, request.requested_by, error.code, error.message)
            log.warning("Override rejected", code=error.code)
            raise error

        if self._guard is not None:
            blocked = self._guard.check(request)
            if blocked is not None:
                self._audit.log_rejected(
                    request.target, request.requested_by, blocked.code, blocked.reason
                )
                log.warning("Override rejected", code=blocked.code, reason=blocked.reason)
                raise blocked

        async with self._lock:
            existing = self._in_flight.get(request.target)
            if existing is not None and not existing.is_terminal:
                conflict = ConflictingOverride(request.target, existing.id)
                self._audit.log_rejected(
                    request.target, request.requested_by, conflict.code, conflict.message
                )
                log.warning("Override rejected", code=conflict.code, existing=existing.id)
                raise conflict

            attempt = OverrideAttempt(request=request)
            self._in_flight[request.target] = attempt
            self._attempts[attempt.id] = attempt

        log.info("Override accepted", attempt_id=attempt.id, desired_state=request.desired_state.value)
        return environment, attempt

    async def _run(self, environment: EnvironmentConfig, attempt: OverrideAttempt) -> None:
        token = correlation_id.set(attempt.id)
        try:
            self._audit.log_transition(attempt)
            await self._drive(environment, attempt)
        except OverrideError as e:
            await self._fail(attempt, e.code, str(e))
        except Exception as e:
            logger.exception("Override attempt crashed", attempt_id=attempt.id)
            await self._fail(attempt, INTERNAL_ERROR, f"{INTERNAL_ERROR}: {e}")
        finally:
            if not attempt.is_terminal:
                # Cancelled mid-flight, normally at shutdown.
                detail = "Coordinator stopped before completion"
                attempt.error = "Cancelled"
                attempt.transition(AttemptStatus.FAILED, detail)
                self._audit.log_transition(attempt)
                await asyncio.shield(self._notify(attempt, AttemptStatus.FAILED, detail))
            async with self._lock:
                if self._in_flight.get(attempt.target) is attempt:
                    del self._in_flight[attempt.target]
            correlation_id.reset(token)

    # -------------------------------------------------------------------------
    # STATE MACHINE
    # -------------------------------------------------------------------------

    async def _drive(self, environment: EnvironmentConfig, attempt: OverrideAttempt) -> None:
        request = attempt.request

        # Pending -> Recorded
        attempt.revision = await self._record(environment, attempt)
        await self._advance(attempt, AttemptStatus.RECORDED, f"Committed {attempt.revision[:12]}")

        # Recorded -> Syncing
        already_applied = await self._already_applied(environment, attempt)
        await self._sync.trigger_sync(environment, attempt.revision)
        await self._advance(attempt, AttemptStatus.SYNCING, "Sync accepted")
        deadline = asyncio.get_running_loop().time() + self._settings.convergence_timeout
        if self._settings.notify_progress:
            await self._notify(
                attempt,
                AttemptStatus.SYNCING,
                f"Syncing {environment.argocd_application} to {attempt.revision[:12]}",
            )

        # Syncing -> Applied | TimedOut
        if already_applied:
            await self._finish(
                attempt,
                AttemptStatus.APPLIED,
                f"{request.target} was already {request.desired_state.value}",
            )
            return

        await self._await_convergence(environment, attempt, deadline)

    async def _record(self, environment: EnvironmentConfig, attempt: OverrideAttempt) -> str:
        revision = ""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_STORE_ERRORS),
            stop=stop_after_attempt(self._settings.store_write_attempts),
            wait=wait_exponential(multiplier=0.5, max=self._settings.store_retry_max_wait),
            before_sleep=self._log_store_retry,
            reraise=True,
        )
        async for try_ in retrying:
            with try_:
                revision = await self._store.record_change(environment, attempt.request)
        return revision

    @staticmethod
    def _log_store_retry(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Desired-state write failed, retrying",
            try_number=state.attempt_number,
            error=str(error),
        )

    async def _already_applied(
        self, environment: EnvironmentConfig, attempt: OverrideAttempt
    ) -> bool:
        """True when the target already is in the desired state (no-op override)."""
        try:
            applied = await self._authority.get_applied_state(environment)
        except AuthorityUnavailable as e:
            logger.warning("Applied state unavailable, polling for convergence", error=str(e))
            return False
        return applied is attempt.request.desired_state

    async def _await_convergence(
        self, environment: EnvironmentConfig, attempt: OverrideAttempt, deadline: float
    ) -> None:
        """
        Poll until the revision is synced and the workloads match.

        The bound runs from entry into Syncing and is enforced on the polls
        themselves, so a stalled backend call cannot push TimedOut past it.
        """
        desired = attempt.request.desired_state
        interval = self._settings.poll_interval
        loop = asyncio.get_running_loop()
        polls = 0
        converged = False

        try:
            async with asyncio.timeout_at(deadline):
                while not converged:
                    polls += 1
                    converged = await self._poll_once(environment, attempt, polls)
                    if not converged:
                        await asyncio.sleep(min(interval, max(deadline - loop.time(), 0)))
        except TimeoutError:
            logger.debug("Convergence bound reached", poll=polls)

        if converged:
            await self._finish(
                attempt,
                AttemptStatus.APPLIED,
                f"{attempt.target} is {desired.value}",
            )
            return
        await self._finish(
            attempt,
            AttemptStatus.TIMED_OUT,
            f"Timeout: {attempt.target} did not reach {desired.value} "
            f"within {self._settings.convergence_timeout:g}s",
        )

    async def _poll_once(
        self, environment: EnvironmentConfig, attempt: OverrideAttempt, polls: int
    ) -> bool:
        """One convergence check; True once synced and the workloads match."""
        revision = attempt.revision or ""
        try:
            status = await self._sync.poll_status(environment, revision)
            if status is SyncStatus.ERRORED:
                raise SyncErrored(
                    f"{environment.argocd_application} reported a sync error for {revision[:12]}"
                )
            if status is not SyncStatus.CONVERGED:
                return False
            applied = await self._authority.get_applied_state(environment)
        except TRANSIENT_POLL_ERRORS as e:
            logger.warning("Convergence poll failed", error=str(e), poll=polls)
            return False
        if applied is not attempt.request.desired_state:
            logger.debug("Synced, waiting for workloads", applied=applied.value, poll=polls)
            return False
        return True

    # -------------------------------------------------------------------------
    # TRANSITIONS
    # -------------------------------------------------------------------------

    async def _advance(self, attempt: OverrideAttempt, status: AttemptStatus, detail: str) -> None:
        attempt.transition(status, detail)
        self._audit.log_transition(attempt, detail)
        logger.info(f"Override {status.value.lower()}", detail=detail, revision=attempt.revision)

    async def _finish(self, attempt: OverrideAttempt, status: AttemptStatus, detail: str) -> None:
        await self._advance(attempt, status, detail)
        await self._notify(attempt, status, detail)

    async def _fail(self, attempt: OverrideAttempt, code: str, detail: str) -> None:
        if attempt.is_terminal:
            return
        attempt.error = code
        await self._finish(attempt, AttemptStatus.FAILED, detail)

    async def _notify(self, attempt: OverrideAttempt, status: AttemptStatus, detail: str) -> None:
        try:
            await self._notifier.notify(attempt, status, detail)
        except Exception:
            logger.warning("Notification delivery failed", status=status.value, exc_info=True)
