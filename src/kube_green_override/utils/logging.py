# ABOUTME: Structured logging with correlation IDs for the override service
# ABOUTME: Implements the override audit trail and structlog configuration

"""
Structured logging with correlation IDs and an override audit trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: structlog with JSON output for the cluster and a
   coloured console renderer for development.

2. CORRELATION IDs: While an override attempt is being driven, its attempt
   id is the correlation id. Every log line emitted by the coordinator and by
   the GitLab/ArgoCD/Kubernetes/Slack adapters on its behalf carries it:

    {"correlation_id": "3f9c0a2b1d7e", "event": "Override recorded", "revision": "a1b2c3"}
    {"correlation_id": "3f9c0a2b1d7e", "event": "API request", "service": "ArgoCD"}
    {"correlation_id": "3f9c0a2b1d7e", "event": "Override applied"}

   so ``jq 'select(.correlation_id == "3f9c0a2b1d7e")'`` shows one attempt.

3. AUDIT LOGGING: One record per status transition and per rejected request
   (unknown target, conflicting override, blocked by the guard).

=============================================================================
CONTEXT VARIABLES
=============================================================================

Several attempts for different targets run concurrently on one event loop.
A ContextVar gives each asyncio task its own correlation id, so concurrent
attempts never see each other's id.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

    from kube_green_override.models import OverrideAttempt


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside an attempt (startup, status queries) still gets an
    id so its lines stay correlatable.

    Returns:
        The bound attempt id, or a fresh 8-character id.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor adding ``correlation_id`` to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    Pipeline: merge_contextvars -> add_log_level -> TimeStamper(iso) ->
    add_correlation_id -> JSON or console renderer.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines for log aggregation instead of console output.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit trail of override activity.

    Each record:

        {"timestamp": "...", "correlation_id": "3f9c0a2b1d7e",
         "action": "override", "target": "staging", "result": "Recorded",
         "details": {"requested_by": "alice", "revision": "a1b2c3"}}

    Records are appended as JSON lines to ``log_path`` when given, otherwise
    emitted through structlog under the "audit" logger.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_transition(self, attempt: OverrideAttempt, detail: str | None = None) -> None:
        """Record the attempt's current status after a transition."""
        details: dict[str, Any] = {
            "attempt_id": attempt.id,
            "desired_state": attempt.request.desired_state.value,
            "requested_by": attempt.request.requested_by,
        }
        if attempt.revision:
            details["revision"] = attempt.revision
        if attempt.error:
            details["error"] = attempt.error
        if detail:
            details["detail"] = detail
        self.log("override", attempt.target, attempt.status.value, details)

    def log_rejected(self, target: str, requested_by: str, code: str, reason: str) -> None:
        """Record a request refused before any attempt was started."""
        self.log(
            "override",
            target,
            "rejected",
            {"requested_by": requested_by, "code": code, "reason": reason},
        )

    def log_query(self, action: str, target: str) -> None:
        self.log(action, target, "success")
