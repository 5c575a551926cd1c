# ABOUTME: Error taxonomy for the override coordination workflow
# ABOUTME: Every failure an attempt can record maps to one exception class here

"""Override error taxonomy.

Each exception carries a stable ``code`` that is recorded on the
OverrideAttempt when it fails and echoed in failure notifications, so an
operator reading Slack can tell ``SyncRejected`` from ``WriteConflict``
without opening logs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


class OverrideError(Exception):
    """Base class for override workflow errors."""

    code = "OverrideError"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class UnknownTarget(OverrideError):
    """Request names an environment that is not configured."""

    code = "UnknownTarget"

    def __init__(self, target: str, known: Iterable[str] = ()) -> None:
        self.target = target
        self.known = sorted(known)
        super().__init__(f"Unknown environment '{target}'. Configured: {self.known}")


class ConflictingOverride(OverrideError):
    """A non-terminal attempt already exists for the target."""

    code = "ConflictingOverride"

    def __init__(self, target: str, existing_attempt_id: str) -> None:
        self.target = target
        self.existing_attempt_id = existing_attempt_id
        super().__init__(
            f"Override {existing_attempt_id} for '{target}' is still in progress"
        )


class StoreUnavailable(OverrideError):
    """Desired-state store could not be reached or returned a server error."""

    code = "StoreUnavailable"


class WriteConflict(OverrideError):
    """Desired-state store head moved between read and write."""

    code = "WriteConflict"


class SyncRejected(OverrideError):
    """GitOps controller refused to sync the revision."""

    code = "SyncRejected"


class SyncErrored(OverrideError):
    """GitOps controller reported the sync operation as errored."""

    code = "SyncErrored"


class SyncUnavailable(OverrideError):
    """Sync status could not be read; transient, polling continues."""

    code = "SyncUnavailable"


class AuthorityUnavailable(OverrideError):
    """Applied state could not be read; transient, polling continues."""

    code = "AuthorityUnavailable"


class TargetNotFound(OverrideError):
    """Schedule authority has no such target."""

    code = "TargetNotFound"


class AttemptNotFound(OverrideError):
    """No attempt with the given id."""

    code = "AttemptNotFound"


class IllegalTransition(OverrideError):
    """State machine move not permitted from the current status."""

    code = "IllegalTransition"


class OperationBlocked(OverrideError):
    """Override refused by the override guard."""

    code = "OperationBlocked"

    def __init__(self, operation: str, reason: str, setting: str) -> None:
        self.operation = operation
        self.reason = reason
        self.setting = setting
        super().__init__(f"{operation} blocked: {reason}")

    def format_message(self) -> str:
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}"
        )


# Errors the coordinator retries when writing to the desired-state store.
RETRYABLE_STORE_ERRORS = (StoreUnavailable, WriteConflict)

# Errors that do not end the Syncing wait; the next poll tries again.
TRANSIENT_POLL_ERRORS = (SyncUnavailable, AuthorityUnavailable)
