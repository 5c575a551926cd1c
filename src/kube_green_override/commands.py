# ABOUTME: Slack slash-command parsing, request verification and reply formatting
# ABOUTME: Turns "/kube-green wake staging demo" into an OverrideRequest

"""
Slack slash commands.

Grammar::

    sleep <environment> [reason...]
    wake <environment> [reason...]
    status <attempt-id>
    help

Slack signs every slash-command request: ``X-Slack-Signature`` is ``v0=``
followed by the hex HMAC-SHA256 of ``v0:{timestamp}:{raw body}`` keyed with
the app's signing secret. Requests older than five minutes are refused so a
captured request cannot be replayed.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import parse_qs

import structlog

from kube_green_override.errors import OverrideError
from kube_green_override.models import DesiredState, OverrideRequest

if TYPE_CHECKING:
    from kube_green_override.coordinator import OverrideCoordinator
    from kube_green_override.models import OverrideAttempt

logger = structlog.get_logger(__name__)

ACTIONS = {"sleep": DesiredState.SLEEPING, "wake": DesiredState.AWAKE}
SIGNATURE_VERSION = "v0"
MAX_REQUEST_AGE = 60 * 5

USAGE = (
    "Usage:\n"
    "  sleep <environment> [reason]   put an environment to sleep now\n"
    "  wake <environment> [reason]    wake an environment up now\n"
    "  status <attempt-id>            show an override attempt"
)


class CommandError(ValueError):
    """Slash-command text does not follow the grammar."""


@dataclass(frozen=True)
class StatusQuery:
    attempt_id: str


@dataclass(frozen=True)
class HelpQuery:
    pass


Command = OverrideRequest | StatusQuery | HelpQuery


def parse_command(text: str, user: str) -> Command:
    """
    Parse slash-command text issued by ``user``.

    Raises:
        CommandError: Unknown verb or missing argument; the message is the
            reply to show in Slack.
    """
    words = text.split()
    if not words or words[0].lower() == "help":
        return HelpQuery()

    verb, args = words[0].lower(), words[1:]

    if verb == "status":
        if len(args) != 1:
            raise CommandError(f"status takes exactly one attempt id\n{USAGE}")
        return StatusQuery(attempt_id=args[0])

    if verb not in ACTIONS:
        raise CommandError(f"Unknown command '{words[0]}'\n{USAGE}")
    if not args:
        raise CommandError(f"{verb} needs an environment\n{USAGE}")

    reason = " ".join(args[1:]) or None
    return OverrideRequest(
        target=args[0],
        desired_state=ACTIONS[verb],
        requested_by=user,
        reason=reason,
    )


def parse_form(body: str) -> dict[str, str]:
    """Slack posts slash commands as application/x-www-form-urlencoded."""
    return {key: values[0] for key, values in parse_qs(body, keep_blank_values=True).items()}


def verify_slack_signature(
    signing_secret: str,
    timestamp: str,
    body: str,
    signature: str,
    now: float | None = None,
) -> bool:
    """True when ``signature`` is Slack's signature of ``body`` at ``timestamp``."""
    if not signing_secret or not timestamp or not signature:
        return False
    try:
        issued = int(timestamp)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - issued) > MAX_REQUEST_AGE:
        logger.warning("Slack request outside replay window", timestamp=timestamp)
        return False

    basestring = f"{SIGNATURE_VERSION}:{timestamp}:{body}".encode()
    expected = hmac.new(signing_secret.encode(), basestring, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"{SIGNATURE_VERSION}={expected}", signature)


def format_attempt(attempt: OverrideAttempt) -> str:
    """Multi-line human summary of an attempt and its history."""
    request = attempt.request
    lines = [
        f"Override {attempt.id}: {request.target} -> {request.desired_state.value}",
        f"  Status: {attempt.status.value}",
        f"  Requested by: {request.requested_by} at {request.requested_at.isoformat()}",
    ]
    if request.reason:
        lines.append(f"  Reason: {request.reason}")
    if attempt.revision:
        lines.append(f"  Revision: {attempt.revision}")
    if attempt.error:
        lines.append(f"  Error: {attempt.error}")

    lines.append("  History:")
    for entry in attempt.history:
        detail = f" - {entry.detail}" if entry.detail else ""
        lines.append(f"    {entry.at.strftime('%H:%M:%S')} {entry.status.value}{detail}")
    return "\n".join(lines)


async def handle_command(coordinator: OverrideCoordinator, text: str, user: str) -> str:
    """Run one slash command and return the reply text."""
    try:
        command = parse_command(text, user)
    except CommandError as e:
        return str(e)

    if isinstance(command, HelpQuery):
        return USAGE

    try:
        if isinstance(command, StatusQuery):
            return format_attempt(coordinator.get_attempt(command.attempt_id))
        attempt = await coordinator.start(command)
    except OverrideError as e:
        return str(e)

    return (
        f"Override {attempt.id} accepted: {attempt.target} -> "
        f"{attempt.request.desired_state.value}. "
        f"Progress will be posted to Slack; `status {attempt.id}` shows it here."
    )
