# ABOUTME: Slack incoming-webhook notification sink for override attempts
# ABOUTME: Best-effort delivery; failures are logged and never reach the state machine

"""Slack notification sink."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from kube_green_override.models import AttemptStatus
from kube_green_override.utils.client import mask_secrets

if TYPE_CHECKING:
    from kube_green_override.config import SlackSettings
    from kube_green_override.models import OverrideAttempt

logger = structlog.get_logger(__name__)

STATUS_COLORS = {
    AttemptStatus.APPLIED: "good",
    AttemptStatus.FAILED: "danger",
    AttemptStatus.TIMED_OUT: "danger",
}

STATUS_TITLES = {
    AttemptStatus.PENDING: "Override received",
    AttemptStatus.RECORDED: "Override recorded",
    AttemptStatus.SYNCING: "Override syncing",
    AttemptStatus.APPLIED: "Override applied",
    AttemptStatus.FAILED: "Override failed",
    AttemptStatus.TIMED_OUT: "Override timed out",
}


def build_payload(
    attempt: OverrideAttempt,
    status: AttemptStatus,
    detail: str,
    channel: str | None = None,
) -> dict[str, Any]:
    """Slack message for one attempt status, one attachment with the facts."""
    request = attempt.request
    fields = [
        {"title": "Environment", "value": request.target, "short": True},
        {"title": "Desired state", "value": request.desired_state.value, "short": True},
        {"title": "Requested by", "value": request.requested_by, "short": True},
        {"title": "Attempt", "value": attempt.id, "short": True},
    ]
    if attempt.revision:
        fields.append({"title": "Revision", "value": attempt.revision[:12], "short": True})
    if request.reason:
        fields.append({"title": "Reason", "value": request.reason, "short": False})
    fields.append(
        {
            "title": "Timestamp",
            "value": datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC"),
            "short": True,
        }
    )

    payload: dict[str, Any] = {
        "text": f"{STATUS_TITLES[status]}: {request.target} -> {request.desired_state.value}",
        "attachments": [
            {
                "color": STATUS_COLORS.get(status, "warning"),
                "text": detail,
                "fields": fields,
            }
        ],
    }
    if channel:
        payload["channel"] = channel
    return payload


class SlackNotifier:
    """NotificationSink posting to a Slack incoming webhook."""

    def __init__(self, settings: SlackSettings, client: httpx.AsyncClient | None = None) -> None:
        self._webhook_url = settings.webhook_url.get_secret_value()
        self._channel = settings.channel
        self._timeout = settings.timeout
        self._client = client
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    async def __aenter__(self) -> SlackNotifier:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def notify(self, attempt: OverrideAttempt, status: AttemptStatus, detail: str) -> bool:
        log = logger.bind(attempt_id=attempt.id, status=status.value)

        if not self.enabled:
            log.info("Slack webhook not configured, notification skipped", detail=detail)
            return False
        if self._client is None:
            log.warning("Slack notifier used outside its context, notification skipped")
            return False

        payload = build_payload(attempt, status, detail, self._channel)
        try:
            response = await self._client.post(self._webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("Failed to send Slack notification", error=mask_secrets(str(e)))
            return False

        log.debug("Slack notification sent")
        return True
