# ABOUTME: Shared async REST client with retry logic and error handling
# ABOUTME: Base class for the GitLab, ArgoCD and Kubernetes API adapters

"""
Async REST client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Three of the four external collaborators this service talks to are plain
JSON-over-HTTP APIs:

    GitLab      /api/v4/projects/{id}/repository/files/{path}
    ArgoCD      /api/v1/applications/{name}
    Kubernetes  /apis/apps/v1/namespaces/{ns}/deployments

They differ in paths and payloads, but the mechanics are identical:

1. HTTP COMMUNICATION: One pooled httpx.AsyncClient per service
2. AUTHENTICATION: A Bearer token in the Authorization header
3. ERROR HANDLING: 4xx/5xx responses become ApiError with code and message
4. RETRY LOGIC: Timeouts are retried with exponential backoff
5. SECRET MASKING: Tokens and passwords never leak into error messages

RestClient implements those mechanics once. Each adapter subclasses it and
only adds the endpoint-specific methods.

=============================================================================
CONTEXT MANAGERS (async with)
=============================================================================

The underlying httpx.AsyncClient owns a connection pool, so it is created in
__aenter__ and closed in __aexit__:

    async with ArgocdSyncTrigger(settings) as client:
        app = await client.get_application("kube-green-staging")

Calling _request outside the context raises RuntimeError.
"""

from __future__ import annotations

import re
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

# =============================================================================
# SECRET MASKING
# =============================================================================

# (pattern, replacement) pairs applied to free text such as error bodies.
SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
    (re.compile(r"(hooks\.slack\.com/services/)[^\s\"']+", re.I), r"\1***MASKED***"),
]

# Dictionary keys whose values are always replaced.
SENSITIVE_KEYS = frozenset(
    [
        "token",
        "password",
        "secret",
        "authorization",
        "private-token",
        "signing_secret",
        "webhook_url",
    ]
)

MASK = "***MASKED***"


def mask_secrets(data: Any) -> Any:
    """
    Recursively mask sensitive values in strings, dicts and lists.

    Strings are scrubbed with SECRET_PATTERNS, dict values under a
    SENSITIVE_KEYS key are replaced outright, everything else passes through.

    Example:
        >>> mask_secrets({"token": "abc", "nested": ["password=hunter2"]})
        {'token': '***MASKED***', 'nested': ['password=***MASKED***']}
    """
    if isinstance(data, str):
        masked = data
        for pattern, replacement in SECRET_PATTERNS:
            masked = pattern.sub(replacement, masked)
        return masked

    if isinstance(data, dict):
        return {
            k: MASK if str(k).lower() in SENSITIVE_KEYS else mask_secrets(v)
            for k, v in data.items()
        }

    if isinstance(data, list):
        return [mask_secrets(item) for item in data]

    return data


# =============================================================================
# ERRORS
# =============================================================================


class ApiError(Exception):
    """
    Structured HTTP API error.

    Preserves the status code so adapters can map it onto the override error
    taxonomy: a 404 from Kubernetes is TargetNotFound, a 400 from GitLab on a
    stale last_commit_id is WriteConflict, a 5xx anywhere means the service is
    unavailable.
    """

    def __init__(
        self,
        service: str,
        code: int,
        message: str,
        details: str | None = None,
    ) -> None:
        self.service = service
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"{self.service} API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def is_server_error(self) -> bool:
        return self.code >= 500


# =============================================================================
# CLIENT
# =============================================================================


class RestClient:
    """
    Async JSON REST client with retry on timeout.

    Subclasses set ``service_name`` (used in logs and errors) and add their
    endpoint methods on top of ``_request``.
    """

    service_name = "REST"

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        verify: bool | str = True,
        mask: bool = True,
    ) -> None:
        """
        Initialize the client. No connection is opened until ``async with``.

        Args:
            base_url: Service URL including any API prefix, no trailing slash.
            token: Bearer token, or None for unauthenticated access.
            timeout: Per-request timeout in seconds.
            verify: TLS verification flag or CA bundle path.
            mask: Mask secrets in error messages.
        """
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._verify = verify
        self._mask = mask
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def __aenter__(self) -> RestClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers(),
            timeout=self._timeout,
            verify=self._verify,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _scrub(self, text: str) -> str:
        return mask_secrets(text) if self._mask else text

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make an HTTP request and decode the JSON response.

        Timeouts are retried up to three attempts in total with exponential
        backoff (1s, 2s); any other transport error propagates immediately as
        httpx.HTTPError.

        Raises:
            ApiError: On any 4xx/5xx response.
            httpx.HTTPError: On transport failure (after retries for timeouts).
            RuntimeError: If the client is used outside ``async with``.
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(service=self.service_name, method=method, path=path)
        log.debug("Making API request")

        response = await self._client.request(method, path, params=params, json=json_data)

        if response.status_code >= 400:
            error_body = self._scrub(response.text)
            log.warning("API error", status=response.status_code, body=error_body[:200])

            message = f"HTTP {response.status_code}"
            details = None
            try:
                error_json = response.json()
            except ValueError:
                details = error_body[:200] if error_body else None
            else:
                if isinstance(error_json, dict):
                    raw = error_json.get("message", message)
                    message = self._scrub(raw if isinstance(raw, str) else str(raw))
                    err = error_json.get("error")
                    details = self._scrub(str(err)) if err else None

            raise ApiError(
                service=self.service_name,
                code=response.status_code,
                message=message,
                details=details,
            )

        result = response.json() if response.content else {}
        return result if isinstance(result, dict) else {"items": result}
