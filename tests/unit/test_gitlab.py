# ABOUTME: Unit tests for the GitLab desired-state store
# ABOUTME: Tests document handling, optimistic concurrency and idempotent retries

import base64
import json
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest
import respx
import yaml

from kube_green_override.adapters.gitlab import (
    GitlabStateStore,
    override_entry,
    parse_document,
    render_document,
)
from kube_green_override.config import GitlabSettings
from kube_green_override.errors import StoreUnavailable, WriteConflict
from kube_green_override.models import DesiredState, EnvironmentConfig, OverrideRequest

HOST = "gitlab.example.com"


def file_response(document: dict[str, Any], commit: str) -> httpx.Response:
    content = base64.b64encode(yaml.safe_dump(document).encode()).decode()
    return httpx.Response(
        200,
        json={
            "file_path": "apps/kube-green/overrides.yaml",
            "encoding": "base64",
            "content": content,
            "last_commit_id": commit,
        },
    )


@pytest.fixture
def wake() -> OverrideRequest:
    """Create a wake request with a fixed timestamp."""
    return OverrideRequest(
        target="staging",
        desired_state=DesiredState.AWAKE,
        requested_by="alice",
        requested_at=datetime(2026, 10, 18, 10, 0, tzinfo=UTC),
        reason="demo",
    )


@pytest.mark.unit
class TestDocument:
    """Tests for overrides document helpers."""

    def test_override_entry(self, staging: EnvironmentConfig, wake: OverrideRequest):
        """Test the serialized entry of one environment."""
        entry = override_entry(staging, wake)

        assert entry == {
            "namespace": "staging",
            "desiredState": "Awake",
            "requestedBy": "alice",
            "requestedAt": "2026-10-18T10:00:00+00:00",
            "reason": "demo",
        }

    def test_override_entry_without_reason(self, staging: EnvironmentConfig):
        """Test that a missing reason is omitted."""
        request = OverrideRequest("staging", DesiredState.SLEEPING, "bob")

        assert "reason" not in override_entry(staging, request)

    def test_parse_empty_document(self):
        """Test that an empty file yields an empty overrides mapping."""
        assert parse_document("") == {"overrides": {}}
        assert parse_document("overrides:\n") == {"overrides": {}}

    def test_parse_preserves_other_keys(self):
        """Test that unrelated keys survive parsing."""
        doc = parse_document("owner: platform\noverrides:\n  dev: {desiredState: Sleeping}\n")

        assert doc["owner"] == "platform"
        assert doc["overrides"]["dev"]["desiredState"] == "Sleeping"

    def test_parse_rejects_non_mapping(self):
        """Test that a list document is rejected."""
        with pytest.raises(StoreUnavailable):
            parse_document("- a\n- b\n")

    def test_render_keeps_order(self):
        """Test that rendering does not sort keys."""
        rendered = render_document({"overrides": {"b": {}, "a": {}}})

        assert rendered.index("b:") < rendered.index("a:")


@pytest.mark.unit
class TestGitlabStateStore:
    """Tests for GitlabStateStore against a mocked GitLab API."""

    @respx.mock
    async def test_read_head(self, gitlab_settings: GitlabSettings):
        """Test reading the document and head commit."""
        route = respx.route(method="GET", host=HOST).mock(
            return_value=file_response({"overrides": {"dev": {"desiredState": "Sleeping"}}}, "c1")
        )

        async with GitlabStateStore(gitlab_settings) as store:
            document, head = await store.read_head()

        assert head == "c1"
        assert document["overrides"]["dev"]["desiredState"] == "Sleeping"
        request = route.calls.last.request
        assert b"platform%2Fgitops" in request.url.raw_path
        assert b"apps%2Fkube-green%2Foverrides.yaml" in request.url.raw_path
        assert request.url.params["ref"] == "main"
        assert request.headers["Authorization"] == "Bearer glpat-test-token"

    @respx.mock
    async def test_read_head_missing_file(self, gitlab_settings: GitlabSettings):
        """Test that a missing file reads as an empty document without head."""
        respx.route(method="GET", host=HOST).mock(
            return_value=httpx.Response(404, json={"message": "404 File Not Found"})
        )

        async with GitlabStateStore(gitlab_settings) as store:
            assert await store.read_head() == ({"overrides": {}}, None)

    @respx.mock
    async def test_read_head_server_error(self, gitlab_settings: GitlabSettings):
        """Test that a 5xx is StoreUnavailable."""
        respx.route(method="GET", host=HOST).mock(return_value=httpx.Response(503))

        async with GitlabStateStore(gitlab_settings) as store:
            with pytest.raises(StoreUnavailable):
                await store.read_head()

    @respx.mock
    async def test_record_change_updates_entry(
        self, gitlab_settings: GitlabSettings, staging: EnvironmentConfig, wake: OverrideRequest
    ):
        """Test that only the target entry changes and the write is guarded by head."""
        existing = {"overrides": {"development": {"desiredState": "Sleeping"}}}
        updated = {"overrides": {**existing["overrides"], "staging": override_entry(staging, wake)}}
        respx.route(method="GET", host=HOST).mock(
            side_effect=[file_response(existing, "c1"), file_response(updated, "c2")]
        )
        put = respx.route(method="PUT", host=HOST).mock(
            return_value=httpx.Response(200, json={"file_path": "x", "branch": "main"})
        )

        async with GitlabStateStore(gitlab_settings) as store:
            revision = await store.record_change(staging, wake)

        assert revision == "c2"
        body = json.loads(put.calls.last.request.content)
        assert body["last_commit_id"] == "c1"
        assert body["branch"] == "main"
        assert body["commit_message"].startswith("override(staging): wake requested by alice")
        written = yaml.safe_load(body["content"])
        assert written["overrides"]["development"] == {"desiredState": "Sleeping"}
        assert written["overrides"]["staging"]["desiredState"] == "Awake"

    @respx.mock
    async def test_record_change_creates_file(
        self, gitlab_settings: GitlabSettings, staging: EnvironmentConfig, wake: OverrideRequest
    ):
        """Test that a missing document is created with POST."""
        created = {"overrides": {"staging": override_entry(staging, wake)}}
        respx.route(method="GET", host=HOST).mock(
            side_effect=[
                httpx.Response(404, json={"message": "404 File Not Found"}),
                file_response(created, "c1"),
            ]
        )
        post = respx.route(method="POST", host=HOST).mock(
            return_value=httpx.Response(201, json={"file_path": "x"})
        )

        async with GitlabStateStore(gitlab_settings) as store:
            revision = await store.record_change(staging, wake)

        assert revision == "c1"
        assert "last_commit_id" not in json.loads(post.calls.last.request.content)

    @respx.mock
    async def test_record_change_conflict(
        self, gitlab_settings: GitlabSettings, staging: EnvironmentConfig, wake: OverrideRequest
    ):
        """Test that a stale last_commit_id surfaces as WriteConflict."""
        respx.route(method="GET", host=HOST).mock(return_value=file_response({}, "c1"))
        respx.route(method="PUT", host=HOST).mock(
            return_value=httpx.Response(
                400,
                json={
                    "message": "You are attempting to update a file that has changed "
                    "since you started editing it."
                },
            )
        )

        async with GitlabStateStore(gitlab_settings) as store:
            with pytest.raises(WriteConflict):
                await store.record_change(staging, wake)

    @respx.mock
    async def test_record_change_server_error(
        self, gitlab_settings: GitlabSettings, staging: EnvironmentConfig, wake: OverrideRequest
    ):
        """Test that a failed write is StoreUnavailable."""
        respx.route(method="GET", host=HOST).mock(return_value=file_response({}, "c1"))
        respx.route(method="PUT", host=HOST).mock(return_value=httpx.Response(500))

        async with GitlabStateStore(gitlab_settings) as store:
            with pytest.raises(StoreUnavailable):
                await store.record_change(staging, wake)

    @respx.mock
    async def test_lost_acknowledgement_is_not_recommitted(
        self, gitlab_settings: GitlabSettings, staging: EnvironmentConfig, wake: OverrideRequest
    ):
        """Test that a retry after a landed-but-failed write returns the landed revision."""
        landed = {"overrides": {"staging": override_entry(staging, wake)}}
        respx.route(method="GET", host=HOST).mock(
            side_effect=[file_response({}, "c1"), file_response(landed, "c2")]
        )
        put = respx.route(method="PUT", host=HOST).mock(
            side_effect=httpx.RemoteProtocolError("connection reset")
        )

        async with GitlabStateStore(gitlab_settings) as store:
            with pytest.raises(StoreUnavailable):
                await store.record_change(staging, wake)
            revision = await store.record_change(staging, wake)

        assert revision == "c2"
        assert put.call_count == 1

    @respx.mock
    async def test_unchanged_entry_is_not_recommitted(
        self, gitlab_settings: GitlabSettings, staging: EnvironmentConfig, wake: OverrideRequest
    ):
        """Test that a write whose entry already matches head is skipped."""
        landed = {"overrides": {"staging": override_entry(staging, wake)}}
        respx.route(method="GET", host=HOST).mock(return_value=file_response(landed, "c7"))
        put = respx.route(method="PUT", host=HOST)

        async with GitlabStateStore(gitlab_settings) as store:
            assert await store.record_change(staging, wake) == "c7"

        assert put.call_count == 0
