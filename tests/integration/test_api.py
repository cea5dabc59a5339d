"""Integration tests for linecraft.api.main — FastAPI REST API endpoints.

All tests use the FastAPI TestClient with the upstream job API replaced by the
scripted ``fake_upstream`` transport, so no network access occurs.  Tests
cover every endpoint:

- ``GET /health`` — Liveness and configuration check.
- ``POST /api/generate`` — Submit and long-poll to a terminal state.
- ``POST /api/coloring`` — Submit only.
- ``GET /api/coloring`` — Single status query.
- Cancelling a long-poll when the client disconnects.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from linecraft.api import main as main_module
from linecraft.api.main import _cancel_on_disconnect, app, generate, get_config
from linecraft.api.models import GenerationRequest
from linecraft.core.orchestrator import PollingOrchestrator, TaskState


def _payload(**overrides) -> dict:
    payload = {"sceneText": "a cute dog holding gifts", "aspectRatio": "square", "qualityHint": "medium"}
    payload.update(overrides)
    return payload


@pytest.fixture
def override_config(test_client, test_config):
    """Return a helper that swaps the config dependency for one test."""

    def _override(**updates):
        app.dependency_overrides[get_config] = lambda: test_config.model_copy(update=updates)

    return _override


# ---------------------------------------------------------------------------
# Health.
# ---------------------------------------------------------------------------


class TestHealth:
    """Test GET /health."""

    def test_health_reports_configuration(self, test_client):
        resp = test_client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["upstreamConfigured"] is True
        assert "version" in data

    def test_health_without_key(self, test_client, override_config):
        override_config(upstream_api_key=None)
        assert test_client.get("/health").json()["upstreamConfigured"] is False


# ---------------------------------------------------------------------------
# Long-poll generation.
# ---------------------------------------------------------------------------


class TestGenerate:
    """Test POST /api/generate."""

    def test_ready(self, test_client, fake_upstream):
        """Generating twice then ready returns the image URL."""
        fake_upstream.submit_ok("T1")
        fake_upstream.status_state("waiting")
        fake_upstream.status_state("generating")
        fake_upstream.status_ready("https://x/img.png")

        resp = test_client.post("/api/generate", json=_payload())

        assert resp.status_code == 200
        assert resp.json() == {"taskId": "T1", "status": "ready", "imageUrl": "https://x/img.png"}
        assert len(fake_upstream.status_calls) == 3

    def test_submit_body(self, test_client, fake_upstream):
        fake_upstream.submit_ok("T1")
        fake_upstream.status_ready()

        test_client.post("/api/generate", json=_payload(aspectRatio="landscape", qualityHint="high"))

        body = json.loads(fake_upstream.submit_calls[0].content)
        assert body["input"]["aspect_ratio"] == "3:2"
        assert body["input"]["quality"] == "high"
        assert body["input"]["prompt"].startswith(
            "Black & white refined lineart, scene: a cute dog holding gifts,"
        )

    def test_legacy_payload(self, test_client, fake_upstream):
        """The older scene/format field names still work; 'default' is portrait."""
        fake_upstream.submit_ok("T1")
        fake_upstream.status_ready()

        resp = test_client.post("/api/generate", json={"scene": "a fox", "format": "default"})

        assert resp.status_code == 200
        body = json.loads(fake_upstream.submit_calls[0].content)
        assert body["input"]["aspect_ratio"] == "2:3"
        assert body["input"]["quality"] == "medium"

    def test_blank_scene_is_400_without_upstream_call(self, test_client, fake_upstream):
        resp = test_client.post("/api/generate", json=_payload(sceneText="   "))
        assert resp.status_code == 400
        assert "sceneText" in resp.json()["error"]
        assert fake_upstream.requests == []

    def test_missing_scene_is_400(self, test_client, fake_upstream):
        resp = test_client.post("/api/generate", json={"aspectRatio": "square"})
        assert resp.status_code == 400
        assert "sceneText" in resp.json()["error"]
        assert fake_upstream.requests == []

    def test_bad_aspect_ratio_is_400(self, test_client, fake_upstream):
        resp = test_client.post("/api/generate", json=_payload(aspectRatio="panorama"))
        assert resp.status_code == 400
        assert fake_upstream.requests == []

    def test_invalid_json_is_400(self, test_client, fake_upstream):
        resp = test_client.post(
            "/api/generate", content="{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid JSON body"}
        assert fake_upstream.requests == []

    def test_submit_failure_is_502(self, test_client, fake_upstream):
        """A failed submit is reported without any status query."""
        fake_upstream.submit_reply(httpx.Response(500, text="boom"))

        resp = test_client.post("/api/generate", json=_payload())

        assert resp.status_code == 502
        data = resp.json()
        assert data["error"] == "createTask failed"
        assert data["status"] == 500
        assert data["detail"] == "boom"
        assert fake_upstream.status_calls == []

    def test_reported_failure_is_502(self, test_client, fake_upstream):
        fake_upstream.submit_ok("T1")
        fake_upstream.status_state("fail", failCode="501", failMsg="content rejected")

        resp = test_client.post("/api/generate", json=_payload())

        assert resp.status_code == 502
        assert resp.json() == {
            "error": "content rejected",
            "taskId": "T1",
            "status": "failed",
            "failCode": "501",
        }

    def test_reported_failure_without_message(self, test_client, fake_upstream):
        fake_upstream.submit_ok("T1")
        fake_upstream.status_state("fail")

        resp = test_client.post("/api/generate", json=_payload())

        assert resp.status_code == 502
        assert resp.json()["error"] == "generation failed"

    def test_timeout_is_504_with_task_id(self, test_client, fake_upstream, override_config):
        """The task id survives a timeout so the client can resume polling."""
        override_config(poll_timeout=0.1)
        fake_upstream.submit_ok("T1")
        fake_upstream.status_state("waiting")

        resp = test_client.post("/api/generate", json=_payload())

        assert resp.status_code == 504
        data = resp.json()
        assert data["taskId"] == "T1"
        assert data["status"] == "timeout"
        assert fake_upstream.status_calls

    def test_transient_query_errors_are_retried(self, test_client, fake_upstream):
        fake_upstream.submit_ok("T1")
        fake_upstream.status_reply(httpx.Response(503))
        fake_upstream.status_reply(httpx.ConnectError("reset"))
        fake_upstream.status_ready()

        resp = test_client.post("/api/generate", json=_payload())

        assert resp.status_code == 200
        assert len(fake_upstream.status_calls) == 3

    def test_missing_api_key_is_500_without_upstream_call(
        self, test_client, fake_upstream, override_config
    ):
        override_config(upstream_api_key=None)

        resp = test_client.post("/api/generate", json=_payload())

        assert resp.status_code == 500
        assert "API key" in resp.json()["error"]
        assert fake_upstream.requests == []


# ---------------------------------------------------------------------------
# Client-driven polling.
# ---------------------------------------------------------------------------


class TestSubmitColoring:
    """Test POST /api/coloring."""

    def test_returns_task_id(self, test_client, fake_upstream):
        fake_upstream.submit_ok("T42")

        resp = test_client.post("/api/coloring", json=_payload())

        assert resp.status_code == 200
        assert resp.json() == {"taskId": "T42"}
        assert fake_upstream.status_calls == []

    def test_submit_rejected_envelope(self, test_client, fake_upstream):
        fake_upstream.submit_reply(fake_upstream.envelope(None, code=402, msg="insufficient credits"))

        resp = test_client.post("/api/coloring", json=_payload())

        assert resp.status_code == 502
        assert resp.json()["detail"]["code"] == 402

    def test_validation_error(self, test_client, fake_upstream):
        resp = test_client.post("/api/coloring", json={})
        assert resp.status_code == 400
        assert fake_upstream.requests == []


class TestColoringStatus:
    """Test GET /api/coloring?taskId=..."""

    def test_missing_task_id_is_400(self, test_client, fake_upstream):
        resp = test_client.get("/api/coloring")
        assert resp.status_code == 400
        assert resp.json() == {"error": "missing taskId"}
        assert fake_upstream.requests == []

    def test_blank_task_id_is_400(self, test_client, fake_upstream):
        resp = test_client.get("/api/coloring", params={"taskId": "  "})
        assert resp.status_code == 400
        assert fake_upstream.requests == []

    def test_generating(self, test_client, fake_upstream):
        fake_upstream.status_state("generating", progress="0.30")

        resp = test_client.get("/api/coloring", params={"taskId": "T1"})

        assert resp.status_code == 200
        assert resp.json() == {"status": "generating", "taskId": "T1", "progress": "0.30"}
        assert fake_upstream.status_calls[0].url.params["taskId"] == "T1"

    def test_ready(self, test_client, fake_upstream):
        fake_upstream.status_ready("https://x/done.png")

        resp = test_client.get("/api/coloring", params={"taskId": "T1"})

        assert resp.json() == {"status": "ready", "taskId": "T1", "imageUrl": "https://x/done.png"}

    def test_single_query_per_call(self, test_client, fake_upstream):
        fake_upstream.status_state("waiting")
        test_client.get("/api/coloring", params={"taskId": "T1"})
        assert len(fake_upstream.status_calls) == 1

    def test_failed(self, test_client, fake_upstream):
        fake_upstream.status_state("fail", failMsg="nsfw")

        resp = test_client.get("/api/coloring", params={"taskId": "T1"})

        assert resp.status_code == 200
        assert resp.json() == {"status": "failed", "taskId": "T1", "error": "nsfw"}

    def test_malformed_payload_is_502(self, test_client, fake_upstream):
        fake_upstream.status_reply(fake_upstream.envelope({"taskId": "T1", "phase": "done"}))

        resp = test_client.get("/api/coloring", params={"taskId": "T1"})

        assert resp.status_code == 502
        assert resp.json()["taskId"] == "T1"

    def test_upstream_error_is_502(self, test_client, fake_upstream):
        fake_upstream.status_reply(httpx.Response(500, text="down"))

        resp = test_client.get("/api/coloring", params={"taskId": "T1"})

        assert resp.status_code == 502
        assert resp.json()["taskId"] == "T1"

    def test_flag_dialect_on_gpt4o_family(self, test_client, fake_upstream, override_config):
        override_config(upstream_api="gpt4o-image")
        fake_upstream.status_reply(
            fake_upstream.envelope(
                {"taskId": "G1", "successFlag": 1, "response": {"result_urls": ["https://x/g.png"]}}
            )
        )

        resp = test_client.get("/api/coloring", params={"taskId": "G1"})

        assert resp.json() == {"status": "ready", "taskId": "G1", "imageUrl": "https://x/g.png"}
        assert fake_upstream.status_calls[0].url.path == "/api/v1/gpt4o-image/record-info"


# ---------------------------------------------------------------------------
# Client disconnects during a long-poll.
# ---------------------------------------------------------------------------


class _DisconnectingRequest:
    """Stand-in for ``starlette.requests.Request`` exposing ``is_disconnected``."""

    def __init__(self, disconnected) -> None:
        self._disconnected = disconnected
        self.checks = 0

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self._disconnected()


class TestClientDisconnect:
    """Test that a long-poll stops when the caller goes away."""

    @pytest.fixture(autouse=True)
    def _fast_disconnect_checks(self, monkeypatch):
        monkeypatch.setattr(main_module, "DISCONNECT_CHECK_INTERVAL", 0.01)

    def test_watcher_cancels_run(self, upstream_client, fake_upstream):
        """Once the client is gone the run ends CANCELLED and polling stops."""
        fake_upstream.submit_ok("T1")
        fake_upstream.status_state("waiting")
        orchestrator = PollingOrchestrator(upstream_client, poll_interval=30.0, timeout=600.0)

        async def scenario():
            handle = orchestrator.start("a prompt", "1:1", "medium")
            request = _DisconnectingRequest(lambda: bool(fake_upstream.status_calls))
            await asyncio.wait_for(_cancel_on_disconnect(request, handle), timeout=2.0)
            return await asyncio.wait_for(handle.result(), timeout=2.0)

        task = asyncio.run(scenario())

        assert task.state is TaskState.CANCELLED
        assert task.task_id == "T1"
        assert len(fake_upstream.status_calls) == 1

    def test_watcher_stops_when_run_finishes(self, upstream_client, fake_upstream):
        fake_upstream.submit_ok("T1")
        fake_upstream.status_ready()
        orchestrator = PollingOrchestrator(upstream_client, poll_interval=0.01)
        request = _DisconnectingRequest(lambda: False)

        async def scenario():
            handle = orchestrator.start("a prompt", "1:1", "medium")
            await asyncio.wait_for(_cancel_on_disconnect(request, handle), timeout=2.0)
            return await handle.result()

        task = asyncio.run(scenario())

        assert task.state is TaskState.READY

    def test_generate_returns_cancelled_body(self, upstream_client, fake_upstream):
        fake_upstream.submit_ok("T1")
        fake_upstream.status_state("waiting")
        orchestrator = PollingOrchestrator(upstream_client, poll_interval=30.0, timeout=600.0)
        request = _DisconnectingRequest(lambda: bool(fake_upstream.status_calls))
        req = GenerationRequest.model_validate({"sceneText": "a cute dog"})

        body = asyncio.run(asyncio.wait_for(generate(req, request, orchestrator), timeout=2.0))

        assert body == {"taskId": "T1", "status": "cancelled"}
        assert len(fake_upstream.status_calls) == 1
        assert fake_upstream.submit_calls
