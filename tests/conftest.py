"""Shared pytest fixtures for Linecraft tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Generator
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from linecraft.core.config import LinecraftConfig
from linecraft.core.upstream import UpstreamClient


class FakeUpstream:
    """Scripted stand-in for the upstream job API behind ``httpx.MockTransport``.

    Submit (POST) and status (GET) replies are queued separately.  Each call
    consumes the next reply; the last reply in a queue repeats forever.
    A queued exception is raised instead of returning a response.
    """

    def __init__(self) -> None:
        self.submit_replies: list[Any] = []
        self.status_replies: list[Any] = []
        self.requests: list[httpx.Request] = []

    # --- Reply builders ---------------------------------------------------

    @staticmethod
    def envelope(data: Any, *, code: int = 200, msg: str = "success", http_status: int = 200):
        return httpx.Response(http_status, json={"code": code, "msg": msg, "data": data})

    def submit_ok(self, task_id: str = "T1") -> None:
        self.submit_replies.append(self.envelope({"taskId": task_id}))

    def submit_reply(self, reply: Any) -> None:
        self.submit_replies.append(reply)

    def status_state(self, state: str, **fields: Any) -> None:
        self.status_replies.append(self.envelope({"taskId": "T1", "state": state, **fields}))

    def status_ready(self, url: str = "https://x/img.png") -> None:
        self.status_state("success", resultJson=json.dumps({"resultUrls": [url]}))

    def status_reply(self, reply: Any) -> None:
        self.status_replies.append(reply)

    # --- Transport --------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.submit_replies if request.method == "POST" else self.status_replies
        if not queue:
            raise AssertionError(f"Unexpected upstream call: {request.method} {request.url}")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        # Fresh copy so a repeating reply is never sent twice.
        return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)

    @property
    def submit_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    @property
    def status_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    """Create an empty scripted upstream."""
    return FakeUpstream()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Create a fake clock starting at 0.0 seconds."""
    return FakeClock()


@pytest.fixture
def test_config() -> LinecraftConfig:
    """Create a test configuration with short polling timings.

    Returns:
        LinecraftConfig isolated from the process environment and .env file
    """
    return LinecraftConfig(
        _env_file=None,
        upstream_base_url="https://upstream.test",
        upstream_api_key="test-key",
        upstream_api="jobs",
        poll_interval=0.01,
        backoff_step=0.01,
        backoff_max=0.03,
        poll_timeout=2.0,
    )


@pytest.fixture
def http_client(fake_upstream: FakeUpstream) -> httpx.AsyncClient:
    """Async HTTP client routed to the fake upstream."""
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_upstream.handler))


@pytest.fixture
def upstream_client(http_client: httpx.AsyncClient) -> UpstreamClient:
    """Upstream client for the ``jobs`` endpoint family."""
    return UpstreamClient(http_client, base_url="https://upstream.test", api_key="test-key")


@pytest.fixture
def test_client(
    test_config: LinecraftConfig, http_client: httpx.AsyncClient
) -> Generator[TestClient, None, None]:
    """FastAPI TestClient with configuration and upstream transport overridden.

    Yields:
        TestClient bound to the application

    Cleanup:
        Dependency overrides are removed after the test completes
    """
    from linecraft.api.main import app, get_config, get_http_client

    app.dependency_overrides[get_config] = lambda: test_config
    app.dependency_overrides[get_http_client] = lambda: http_client
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()
