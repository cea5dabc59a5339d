"""Linecraft — FastAPI Application.

This module is the single entry point for the web application.  It defines
the FastAPI ``app`` instance, all REST API routes, and the ``main()`` CLI
function that launches the uvicorn server.

Architecture
------------
The application is a thin, stateless proxy in front of the upstream job API:

- **Configuration** comes from :mod:`linecraft.core.config` and is injected
  into routes through the :func:`get_config` dependency.
- **Upstream access** goes through one shared :class:`httpx.AsyncClient`
  created in the lifespan; each request wraps it in its own
  :class:`~linecraft.core.upstream.UpstreamClient`.
- **Errors** from :mod:`linecraft.core.errors` are rendered as JSON by a
  single exception handler, so routes simply raise.

Two interaction styles are offered over the same components:

- *Server-driven long-poll* — ``POST /api/generate`` submits and runs the
  :class:`~linecraft.core.orchestrator.PollingOrchestrator` to completion.
- *Client-driven short-poll* — ``POST /api/coloring`` only submits; the
  client then calls ``GET /api/coloring?taskId=...``, which performs one
  status query and one normalisation per call.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/health``                   Liveness and configuration check
POST      ``/api/generate``             Submit and wait for the image
POST      ``/api/coloring``             Submit only, return ``taskId``
GET       ``/api/coloring``             One status query for ``taskId``
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    linecraft

Direct invocation::

    python -m linecraft.api.main
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from linecraft import __version__
from linecraft.api.models import GenerationRequest
from linecraft.api.prompt_builder import build_prompt
from linecraft.core.config import LinecraftConfig, config
from linecraft.core.errors import LinecraftError, MalformedPayloadError, ValidationError
from linecraft.core.normalizer import normalize_envelope
from linecraft.core.orchestrator import GenerationHandle, PollingOrchestrator, TaskState
from linecraft.core.upstream import UpstreamClient

logger = logging.getLogger(__name__)

# Seconds between client-disconnect checks during a long-poll.
DISCONNECT_CHECK_INTERVAL = 1.0

# ---------------------------------------------------------------------------
# Application lifecycle: shared HTTP client setup and teardown.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown lifecycle.

    On startup:
        Creates the shared :class:`httpx.AsyncClient` and stores it on
        ``app.state``.  A missing upstream credential is logged here but
        only raised when a request needs it.

    On shutdown:
        Closes the HTTP client and its connection pool.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    # --- Startup -----------------------------------------------------------
    app.state.http_client = httpx.AsyncClient(timeout=config.http_timeout)
    if not config.has_api_key:
        logger.warning(
            "LINECRAFT_UPSTREAM_API_KEY is not set; generation requests will fail with 500."
        )
    logger.info("Upstream %s (%s API) ready.", config.upstream_base_url, config.upstream_api)

    yield  # Application runs here.

    # --- Shutdown ----------------------------------------------------------
    await app.state.http_client.aclose()
    logger.info("Upstream HTTP client closed on shutdown.")


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Linecraft",
    description="Colouring-page generation bridge to an upstream job API.",
    version=__version__,
    lifespan=lifespan,
)

# The UI collaborator may be served from a different origin during
# development.  Restrict ``allow_origins`` in production deployments.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error rendering.
# ---------------------------------------------------------------------------


@app.exception_handler(LinecraftError)
async def linecraft_error_handler(request: Request, exc: LinecraftError) -> JSONResponse:
    """Render any bridge error as ``{error, ...}`` with its HTTP status."""
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _describe_validation_error(exc: RequestValidationError) -> str:
    """Flatten pydantic errors into one human-readable line."""
    messages: list[str] = []
    for err in exc.errors():
        if err.get("type") == "json_invalid":
            return "Invalid JSON body"
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query")]
        msg = str(err.get("msg", "invalid value")).removeprefix("Value error, ")
        messages.append(f"{'.'.join(loc)}: {msg}" if loc else msg)
    return "; ".join(messages) or "Invalid request"


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report request validation failures as ``400 {error}``."""
    return JSONResponse(status_code=400, content={"error": _describe_validation_error(exc)})


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_config() -> LinecraftConfig:
    return config


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_upstream_client(
    http_client: httpx.AsyncClient = Depends(get_http_client),
    settings: LinecraftConfig = Depends(get_config),
) -> UpstreamClient:
    """Build the per-request upstream client.

    Raises:
        ConfigurationError: If the upstream credential is missing.
    """
    return UpstreamClient.from_config(http_client, settings)


def get_orchestrator(
    client: UpstreamClient = Depends(get_upstream_client),
    settings: LinecraftConfig = Depends(get_config),
) -> PollingOrchestrator:
    return PollingOrchestrator(
        client,
        poll_interval=settings.poll_interval,
        backoff_step=settings.backoff_step,
        backoff_max=settings.backoff_max,
        timeout=settings.poll_timeout,
    )


async def _cancel_on_disconnect(request: Request, handle: GenerationHandle) -> None:
    """Cancel a long-poll run once the client has gone away."""
    while not handle.done():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling task %s", handle.task.task_id)
            handle.cancel()
            return
        await asyncio.sleep(DISCONNECT_CHECK_INTERVAL)


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@app.get("/health")
async def health(settings: LinecraftConfig = Depends(get_config)) -> dict:
    """Return liveness plus whether the upstream credential is configured."""
    return {"ok": True, "version": __version__, "upstreamConfigured": settings.has_api_key}


@app.post("/api/generate")
async def generate(
    req: GenerationRequest,
    request: Request,
    orchestrator: PollingOrchestrator = Depends(get_orchestrator),
):
    """Generate a colouring page and wait for the finished image.

    This endpoint:

    1. Validates the request body (400 on failure, upstream untouched).
    2. Compiles the line-art prompt.
    3. Submits the job and polls it until ready, failed, or timed out.

    Args:
        req: Validated :class:`GenerationRequest` payload.
        request: Raw request, used to detect client disconnects.
        orchestrator: Per-request polling orchestrator.

    Returns:
        ``{taskId, status: "ready", imageUrl}`` on success.

    Raises:
        UpstreamSubmitError: 502 when submission fails; no polling happens.
        UpstreamReportedFailure: 502 when upstream reports the job failed.
        PollTimeout: 504 when the deadline passes; ``taskId`` is included.
    """
    prompt = build_prompt(req.scene_text)
    aspect_ratio = req.aspect_ratio.ratio_token
    logger.info(
        "Generate start aspect_ratio=%s quality=%s scene_len=%d",
        aspect_ratio,
        req.quality_hint.value,
        len(req.scene_text),
    )

    handle = orchestrator.start(prompt, aspect_ratio, req.quality_hint.value)
    watcher = asyncio.ensure_future(_cancel_on_disconnect(request, handle))
    try:
        task = await handle.result()
    finally:
        watcher.cancel()

    if task.state is TaskState.CANCELLED:
        return {"taskId": task.task_id, "status": "cancelled"}

    task.raise_for_state()
    return task.to_response()


@app.post("/api/coloring")
async def submit_coloring(
    req: GenerationRequest,
    client: UpstreamClient = Depends(get_upstream_client),
) -> dict:
    """Submit a colouring-page job and return its id without waiting.

    The caller polls ``GET /api/coloring?taskId=...`` for the result.

    Returns:
        ``{taskId}``.

    Raises:
        UpstreamSubmitError: 502 when submission fails.
    """
    prompt = build_prompt(req.scene_text)
    task_id = await client.submit(prompt, req.aspect_ratio.ratio_token, req.quality_hint.value)
    logger.info("Submitted task %s", task_id)
    return {"taskId": task_id}


@app.get("/api/coloring")
async def coloring_status(
    task_id: str | None = Query(default=None, alias="taskId"),
    client: UpstreamClient = Depends(get_upstream_client),
) -> dict:
    """Query the upstream job once and return its canonical status.

    Args:
        task_id: Upstream task id from ``POST /api/coloring`` or from a
            timed-out ``POST /api/generate``.

    Returns:
        One of ``{status: "generating", taskId, progress}``,
        ``{status: "ready", taskId, imageUrl}`` or
        ``{status: "failed", taskId, error}``.

    Raises:
        ValidationError: 400 when ``taskId`` is missing.
        UpstreamQueryError: 502 when the query or its payload is invalid.
    """
    if not task_id or not task_id.strip():
        raise ValidationError("missing taskId")

    envelope = await client.query_status(task_id)
    try:
        status = normalize_envelope(envelope)
    except MalformedPayloadError as exc:
        exc.task_id = task_id
        raise
    return status.to_response(task_id)


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~linecraft.core.config.config`
    (``LINECRAFT_SERVER_HOST``, ``LINECRAFT_SERVER_PORT``,
    ``LINECRAFT_LOG_LEVEL``).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``linecraft`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "linecraft.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
