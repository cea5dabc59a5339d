"""Typed async client for the upstream image-generation job API.

The upstream provider exposes two endpoint families that behave the same way
(submit a job, then query it by id) but differ in paths, submit body shape
and status payload dialect.  Each family is described by an
:class:`UpstreamApi` entry in :data:`UPSTREAM_APIS`; :class:`UpstreamClient`
uses whichever one the configuration selects.

=============  ==================================  =========================
Family         Submit                              Status
=============  ==================================  =========================
``jobs``       ``POST /api/v1/jobs/createTask``    ``GET .../recordInfo``
``gpt4o-image`` ``POST /api/v1/gpt4o-image/generate`` ``GET .../record-info``
=============  ==================================  =========================

Every upstream response is wrapped in a ``{code, msg, data}`` envelope.  A
call succeeds only when the HTTP status is 2xx **and** the body parses as an
envelope **and** ``code == 200``.  Anything else is a failure regardless of
what ``data`` contains.

Each public method performs exactly one network call.  Retries belong to
:class:`~linecraft.core.orchestrator.PollingOrchestrator`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError

from linecraft.core.config import LinecraftConfig
from linecraft.core.errors import ConfigurationError, UpstreamQueryError, UpstreamSubmitError

logger = logging.getLogger(__name__)

SUCCESS_CODE = 200


class UpstreamEnvelope(BaseModel):
    """The ``{code, msg, data}`` wrapper around every upstream response.

    Attributes:
        code: Upstream success discriminator; only ``200`` means success.
        message: Upstream ``msg`` text.
        payload: Upstream ``data`` value, left uninterpreted.
    """

    model_config = ConfigDict(populate_by_name=True)

    code: StrictInt
    message: str | None = Field(default=None, validation_alias=AliasChoices("msg", "message"))
    payload: Any = Field(default=None, validation_alias=AliasChoices("data", "payload"))

    @field_validator("message", mode="before")
    @classmethod
    def _message_as_text(cls, value: Any) -> str | None:
        # Only ``code`` decides success; any ``msg`` value is kept as text.
        return None if value is None else str(value)

    @property
    def ok(self) -> bool:
        return self.code == SUCCESS_CODE


def _jobs_submit_body(
    prompt: str, aspect_ratio: str, quality: str, *, model: str, variants: int
) -> dict[str, Any]:
    return {
        "model": model,
        "input": {"prompt": prompt, "aspect_ratio": aspect_ratio, "quality": quality},
    }


def _gpt4o_submit_body(
    prompt: str, aspect_ratio: str, quality: str, *, model: str, variants: int
) -> dict[str, Any]:
    # This family has no quality parameter.
    return {"prompt": prompt, "size": aspect_ratio, "nVariants": variants}


@dataclass(frozen=True)
class UpstreamApi:
    """Paths and submit-body builder for one upstream endpoint family."""

    name: str
    submit_path: str
    status_path: str
    build_submit_body: Callable[..., dict[str, Any]]


UPSTREAM_APIS: dict[str, UpstreamApi] = {
    "jobs": UpstreamApi(
        name="jobs",
        submit_path="/api/v1/jobs/createTask",
        status_path="/api/v1/jobs/recordInfo",
        build_submit_body=_jobs_submit_body,
    ),
    "gpt4o-image": UpstreamApi(
        name="gpt4o-image",
        submit_path="/api/v1/gpt4o-image/generate",
        status_path="/api/v1/gpt4o-image/record-info",
        build_submit_body=_gpt4o_submit_body,
    ),
}


def _parse_envelope(response: httpx.Response) -> UpstreamEnvelope | None:
    """Parse a response body as an envelope, or return ``None`` if malformed."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    try:
        return UpstreamEnvelope.model_validate(body)
    except PydanticValidationError:
        return None


def _body_detail(response: httpx.Response) -> Any:
    """Best-effort diagnostic copy of a response body."""
    try:
        return response.json()
    except ValueError:
        return response.text


class UpstreamClient:
    """Issues submit and status calls against one upstream endpoint family.

    The client does not own ``http_client``; the FastAPI lifespan creates one
    shared :class:`httpx.AsyncClient` and every request builds a lightweight
    ``UpstreamClient`` around it.

    Args:
        http_client: Shared async HTTP client.
        base_url: Upstream base URL, e.g. ``https://api.kie.ai``.
        api_key: Bearer credential.
        api: Endpoint family name, a key of :data:`UPSTREAM_APIS`.
        model: Model name for the ``jobs`` family.
        variants: Variant count for the ``gpt4o-image`` family.

    Raises:
        ConfigurationError: If ``api_key`` is empty.
        ValueError: If ``api`` is not a known endpoint family.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: str,
        api_key: str,
        api: str = "jobs",
        model: str = "gpt-image/1.5-text-to-image",
        variants: int = 1,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Missing upstream API key (LINECRAFT_UPSTREAM_API_KEY)")
        if api not in UPSTREAM_APIS:
            raise ValueError(f"Unknown upstream API: {api}")
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.api = UPSTREAM_APIS[api]
        self.model = model
        self.variants = variants

    @classmethod
    def from_config(cls, http_client: httpx.AsyncClient, config: LinecraftConfig) -> "UpstreamClient":
        """Build a client from settings, failing if the credential is missing."""
        return cls(
            http_client,
            base_url=config.upstream_base_url,
            api_key=config.require_api_key(),
            api=config.upstream_api,
            model=config.upstream_model,
            variants=config.upstream_variants,
        )

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def submit(self, prompt: str, aspect_ratio: str, quality: str) -> str:
        """Create an upstream job and return its task id.

        Args:
            prompt: Compiled prompt text.
            aspect_ratio: Upstream ratio token (``1:1``, ``2:3`` or ``3:2``).
            quality: Quality hint (``medium`` or ``high``).

        Returns:
            The non-empty upstream task id.

        Raises:
            UpstreamSubmitError: On transport failure, non-2xx status, a
                malformed or non-200 envelope, or a missing task id.
        """
        url = f"{self._base_url}{self.api.submit_path}"
        body = self.api.build_submit_body(
            prompt, aspect_ratio, quality, model=self.model, variants=self.variants
        )
        try:
            response = await self._http.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("Upstream submit transport error: %s", exc)
            raise UpstreamSubmitError(f"Submit request failed: {exc}", detail=str(exc)) from exc

        envelope = _parse_envelope(response)
        logger.info(
            "Upstream submit http=%s code=%s",
            response.status_code,
            envelope.code if envelope else None,
        )
        if not response.is_success or envelope is None or not envelope.ok:
            raise UpstreamSubmitError(
                "createTask failed",
                http_status=response.status_code,
                detail=_body_detail(response),
            )

        payload = envelope.payload if isinstance(envelope.payload, dict) else {}
        task_id = payload.get("taskId")
        if not isinstance(task_id, str) or not task_id.strip():
            raise UpstreamSubmitError(
                "No taskId returned",
                http_status=response.status_code,
                detail=_body_detail(response),
            )
        return task_id

    async def query_status(self, task_id: str) -> UpstreamEnvelope:
        """Fetch the raw status envelope for ``task_id``.

        The payload is returned uninterpreted; see
        :func:`~linecraft.core.normalizer.normalize_status`.

        Raises:
            UpstreamQueryError: On transport failure, non-2xx status, or a
                malformed or non-200 envelope.
        """
        url = f"{self._base_url}{self.api.status_path}"
        try:
            response = await self._http.get(
                url,
                params={"taskId": task_id},
                headers={**self._headers(), "Cache-Control": "no-store"},
            )
        except httpx.HTTPError as exc:
            raise UpstreamQueryError(
                f"Status request failed: {exc}", detail=str(exc), task_id=task_id
            ) from exc

        envelope = _parse_envelope(response)
        if not response.is_success or envelope is None or not envelope.ok:
            raise UpstreamQueryError(
                "recordInfo failed",
                http_status=response.status_code,
                detail=_body_detail(response),
                task_id=task_id,
            )
        return envelope
