"""Map upstream status payloads onto the canonical three-valued status.

The upstream API reports job status in one of two dialects:

Flag dialect (``gpt4o-image`` family)::

    {"successFlag": 0 | 1 | 2, "progress": "0.45",
     "errorMessage": "...", "response": {"result_urls": ["https://..."]}}

State dialect (``jobs`` family)::

    {"state": "waiting" | "success" | "fail", "failCode": "...",
     "failMsg": "...", "resultJson": "{\\"resultUrls\\": [\\"https://...\\"]}"}

Detection Rule
--------------
A mapping containing ``successFlag`` is the flag dialect.  Otherwise a
mapping containing ``state`` is the state dialect.  Anything else raises
:class:`~linecraft.core.errors.MalformedPayloadError`.  No other fields are
probed to guess the dialect.

Normalisation Policy
--------------------
- A success report without a usable result URL normalises to ``generating``,
  never ``ready``; the result is treated as not yet materialised.
- A failure report always carries a non-empty reason, defaulting to
  :data:`DEFAULT_FAILURE_REASON`.
- Unknown flag values or state tokens are malformed, never defaulted.

The functions here are pure.  The same payload always yields the same
:class:`NormalizedStatus`, so repeated queries of a finished task keep
returning the same terminal status.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from linecraft.core.errors import MalformedPayloadError
from linecraft.core.upstream import UpstreamEnvelope

DEFAULT_FAILURE_REASON = "generation failed"

_GENERATING_STATES = frozenset({"waiting", "queuing", "generating"})


class CanonicalStatus(str, Enum):
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


class Dialect(str, Enum):
    FLAG = "flag"
    STATE = "state"


@dataclass(frozen=True)
class NormalizedStatus:
    """Dialect-independent view of one status query.

    Attributes:
        status: Canonical status.
        progress: Upstream progress indicator, passed through unchanged.
        image_url: First result URL; set only when ``status`` is ready.
        error: Human-readable failure reason; set only when failed.
        fail_code: Upstream failure code, when supplied.
        note: Diagnostic note, e.g. why a success report is still generating.
    """

    status: CanonicalStatus
    progress: Any = None
    image_url: str | None = None
    error: str | None = None
    fail_code: str | None = None
    note: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not CanonicalStatus.GENERATING

    def to_response(self, task_id: str) -> dict[str, Any]:
        """Render the client-facing status body for ``GET /api/coloring``."""
        body: dict[str, Any] = {"status": self.status.value, "taskId": task_id}
        if self.status is CanonicalStatus.READY:
            body["imageUrl"] = self.image_url
        elif self.status is CanonicalStatus.FAILED:
            body["error"] = self.error
            if self.fail_code is not None:
                body["failCode"] = self.fail_code
        else:
            body["progress"] = self.progress
            if self.note:
                body["note"] = self.note
        return body


def detect_dialect(payload: Any) -> Dialect:
    """Select the payload dialect using the documented detection rule.

    Raises:
        MalformedPayloadError: If ``payload`` is not a mapping or has neither
            ``successFlag`` nor ``state``.
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Status payload is not an object", detail=payload)
    if "successFlag" in payload:
        return Dialect.FLAG
    if "state" in payload:
        return Dialect.STATE
    raise MalformedPayloadError("Status payload matches no known dialect", detail=payload)


def _first_url(urls: Any) -> str | None:
    if not isinstance(urls, list) or not urls:
        return None
    first = urls[0]
    if isinstance(first, str) and first.strip():
        return first
    return None


def _failure_reason(value: Any) -> str:
    if value is None:
        return DEFAULT_FAILURE_REASON
    reason = str(value).strip()
    return reason or DEFAULT_FAILURE_REASON


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _normalize_flag(payload: dict[str, Any]) -> NormalizedStatus:
    flag = payload["successFlag"]
    if isinstance(flag, bool) or not isinstance(flag, int):
        raise MalformedPayloadError(f"Unknown successFlag: {flag!r}", detail=payload)

    if flag == 0:
        return NormalizedStatus(CanonicalStatus.GENERATING, progress=payload.get("progress"))
    if flag == 2:
        return NormalizedStatus(
            CanonicalStatus.FAILED,
            error=_failure_reason(payload.get("errorMessage")),
            fail_code=_optional_str(payload.get("errorCode")),
        )
    if flag == 1:
        response = payload.get("response")
        urls = response.get("result_urls") if isinstance(response, dict) else None
        url = _first_url(urls)
        if url is None:
            return NormalizedStatus(
                CanonicalStatus.GENERATING,
                progress=payload.get("progress"),
                note="result_urls empty",
            )
        return NormalizedStatus(CanonicalStatus.READY, image_url=url)
    raise MalformedPayloadError(f"Unknown successFlag: {flag!r}", detail=payload)


def _result_urls_from_json(result_json: Any) -> Any:
    # resultJson is normally a JSON-encoded string; an already-decoded object
    # is accepted as well.
    if isinstance(result_json, str):
        try:
            result_json = json.loads(result_json)
        except ValueError:
            return None
    if not isinstance(result_json, dict):
        return None
    return result_json.get("resultUrls")


def _normalize_state(payload: dict[str, Any]) -> NormalizedStatus:
    state = payload["state"]
    if not isinstance(state, str):
        raise MalformedPayloadError(f"Unknown state: {state!r}", detail=payload)
    if state in _GENERATING_STATES:
        return NormalizedStatus(CanonicalStatus.GENERATING, progress=payload.get("progress"))
    if state == "fail":
        return NormalizedStatus(
            CanonicalStatus.FAILED,
            error=_failure_reason(payload.get("failMsg")),
            fail_code=_optional_str(payload.get("failCode")),
        )
    if state == "success":
        url = _first_url(_result_urls_from_json(payload.get("resultJson")))
        if url is None:
            return NormalizedStatus(
                CanonicalStatus.GENERATING,
                progress=payload.get("progress"),
                note="resultUrls empty",
            )
        return NormalizedStatus(CanonicalStatus.READY, image_url=url)
    raise MalformedPayloadError(f"Unknown state: {state!r}", detail=payload)


_ADAPTERS = {
    Dialect.FLAG: _normalize_flag,
    Dialect.STATE: _normalize_state,
}


def normalize_status(payload: Any) -> NormalizedStatus:
    """Normalise an upstream status payload (the envelope's ``data``).

    Raises:
        MalformedPayloadError: If the payload matches no dialect or carries
            an unknown flag value or state token.
    """
    dialect = detect_dialect(payload)
    return _ADAPTERS[dialect](payload)


def normalize_envelope(envelope: UpstreamEnvelope) -> NormalizedStatus:
    """Normalise the payload of an already-validated status envelope."""
    return normalize_status(envelope.payload)
