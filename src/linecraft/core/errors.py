"""Error taxonomy for the Linecraft bridge.

Every failure the bridge can surface to a client is a subclass of
:class:`LinecraftError`.  Each class carries the HTTP status it maps to and a
short machine-readable ``error`` code; the FastAPI exception handler in
:mod:`linecraft.api.main` renders them as JSON via :meth:`LinecraftError.to_dict`.

==========================  ======  =========================================
Exception                   Status  Raised when
==========================  ======  =========================================
ConfigurationError          500     Upstream credential missing
ValidationError             400     Bad or missing client input
UpstreamSubmitError         502     Job submission failed or was rejected
UpstreamQueryError          502     A single status query failed
MalformedPayloadError       502     Status payload matches no known dialect
UpstreamReportedFailure     502     Upstream reports the job as failed
PollTimeout                 504     Deadline passed without a terminal state
==========================  ======  =========================================
"""

from __future__ import annotations

from typing import Any


class LinecraftError(Exception):
    """Base class for all client-facing bridge errors."""

    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, message: str, *, detail: Any = None, task_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.task_id = task_id

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON body sent to the client."""
        body: dict[str, Any] = {"error": self.message}
        if self.task_id is not None:
            body["taskId"] = self.task_id
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class ConfigurationError(LinecraftError):
    """Required configuration (the upstream credential) is missing."""

    status_code = 500
    error = "configuration_error"


class ValidationError(LinecraftError):
    """User-friendly validation error.

    The message is intended to be returned directly to the caller.  Raising
    this never involves an upstream call.
    """

    status_code = 400
    error = "validation_error"


class UpstreamSubmitError(LinecraftError):
    """The submit call failed, returned non-2xx, or returned a bad envelope."""

    status_code = 502
    error = "upstream_submit_failed"

    def __init__(self, message: str, *, http_status: int | None = None, detail: Any = None) -> None:
        super().__init__(message, detail=detail)
        self.http_status = http_status

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.http_status is not None:
            body["status"] = self.http_status
        return body


class UpstreamQueryError(LinecraftError):
    """A single status query failed.

    Inside the polling loop this is transient and retried with backoff; it is
    only surfaced by the single-query status endpoint.
    """

    status_code = 502
    error = "upstream_query_failed"

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        detail: Any = None,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message, detail=detail, task_id=task_id)
        self.http_status = http_status


class MalformedPayloadError(UpstreamQueryError):
    """The status payload matched no known upstream dialect."""

    error = "upstream_payload_malformed"


class UpstreamReportedFailure(LinecraftError):
    """Upstream explicitly reported the job as failed."""

    status_code = 502
    error = "generation_failed"

    def __init__(self, message: str, *, task_id: str, fail_code: str | None = None) -> None:
        super().__init__(message, task_id=task_id)
        self.fail_code = fail_code

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["status"] = "failed"
        body["failCode"] = self.fail_code
        return body


class PollTimeout(LinecraftError):
    """No terminal state was reached before the polling deadline.

    The task id is preserved so the caller can resume with the status
    endpoint.
    """

    status_code = 504
    error = "poll_timeout"

    def __init__(self, message: str, *, task_id: str, elapsed: float | None = None) -> None:
        super().__init__(message, task_id=task_id)
        self.elapsed = elapsed

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["status"] = "timeout"
        return body
