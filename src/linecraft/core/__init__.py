"""Core task-submission-and-polling bridge.

This package holds everything that talks to the upstream job API and tracks
a job's lifecycle.  It has no knowledge of HTTP routing; the FastAPI layer in
:mod:`linecraft.api` composes these pieces per request.

Architecture Overview
---------------------
1. **Configuration Layer** (config.py):
   - Environment-based configuration using Pydantic Settings
   - All settings prefixed with LINECRAFT_ in .env files

2. **Upstream Layer** (upstream.py):
   - ``UpstreamClient`` with one network call per operation
   - Envelope validation and bearer credential injection
   - Registry of the two upstream endpoint families

3. **Normalisation Layer** (normalizer.py):
   - Dialect detection and one adapter per dialect
   - Canonical ``generating | ready | failed`` status

4. **Orchestration Layer** (orchestrator.py):
   - ``PollingOrchestrator`` state machine with backoff, deadline and
     cooperative cancellation

5. **Errors** (errors.py):
   - Client-facing exception taxonomy with HTTP status codes
"""

from linecraft.core.config import LinecraftConfig, config
from linecraft.core.errors import (
    ConfigurationError,
    LinecraftError,
    MalformedPayloadError,
    PollTimeout,
    UpstreamQueryError,
    UpstreamReportedFailure,
    UpstreamSubmitError,
    ValidationError,
)
from linecraft.core.normalizer import CanonicalStatus, NormalizedStatus, normalize_status
from linecraft.core.orchestrator import (
    CancellationToken,
    GenerationHandle,
    PollingOrchestrator,
    Task,
    TaskState,
    TransitionEvent,
)
from linecraft.core.upstream import UpstreamClient, UpstreamEnvelope

__all__ = [
    "CancellationToken",
    "CanonicalStatus",
    "ConfigurationError",
    "GenerationHandle",
    "LinecraftConfig",
    "LinecraftError",
    "MalformedPayloadError",
    "NormalizedStatus",
    "PollTimeout",
    "PollingOrchestrator",
    "Task",
    "TaskState",
    "TransitionEvent",
    "UpstreamClient",
    "UpstreamEnvelope",
    "UpstreamQueryError",
    "UpstreamReportedFailure",
    "UpstreamSubmitError",
    "ValidationError",
    "config",
    "normalize_status",
]
