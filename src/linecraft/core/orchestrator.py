"""Task lifecycle management: submit once, then poll until a terminal state.

This module provides :class:`PollingOrchestrator`, which drives one upstream
job from submission to a terminal state.  Every run owns its own
:class:`Task` record; nothing is shared between concurrent runs, so many
requests can be orchestrated at once on the same event loop.

State Machine
-------------
::

    IDLE ──> SUBMITTING ──> POLLING ──> READY
                 │            │  ^ └──> FAILED
                 │            │  │ └──> TIMED_OUT
                 │            └──┘ (generating / transient query error)
                 └──> FAILED (submit error, never retried)

    any non-terminal state ──> CANCELLED (caller abort, not an error)

Key Behaviours
--------------
- **Polling cadence** — while the job reports ``generating`` the next query
  follows after ``poll_interval`` seconds.
- **Backoff** — a failed query (transport error, bad envelope, malformed
  payload) does not end the run.  The retry delay starts at
  ``poll_interval`` and grows by ``backoff_step`` per consecutive failure up
  to ``backoff_max``; the first successful query resets it.
- **Deadline** — measured on a monotonic clock from submission.  Sleeps are
  clipped to the time left and an in-flight query is abandoned when the
  deadline passes.  The run then ends in ``TIMED_OUT`` exactly once, keeping
  the task id so the caller can resume with the single-query status endpoint.
- **Cancellation** — cooperative via :class:`CancellationToken`.  The token is
  checked before each query, and a cancel interrupts both sleeps and an
  in-flight upstream call.
- **Observability** — every transition is logged and delivered as a
  :class:`TransitionEvent` to any registered listeners.

Usage
-----
::

    orchestrator = PollingOrchestrator(client, timeout=180.0)
    task = await orchestrator.run(prompt, "1:1", "medium")
    task.raise_for_state()
    print(task.result_url)

    handle = orchestrator.start(prompt, "2:3", "high")
    handle.cancel()
    task = await handle.result()   # task.state is TaskState.CANCELLED
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from linecraft.core.errors import (
    LinecraftError,
    PollTimeout,
    UpstreamQueryError,
    UpstreamReportedFailure,
    UpstreamSubmitError,
)
from linecraft.core.normalizer import CanonicalStatus, NormalizedStatus, normalize_envelope
from linecraft.core.upstream import UpstreamClient

logger = logging.getLogger(__name__)

# Sentinel returned by _until_cancelled when the token fired first.
_CANCELLED = object()


class TaskState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    POLLING = "polling"
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.READY, TaskState.FAILED, TaskState.TIMED_OUT})

# States after which no further transition is allowed.
_FINAL_STATES = TERMINAL_STATES | {TaskState.CANCELLED}


@dataclass
class Task:
    """One upstream generation job as seen by a single orchestration run.

    Attributes:
        task_id: Upstream-assigned id, ``None`` until submission succeeds.
        state: Current lifecycle state.
        submitted_at: UTC time of successful submission.
        result_url: Image URL once ``READY``.
        failure_reason: Human-readable reason once ``FAILED``.
        fail_code: Upstream failure code, when supplied.
        progress: Last progress indicator reported upstream.
        polls: Number of status queries issued.
        elapsed: Seconds between submission and the final transition.
        error: The submit error that ended the run, if any.
    """

    task_id: str | None = None
    state: TaskState = TaskState.IDLE
    submitted_at: datetime | None = None
    result_url: str | None = None
    failure_reason: str | None = None
    fail_code: str | None = None
    progress: Any = None
    polls: int = 0
    elapsed: float = 0.0
    error: LinecraftError | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def raise_for_state(self) -> "Task":
        """Raise the client-facing error for a failed or timed-out task.

        Returns:
            ``self`` when the task is not in an error state.

        Raises:
            UpstreamSubmitError: If submission failed.
            UpstreamReportedFailure: If upstream reported the job as failed.
            PollTimeout: If the deadline passed first.
        """
        if self.state is TaskState.FAILED:
            if self.error is not None:
                raise self.error
            raise UpstreamReportedFailure(
                self.failure_reason or "generation failed",
                task_id=self.task_id or "",
                fail_code=self.fail_code,
            )
        if self.state is TaskState.TIMED_OUT:
            raise PollTimeout("Polling timed out", task_id=self.task_id or "", elapsed=self.elapsed)
        return self

    def to_response(self) -> dict[str, Any]:
        """Render a ready task as the long-poll success body."""
        return {"taskId": self.task_id, "status": "ready", "imageUrl": self.result_url}


@dataclass(frozen=True)
class TransitionEvent:
    """Structured record of one state change, for logging and metrics sinks."""

    task_id: str | None
    previous: TaskState
    current: TaskState
    elapsed: float
    detail: dict[str, Any] = field(default_factory=dict)


TransitionListener = Callable[[TransitionEvent], None]


class CancellationToken:
    """Caller-owned abort signal observed cooperatively by the orchestrator."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class GenerationHandle:
    """Handle to a run scheduled with :meth:`PollingOrchestrator.start`.

    Attributes:
        task: The live :class:`Task` record updated by the run.
    """

    def __init__(self, future: asyncio.Task, task: Task, token: CancellationToken) -> None:
        self._future = future
        self._token = token
        self.task = task

    def cancel(self) -> None:
        """Stop the run at its next check; the result becomes ``CANCELLED``."""
        self._token.cancel()

    def done(self) -> bool:
        return self._future.done()

    async def result(self) -> Task:
        return await self._future


class PollingOrchestrator:
    """Drives a generation job through submission and status polling.

    Args:
        client: Upstream client used for the submit and status calls.
        poll_interval: Seconds between queries while generating.
        backoff_step: Seconds added to the retry delay per failed query.
        backoff_max: Upper bound for the retry delay.
        timeout: Overall deadline in seconds from submission.
        clock: Monotonic time source.
        sleep: Coroutine function used for every wait.
        listeners: Callables receiving each :class:`TransitionEvent`.
    """

    def __init__(
        self,
        client: UpstreamClient,
        *,
        poll_interval: float = 2.0,
        backoff_step: float = 0.5,
        backoff_max: float = 5.0,
        timeout: float = 180.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        listeners: list[TransitionListener] | None = None,
    ) -> None:
        self._client = client
        self.poll_interval = poll_interval
        self.backoff_step = backoff_step
        if backoff_max < poll_interval:
            logger.warning(
                "backoff_max %.1fs is below poll_interval %.1fs; using %.1fs",
                backoff_max,
                poll_interval,
                poll_interval,
            )
            backoff_max = poll_interval
        self.backoff_max = backoff_max
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._listeners: list[TransitionListener] = list(listeners or [])

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Public entry points.
    # ------------------------------------------------------------------

    def start(
        self,
        prompt: str,
        aspect_ratio: str,
        quality: str,
        cancel: CancellationToken | None = None,
    ) -> GenerationHandle:
        """Schedule :meth:`run` on the running loop and return its handle."""
        token = cancel or CancellationToken()
        task = Task()
        future = asyncio.ensure_future(self.run(prompt, aspect_ratio, quality, token, task=task))
        return GenerationHandle(future, task, token)

    async def run(
        self,
        prompt: str,
        aspect_ratio: str,
        quality: str,
        cancel: CancellationToken | None = None,
        *,
        task: Task | None = None,
    ) -> Task:
        """Submit a job and poll it to a terminal state.

        Args:
            prompt: Compiled prompt text.
            aspect_ratio: Upstream ratio token.
            quality: Quality hint.
            cancel: Optional abort signal.
            task: Optional pre-created record to update in place.

        Returns:
            The task in ``READY``, ``FAILED``, ``TIMED_OUT`` or ``CANCELLED``.
            Errors are recorded on the task, not raised; use
            :meth:`Task.raise_for_state` to surface them.
        """
        token = cancel or CancellationToken()
        task = task or Task()

        if token.cancelled:
            self._transition(task, TaskState.CANCELLED)
            return task

        self._transition(task, TaskState.SUBMITTING)
        try:
            outcome = await self._until_cancelled(
                self._client.submit(prompt, aspect_ratio, quality), token
            )
        except UpstreamSubmitError as exc:
            task.error = exc
            task.failure_reason = exc.message
            logger.error("Submission failed: %s", exc.message)
            self._transition(task, TaskState.FAILED, reason=exc.message)
            return task

        if outcome is _CANCELLED:
            self._transition(task, TaskState.CANCELLED)
            return task

        task.task_id = outcome
        task.submitted_at = datetime.now(timezone.utc)
        return await self.poll(task, token, started_at=self._clock())

    async def poll(
        self,
        task: Task,
        cancel: CancellationToken | None = None,
        *,
        started_at: float | None = None,
    ) -> Task:
        """Poll an already-submitted task until it reaches a terminal state.

        Args:
            task: Task with a ``task_id``.
            cancel: Optional abort signal.
            started_at: Clock reading at submission.  Defaults to now, giving
                a resumed task a fresh deadline.

        Raises:
            ValueError: If the task has no id or is already finished.
        """
        if not task.task_id:
            raise ValueError("Cannot poll a task without a task_id")
        if task.state in _FINAL_STATES:
            raise ValueError(f"Task {task.task_id} is already {task.state.value}")

        token = cancel or CancellationToken()
        origin = self._clock() if started_at is None else started_at
        return await self._poll_loop(task, token, origin)

    # ------------------------------------------------------------------
    # Internals.
    # ------------------------------------------------------------------

    async def _poll_loop(self, task: Task, token: CancellationToken, origin: float) -> Task:
        self._transition(task, TaskState.POLLING, origin)
        backoff = self.poll_interval

        while not token.cancelled:
            remaining = self.timeout - (self._clock() - origin)
            if remaining <= 0:
                break

            task.polls += 1
            try:
                status = await self._until_cancelled(
                    asyncio.wait_for(self._query(task.task_id), remaining), token
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Status query %d for task %s still pending at the deadline",
                    task.polls,
                    task.task_id,
                )
                break
            except UpstreamQueryError as exc:
                backoff = min(backoff + self.backoff_step, self.backoff_max)
                logger.warning(
                    "Status query %d for task %s failed (%s); retrying in %.1fs",
                    task.polls,
                    task.task_id,
                    exc.message,
                    backoff,
                )
                wait = backoff
            else:
                if status is _CANCELLED:
                    break
                backoff = self.poll_interval
                task.progress = status.progress
                if status.status is CanonicalStatus.READY:
                    task.result_url = status.image_url
                    self._transition(task, TaskState.READY, origin, image_url=status.image_url)
                    return task
                if status.status is CanonicalStatus.FAILED:
                    task.failure_reason = status.error
                    task.fail_code = status.fail_code
                    self._transition(
                        task, TaskState.FAILED, origin, reason=status.error, fail_code=status.fail_code
                    )
                    return task
                logger.debug("Task %s still generating (progress=%s)", task.task_id, status.progress)
                wait = self.poll_interval

            remaining = self.timeout - (self._clock() - origin)
            if remaining <= 0:
                break
            await self._pause(min(wait, remaining), token)

        if token.cancelled:
            self._transition(task, TaskState.CANCELLED, origin)
        else:
            self._transition(task, TaskState.TIMED_OUT, origin, polls=task.polls)
        return task

    async def _query(self, task_id: str) -> NormalizedStatus:
        envelope = await self._client.query_status(task_id)
        return normalize_envelope(envelope)

    async def _until_cancelled(self, awaitable: Awaitable[Any], token: CancellationToken) -> Any:
        """Await ``awaitable`` unless ``token`` fires first.

        Returns the awaitable's result, or :data:`_CANCELLED` if the token
        fired first, in which case the in-flight work is abandoned.
        """
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not work.done():
                work.cancel()
        if token.cancelled:
            if work.done() and not work.cancelled():
                work.exception()  # retrieved so it is not reported as unhandled
            return _CANCELLED
        return work.result()

    async def _pause(self, delay: float, token: CancellationToken) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        await self._until_cancelled(self._sleep(delay), token)

    def _transition(
        self, task: Task, new_state: TaskState, origin: float | None = None, **detail: Any
    ) -> None:
        if task.state in _FINAL_STATES:
            raise RuntimeError(
                f"Task {task.task_id} is {task.state.value}; cannot move to {new_state.value}"
            )
        elapsed = self._clock() - origin if origin is not None else 0.0
        previous = task.state
        task.state = new_state
        if new_state in _FINAL_STATES:
            task.elapsed = elapsed

        level = logging.WARNING if new_state in (TaskState.FAILED, TaskState.TIMED_OUT) else logging.INFO
        logger.log(
            level,
            "Task %s: %s -> %s (%.1fs)",
            task.task_id,
            previous.value,
            new_state.value,
            elapsed,
            extra={
                "task_id": task.task_id,
                "from_state": previous.value,
                "to_state": new_state.value,
                "elapsed": elapsed,
            },
        )

        event = TransitionEvent(task.task_id, previous, new_state, elapsed, dict(detail))
        for listener in self._listeners:
            listener(event)
