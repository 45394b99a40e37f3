"""Single-flight job queue in front of the inference pipeline.

Exactly one job executes at a time. Jobs submitted while another is running
receive a "busy" reply and wait in a FIFO backlog; each completion, whether
successful, failed or cancelled, hands the queue to the next backlog entry.

All state changes happen in synchronous methods on the event loop thread, so
``enqueue`` and ``_drain_next`` never interleave with each other. The only
suspension points are inside ``_execute``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Deque, Optional, Protocol, Set

from .chunking import iter_chunks
from .config import Settings
from .models import Job
from .telemetry import TelemetryCollector
from .tracker import IdempotencyTracker

logger = logging.getLogger(__name__)


class Invoker(Protocol):
    async def invoke(self, text: str) -> str:
        ...


class SequentialJobQueue:
    """Runs jobs one at a time in arrival order."""

    def __init__(
        self,
        invoker: Invoker,
        settings: Settings,
        tracker: Optional[IdempotencyTracker] = None,
        *,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._invoker = invoker
        self._settings = settings
        self._tracker = tracker or IdempotencyTracker(
            capacity=settings.tracker_capacity,
            max_age_seconds=settings.tracker_max_age_seconds,
        )
        self._telemetry = telemetry
        self._backlog: Deque[Job] = deque()
        self._active: Optional[Job] = None
        self._current: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def tracker(self) -> IdempotencyTracker:
        return self._tracker

    @property
    def active(self) -> Optional[Job]:
        return self._active

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    @property
    def is_idle(self) -> bool:
        return self._active is None

    async def wait_idle(self) -> None:
        """Wait until the active job and the whole backlog have finished."""
        await self._idle.wait()

    def enqueue(self, job: Job) -> bool:
        """Run ``job`` now if idle, otherwise defer it to the backlog.

        Returns ``True`` when the job started immediately. Must be called from
        the event loop thread.
        """

        if self._active is None:
            self._start(job)
            return True

        self._spawn(self._safe_reply(job, self._settings.busy_reply, purpose="busy"))
        self._backlog.append(job)
        logger.info(
            "Queued job for message %s behind %s (backlog %d)",
            job.source_id,
            self._active.source_id,
            len(self._backlog),
        )
        if self._telemetry is not None:
            self._telemetry.track_queue_depth(len(self._backlog))
        return False

    def _start(self, job: Job) -> None:
        self._active = job
        self._idle.clear()
        task = asyncio.get_running_loop().create_task(self._execute(job))
        task.add_done_callback(self._on_job_done)
        self._current = task

    def _on_job_done(self, task: asyncio.Task) -> None:
        source_id = self._active.source_id if self._active else "?"
        if task.cancelled():
            logger.warning("Job for message %s was cancelled", source_id)
        elif task.exception() is not None:
            logger.error(
                "Job for message %s escaped with an error",
                source_id,
                exc_info=task.exception(),
            )
        self._drain_next()

    def _drain_next(self) -> None:
        if not self._backlog:
            self._active = None
            self._current = None
            self._idle.set()
            return
        self._start(self._backlog.popleft())

    async def _execute(self, job: Job) -> None:
        started = time.time()
        outcome = "error"
        try:
            if not self._tracker.try_begin(job.source_id):
                logger.info("Message %s was already used as input", job.source_id)
                outcome = "duplicate"
                await self._safe_reply(job, self._settings.already_used_reply, purpose="already used")
                return

            ack = self._settings.elaborate_reply if job.is_elaboration else self._settings.invoke_reply
            await self._safe_reply(job, ack, purpose="acknowledgement")

            prompt = job.inference_input(self._settings.invoke_token)
            try:
                result = await self._invoke(prompt)
            except asyncio.TimeoutError:
                logger.error(
                    "Inference for message %s timed out after %ss",
                    job.source_id,
                    self._settings.job_timeout_seconds,
                )
                self._tracker.mark_error(job.source_id)
                await self._safe_reply(job, self._settings.error_reply, purpose="error")
                return
            except Exception:
                logger.exception("Inference for message %s failed", job.source_id)
                self._tracker.mark_error(job.source_id)
                await self._safe_reply(job, self._settings.error_reply, purpose="error")
                return

            for chunk in iter_chunks(result, self._settings.max_chunk_length):
                await self._safe_reply(job, chunk, purpose="result")
            self._tracker.mark_success(job.source_id)
            outcome = "success"
        finally:
            if self._telemetry is not None:
                self._telemetry.track_job(
                    outcome,
                    (time.time() - started) * 1000,
                    source_id=job.source_id,
                    elaboration=job.is_elaboration,
                )

    async def _invoke(self, prompt: str) -> str:
        timeout = self._settings.job_timeout_seconds
        if timeout is None:
            return await self._invoker.invoke(prompt)
        return await asyncio.wait_for(self._invoker.invoke(prompt), timeout)

    async def _safe_reply(self, job: Job, text: str, *, purpose: str) -> None:
        """Send ``text`` to the job's origin; delivery failures are only logged."""

        try:
            await job.reply_sink.send(text)
        except Exception as exc:
            logger.exception("Failed to send %s reply for message %s", purpose, job.source_id)
            if self._telemetry is not None:
                self._telemetry.track_delivery_failure(purpose, str(exc))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


__all__ = ["Invoker", "SequentialJobQueue"]
