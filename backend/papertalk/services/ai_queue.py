"""
In-memory queue with concurrency control for AI grading.

Caps how many submissions are graded at the same time so the AI provider's rate
limits and the process's memory (every in-flight job holds decoded page images)
stay bounded. One instance per process, created by the composition root and
shared with every ingestion entry point.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

from papertalk.config import logger
from papertalk.services.background import BackgroundTaskRunner

TRANSIENT_STATUS_CODES = {429, 503}
TRANSIENT_MARKERS = ("503", "429", "overloaded")

# Reasons passed to the on_dropped hook
DROP_QUEUE_FULL = "queue_full"
DROP_RETRIES_EXHAUSTED = "retries_exhausted"

T = TypeVar("T")

JobHandler = Callable[[str, List[str]], Awaitable[object]]
DropHandler = Callable[[str, str], Awaitable[None]]


@dataclass
class GradingJob:
    submission_id: str
    image_refs: List[str]
    requeues: int = field(default=0)


def is_transient_error(error: BaseException) -> bool:
    """Upstream overload (429/503 or an 'overloaded' message) is safe to retry later."""
    status_code = getattr(error, "status_code", None)
    if status_code in TRANSIENT_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


class JobAlreadyTracked(Exception):
    """The submission is already queued or being graded."""

    def __init__(self, submission_id: str):
        super().__init__(f"Submission {submission_id} is already queued or processing")
        self.submission_id = submission_id


class AIProcessingQueue:
    """FIFO queue that keeps at most ``max_concurrent`` grading jobs in flight."""

    def __init__(
        self,
        handler: JobHandler,
        max_concurrent: int = 2,
        max_queue_size: int = 10,
        full_retry_delay: float = 5.0,
        overload_retry_delay: float = 10.0,
        max_requeues: Optional[int] = 5,
        on_dropped: Optional[DropHandler] = None,
        runner: Optional[BackgroundTaskRunner] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")
        self._handler = handler
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self.full_retry_delay = full_retry_delay
        self.overload_retry_delay = overload_retry_delay
        self.max_requeues = max_requeues
        self.on_dropped = on_dropped
        self.runner = runner or BackgroundTaskRunner()
        self._queue: Deque[GradingJob] = deque()
        self._processing: Dict[str, List[str]] = {}  # submission_id -> refs being graded
        self._superseded: Dict[str, List[str]] = {}  # newer refs for an in-flight submission

    # ---------- introspection ----------

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def processing_count(self) -> int:
        return len(self._processing)

    @property
    def total_pending(self) -> int:
        return len(self._queue) + len(self._processing)

    def is_tracked(self, submission_id: str) -> bool:
        """True if the submission is queued or being graded right now."""
        return submission_id in self._processing or any(
            job.submission_id == submission_id for job in self._queue
        )

    def snapshot(self) -> dict:
        return {
            "queue_size": self.queue_size,
            "processing_count": self.processing_count,
            "total_pending": self.total_pending,
            "max_concurrent": self.max_concurrent,
            "max_queue_size": self.max_queue_size,
            "queued_ids": [job.submission_id for job in self._queue],
            "processing_ids": sorted(self._processing),
        }

    # ---------- admission ----------

    def add(self, submission_id: str, image_refs: List[str]) -> None:
        """
        Queue a submission for AI grading. Never raises, never blocks.

        A submission already waiting keeps its place with the new refs. One being
        graded right now is graded again with the new refs once it finishes.
        """
        try:
            image_refs = list(image_refs)
            if self._refresh_tracked(submission_id, image_refs):
                return

            job = GradingJob(submission_id=submission_id, image_refs=image_refs)

            if len(self._queue) >= self.max_queue_size:
                logger.warning(
                    f"AI queue is full ({self.max_queue_size} items). Submission {submission_id} "
                    f"will be queued when space is available."
                )
                self.runner.schedule(
                    self.full_retry_delay,
                    lambda: self._deferred_add(job),
                    name=f"ai-queue-deferred-{submission_id}",
                )
                return

            self._queue.append(job)
            self._process()
        except Exception as e:
            logger.error(f"Error queuing AI for submission {submission_id}: {e}", exc_info=True)

    def _refresh_tracked(self, submission_id: str, image_refs: List[str]) -> bool:
        """Point an existing job at ``image_refs``. False if the submission is not tracked."""
        queued = next((job for job in self._queue if job.submission_id == submission_id), None)
        if queued is not None:
            if queued.image_refs != image_refs:
                queued.image_refs = image_refs
                logger.info(f"Submission {submission_id} is already queued. Updated its images.")
            else:
                logger.info(f"Submission {submission_id} is already queued. Skipping.")
            return True

        if submission_id in self._processing:
            if self._processing[submission_id] != image_refs:
                self._superseded[submission_id] = image_refs
                logger.info(f"Submission {submission_id} changed while processing. Will grade it again.")
            else:
                logger.info(f"Submission {submission_id} is already processing. Skipping.")
            return True
        return False

    async def _deferred_add(self, job: GradingJob) -> None:
        if self._refresh_tracked(job.submission_id, job.image_refs):
            return
        if len(self._queue) < self.max_queue_size:
            self._queue.append(job)
            self._process()
            return
        logger.warning(f"AI queue still full, dropping submission {job.submission_id}")
        await self._notify_dropped(job.submission_id, DROP_QUEUE_FULL)

    def _requeue(self, job: GradingJob) -> None:
        # Overload retries skip the size check: the job already held a slot
        if self.is_tracked(job.submission_id):
            logger.info(f"Submission {job.submission_id} was re-added meanwhile. Dropping stale retry.")
            return
        self._queue.append(job)
        self._process()

    # ---------- processing ----------

    def _process(self) -> None:
        while len(self._processing) < self.max_concurrent and self._queue:
            job = self._queue.popleft()
            self._processing[job.submission_id] = job.image_refs
            self.runner.spawn(self._run(job), name=f"ai-grade-{job.submission_id}")

    def _release(self, submission_id: str) -> None:
        self._processing.pop(submission_id, None)
        refs = self._superseded.pop(submission_id, None)
        if refs is not None:
            # Holds the slot it just gave up, so no size check
            self._queue.append(GradingJob(submission_id=submission_id, image_refs=refs))
        asyncio.get_running_loop().call_soon(self._process)

    async def _run(self, job: GradingJob) -> None:
        try:
            await self._handler(job.submission_id, job.image_refs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error processing AI for submission {job.submission_id}: {e}")
            if is_transient_error(e):
                self._schedule_overload_retry(job)
        finally:
            self._release(job.submission_id)

    async def run_exclusive(self, submission_id: str, image_refs: List[str], call: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``call`` as the only grading of ``submission_id``, outside the FIFO.

        Raises JobAlreadyTracked if the submission is queued or being graded. While
        ``call`` runs, ``add`` for the same submission waits for it to finish.
        """
        if self.is_tracked(submission_id):
            raise JobAlreadyTracked(submission_id)
        self._processing[submission_id] = list(image_refs)
        try:
            return await call()
        finally:
            self._release(submission_id)

    def _schedule_overload_retry(self, job: GradingJob) -> None:
        if job.submission_id in self._superseded:
            logger.info(f"Submission {job.submission_id} has newer images. Not retrying the old ones.")
            return
        if self.max_requeues is not None and job.requeues >= self.max_requeues:
            logger.error(
                f"Submission {job.submission_id} hit provider overload {job.requeues + 1} times. Giving up."
            )
            self.runner.spawn(
                self._notify_dropped(job.submission_id, DROP_RETRIES_EXHAUSTED),
                name=f"ai-queue-exhausted-{job.submission_id}",
            )
            return

        logger.info(f"Re-queuing submission {job.submission_id} due to service overload...")
        retry = GradingJob(job.submission_id, job.image_refs, requeues=job.requeues + 1)

        async def _requeue_later():
            self._requeue(retry)

        self.runner.schedule(
            self.overload_retry_delay, _requeue_later, name=f"ai-queue-requeue-{job.submission_id}"
        )

    async def _notify_dropped(self, submission_id: str, reason: str) -> None:
        if self.on_dropped is None:
            return
        try:
            await self.on_dropped(submission_id, reason)
        except Exception as e:
            logger.error(f"Failed to record dropped AI job {submission_id}: {e}", exc_info=True)

    async def shutdown(self) -> None:
        self._queue.clear()
        await self.runner.shutdown()
