"""Serial job queue in front of the rate-limited image API.

One asyncio task drains a FIFO list: it runs a single transform at a time and
pauses a fixed delay between calls. The task is started by ``submit`` when the
queue is idle and ends by itself once the list is empty, so an idle booth holds
no background worker.
"""
import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from common.config import (
    JOB_RETENTION_SECONDS,
    JOB_TABLE_MAX,
    TRANSFORM_DELAY_SECONDS,
    TRANSFORM_TIMEOUT_SECONDS,
)
from common.errors import BoothError, ErrorKind, NoSuchJobError, UpstreamError
from common.job_schema import JobState, JobStatus, TransformJob, TransformResult

logger = logging.getLogger(__name__)


class QueueEntry:
    __slots__ = ("job", "future")

    def __init__(self, job: TransformJob, future: asyncio.Future):
        self.job = job
        self.future = future


class TransformQueue:
    def __init__(
        self,
        transformer,
        delay_seconds: float = TRANSFORM_DELAY_SECONDS,
        timeout_seconds: Optional[float] = TRANSFORM_TIMEOUT_SECONDS,
        max_jobs: int = JOB_TABLE_MAX,
        retention_seconds: float = JOB_RETENTION_SECONDS,
        evictable: Optional[Callable[[TransformJob], bool]] = None,
    ):
        self.transformer = transformer
        self.delay_seconds = delay_seconds
        self.timeout_seconds = timeout_seconds
        self.max_jobs = max_jobs
        self.retention_seconds = retention_seconds
        # finished jobs for which this returns False are kept until it does
        self.evictable = evictable
        self._pending: deque[QueueEntry] = deque()
        self._jobs: dict[str, TransformJob] = {}
        self._running: Optional[TransformJob] = None
        self._worker: Optional[asyncio.Task] = None

    # ---------- submission ----------

    def submit(self, job: TransformJob) -> asyncio.Future:
        """Queue a job and return a future resolved with it once it is terminal."""
        if job.state != JobState.QUEUED:
            raise ValueError(f"job {job.id} is {job.state.value}, expected QUEUED")
        self._evict()
        job.id = self._unique_id(job.id)
        self._jobs[job.id] = job

        future = asyncio.get_running_loop().create_future()
        self._pending.append(QueueEntry(job, future))
        logger.info("Queued job %s (%d waiting)", job.id, len(self._pending))

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name="transform-queue")
        return future

    def _unique_id(self, base: str) -> str:
        if base not in self._jobs:
            return base
        counter = 2
        while f"{base}-{counter}" in self._jobs:
            counter += 1
        return f"{base}-{counter}"

    # ---------- worker ----------

    async def _drain(self) -> None:
        while self._pending:
            entry = self._pending.popleft()
            abandoned = await self._dispatch(entry.job)
            if not entry.future.done():
                entry.future.set_result(entry.job)
            if abandoned is not None:
                await self._settle(entry.job, abandoned)
            # the only throttle: the upstream per-minute limit is not visible to us
            await asyncio.sleep(self.delay_seconds)
        logger.debug("Transform queue drained, worker exiting")

    async def _dispatch(self, job: TransformJob) -> Optional[asyncio.Future]:
        """Run one job to a terminal state.

        Returns the upstream call when it timed out: its thread cannot be
        stopped, so the caller must wait for it before starting the next job.
        """
        job.mark_running()
        self._running = job
        logger.info("Running job %s", job.id)
        call = asyncio.ensure_future(asyncio.to_thread(self.transformer.transform, job.input_image))
        try:
            result = await asyncio.wait_for(asyncio.shield(call), timeout=self.timeout_seconds)
            if not isinstance(result, TransformResult):
                raise UpstreamError(f"transformer returned {type(result).__name__}, not an image")
            job.mark_succeeded(result)
            logger.info("Job %s succeeded (%d bytes, %s)", job.id, len(result.image), result.content_type)
        except BoothError as e:
            job.mark_failed(e.kind, str(e))
            logger.warning("Job %s failed: %s: %s", job.id, e.kind.value, e)
        except asyncio.TimeoutError:
            job.mark_failed(ErrorKind.UPSTREAM_ERROR, f"image API timed out after {self.timeout_seconds}s")
            logger.error("Job %s timed out after %ss", job.id, self.timeout_seconds)
            return call
        except Exception as e:
            job.mark_failed(ErrorKind.UPSTREAM_ERROR, str(e))
            logger.exception("Job %s crashed in transform", job.id)
        finally:
            self._running = None
        return None

    async def _settle(self, job: TransformJob, call: asyncio.Future) -> None:
        logger.warning("Waiting for the timed-out call of job %s to return", job.id)
        await asyncio.wait([call])
        if not call.cancelled() and call.exception() is not None:
            logger.info("Timed-out call of job %s ended with %r", job.id, call.exception())

    async def join(self) -> None:
        """Wait until the worker has drained the queue and exited."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    # ---------- job table ----------

    def get_job(self, job_id: str) -> Optional[TransformJob]:
        return self._jobs.get(job_id)

    def pop(self, job_id: str) -> Optional[TransformJob]:
        job = self._jobs.get(job_id)
        if job is None or not job.is_terminal:
            return None
        return self._jobs.pop(job_id)

    def get_status(self, job_id: str) -> JobStatus:
        job = self._jobs.get(job_id)
        if job is None:
            raise NoSuchJobError(f"no job {job_id}")
        if not job.is_terminal:
            return JobStatus(done=False, job_id=job.id, state=job.state)
        if job.state == JobState.SUCCEEDED:
            return JobStatus(
                done=True,
                ok=True,
                job_id=job.id,
                state=job.state,
                content_type=job.result.content_type if job.result else None,
                result=job.result.image if job.result else None,
            )
        return JobStatus(
            done=True,
            ok=False,
            job_id=job.id,
            state=job.state,
            error=job.error.kind,
            detail=job.error.message,
        )

    def pending_count(self) -> int:
        return len(self._pending)

    def running_job(self) -> Optional[TransformJob]:
        return self._running

    def __len__(self) -> int:
        return len(self._jobs)

    def _evict(self) -> None:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.retention_seconds)
        terminal = sorted(
            (job for job in self._jobs.values() if job.is_terminal),
            key=lambda job: job.completed_at,
        )
        dropped = 0
        for job in terminal:
            if self.evictable is not None and not self.evictable(job):
                continue
            if job.completed_at < cutoff or len(self._jobs) >= self.max_jobs:
                del self._jobs[job.id]
                dropped += 1
        if dropped:
            logger.info("Evicted %d finished jobs (%d left)", dropped, len(self._jobs))
