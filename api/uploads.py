import asyncio
import logging
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from common.config import FAILED_FOLDER, MAX_INPUT_SIDE, ORIGINALS_FOLDER, OUTPUTS_FOLDER
from common.errors import (
    ErrorKind,
    NoFileError,
    NoSuchJobError,
    NotFoundError,
    StoreError,
    caller_kind,
    message_for,
    status_for,
)
from common.job_schema import JobError, JobState, JobStatus, TransformJob, UploadResult
from common.naming import make_identifier
from common.storage import BlobStore
from common.stylizer import normalize_photo, sniff_content_type
from worker.worker import TransformQueue

logger = logging.getLogger(__name__)


def original_path(job_id: str) -> str:
    return f"{ORIGINALS_FOLDER}/{job_id}.png"


def stylized_path(job_id: str) -> str:
    return f"{OUTPUTS_FOLDER}/{job_id}_stylized.png"


def failed_path(job_id: str) -> str:
    return f"{FAILED_FOLDER}/{job_id}_fail.png"


def _is_finalized(job: TransformJob) -> bool:
    return job.finalized


class UploadHandler:
    """Runs a booth submission end to end: name it, queue it, store it, answer."""

    def __init__(self, store: BlobStore, queue: TransformQueue, max_side: int = MAX_INPUT_SIDE):
        self.store = store
        self.queue = queue
        self.max_side = max_side
        self._background: set[asyncio.Task] = set()
        # async jobs stay pollable until their images are stored
        if queue.evictable is None:
            queue.evictable = _is_finalized

    # ---------- submission ----------

    async def _enqueue(self, nickname: Optional[str], photo: Optional[bytes]):
        if not photo:
            raise NoFileError("no file buffer")
        nickname = nickname or ""
        job = TransformJob(
            id=make_identifier(nickname),
            nickname=nickname,
            input_image=await run_in_threadpool(normalize_photo, photo, self.max_side),
            original_image=photo,
        )
        future = self.queue.submit(job)
        return job, future

    async def handle_upload(self, nickname: Optional[str], photo: Optional[bytes]) -> UploadResult:
        """Synchronous variant: answer only after the illustration is stored."""
        try:
            job, future = await self._enqueue(nickname, photo)
        except NoFileError as e:
            return self._failure(nickname or "", None, ErrorKind.NO_FILE, str(e))

        await future
        await self._persist(job)
        # the response is the pickup
        self.queue.pop(job.id)
        return self.result_for(job)

    async def submit_upload(self, nickname: Optional[str], photo: Optional[bytes]) -> TransformJob:
        """Asynchronous variant: return the queued job, persist in the background."""
        job, future = await self._enqueue(nickname, photo)
        task = asyncio.create_task(self._finish(job, future))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return job

    async def _finish(self, job: TransformJob, future: asyncio.Future) -> None:
        await future
        await self._persist(job)

    async def drain(self) -> None:
        """Wait for queued work and background persistence to settle."""
        await self.queue.join()
        if self._background:
            await asyncio.gather(*list(self._background))

    # ---------- persistence ----------

    async def _put(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        return await run_in_threadpool(self.store.put, path, data, content_type)

    async def _persist(self, job: TransformJob) -> None:
        try:
            if job.state == JobState.SUCCEEDED:
                # the original is a backup copy: losing it does not fail the visitor
                try:
                    job.original_path = await self._put(original_path(job.id), job.original_image)
                except StoreError as e:
                    logger.error("Backup of original for %s failed: %s", job.id, e)
                try:
                    job.stylized_path = await self._put(
                        stylized_path(job.id), job.result.image, job.result.content_type
                    )
                except StoreError as e:
                    logger.error("Storing illustration for %s failed: %s", job.id, e)
                    job.storage_error = JobError(kind=e.kind, message=str(e))
            else:
                if job.error.kind == ErrorKind.NO_IMAGE_RETURNED:
                    logger.error("Job %s: image API answered without an image: %s", job.id, job.error.message)
                try:
                    job.original_path = await self._put(failed_path(job.id), job.original_image)
                except StoreError as e:
                    logger.error("Backup of failed original for %s failed: %s", job.id, e)
        finally:
            job.input_image = b""
            job.original_image = None
            job.finalized = True

    # ---------- responses ----------

    def _failure(self, user: str, job_id: Optional[str], kind: ErrorKind, detail: str,
                 original: Optional[str] = None) -> UploadResult:
        shown = caller_kind(kind)
        return UploadResult(
            ok=False,
            user=user,
            job_id=job_id,
            original_path=original,
            status="failed",
            error=shown,
            message=message_for(shown),
            detail=detail,
            http_status=status_for(shown),
        )

    def result_for(self, job: TransformJob) -> UploadResult:
        if job.state == JobState.FAILED:
            return self._failure(job.nickname, job.id, job.error.kind, job.error.message, job.original_path)
        if job.storage_error is not None:
            return self._failure(job.nickname, job.id, job.storage_error.kind,
                                 job.storage_error.message, job.original_path)
        return UploadResult(
            ok=True,
            user=job.nickname,
            job_id=job.id,
            original_path=job.original_path,
            stylized_path=job.stylized_path,
            status="done",
        )

    # ---------- polling ----------

    def get_status(self, job_id: str) -> JobStatus:
        status = self.queue.get_status(job_id)
        job = self.queue.get_job(job_id)
        if not status.done or not job.finalized:
            return JobStatus(done=False, job_id=job_id, state=job.state)

        outcome = self.result_for(job)
        status.original_path = job.original_path
        status.stylized_path = job.stylized_path
        if not outcome.ok:
            status.ok = False
            status.result = None
            status.content_type = None
            status.error = outcome.error
            status.message = outcome.message
            status.detail = outcome.detail
        return status

    async def pickup(self, job_id: str) -> tuple[bytes, str]:
        """Hand the finished illustration to the client and forget the job.

        Falls back to the store when the job is no longer cached, so results
        survive eviction and sync uploads.
        """
        job = self.queue.get_job(job_id)
        if job is None:
            image = await self._fetch(stylized_path(job_id), job_id)
            return image, sniff_content_type(image)

        status = self.get_status(job_id)
        if not status.done or not status.ok:
            raise NoSuchJobError(f"no result for {job_id}")
        if status.result is not None:
            image, content_type = status.result, status.content_type or "image/png"
        else:
            image = await self._fetch(job.stylized_path, job_id)
            content_type = sniff_content_type(image)
        self.queue.pop(job_id)
        return image, content_type

    async def _fetch(self, path: str, job_id: str) -> bytes:
        try:
            return await run_in_threadpool(self.store.get, path)
        except NotFoundError as e:
            raise NoSuchJobError(f"no result for {job_id}") from e
