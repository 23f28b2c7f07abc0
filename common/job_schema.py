from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from common.errors import ErrorKind


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


TERMINAL_STATES = (JobState.SUCCEEDED, JobState.FAILED)


class JobError(BaseModel):
    kind: ErrorKind
    message: str = ""


class TransformResult(BaseModel):
    image: bytes = Field(repr=False)
    content_type: str = "image/png"


class TransformJob(BaseModel):
    id: str
    nickname: str = ""
    input_image: bytes = Field(repr=False, exclude=True)
    # bytes exactly as uploaded; input_image may be re-encoded
    original_image: Optional[bytes] = Field(default=None, repr=False, exclude=True)
    state: JobState = JobState.QUEUED
    result: Optional[TransformResult] = Field(default=None, repr=False, exclude=True)
    error: Optional[JobError] = None
    submitted_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # filled in by the upload handler after the transform settles
    original_path: Optional[str] = None
    stylized_path: Optional[str] = None
    storage_error: Optional[JobError] = None
    finalized: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def mark_running(self) -> None:
        if self.state != JobState.QUEUED:
            raise ValueError(f"job {self.id} cannot start from {self.state.value}")
        self.state = JobState.RUNNING
        self.started_at = _utcnow()

    def mark_succeeded(self, result: TransformResult) -> None:
        if self.state != JobState.RUNNING:
            raise ValueError(f"job {self.id} cannot succeed from {self.state.value}")
        self.result = result
        self.error = None
        self.state = JobState.SUCCEEDED
        self.completed_at = _utcnow()

    def mark_failed(self, kind: ErrorKind, message: str = "") -> None:
        if self.state != JobState.RUNNING:
            raise ValueError(f"job {self.id} cannot fail from {self.state.value}")
        self.result = None
        self.error = JobError(kind=kind, message=message)
        self.state = JobState.FAILED
        self.completed_at = _utcnow()


class UploadResult(BaseModel):
    ok: bool
    user: str = ""
    job_id: Optional[str] = None
    original_path: Optional[str] = None
    stylized_path: Optional[str] = None
    status: str = "done"
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    detail: Optional[str] = None
    http_status: int = Field(default=200, exclude=True)


class JobStatus(BaseModel):
    done: bool
    ok: Optional[bool] = None
    job_id: Optional[str] = None
    state: Optional[JobState] = None
    original_path: Optional[str] = None
    stylized_path: Optional[str] = None
    content_type: Optional[str] = None
    result: Optional[bytes] = Field(default=None, repr=False, exclude=True)
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    detail: Optional[str] = None
