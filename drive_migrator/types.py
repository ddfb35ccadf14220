from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from drive_migrator.utils import utc_now


class JobState(str, Enum):
    """Lifecycle state of a transfer job"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.STOPPED})


class JobSpec(BaseModel):
    """Canonical inputs of a transfer request"""

    principal: str
    items: List[str]
    destination_prefix: str


class Job(BaseModel):
    """One logical transfer request and its execution record"""

    id: str
    principal: str
    items: List[str] = Field(default_factory=list)
    destination_prefix: str = ""
    state: JobState = JobState.PENDING
    attempt: int = 1
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    progress_percent: int = Field(default=0, ge=0, le=100)
    exit_code: Optional[int] = None
    failure_reason: Optional[str] = None
    log_tail: List[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class CredentialRecord(BaseModel):
    """Stored OAuth credential of one principal"""

    principal: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the access token expires in less than ``seconds``."""
        now = now or utc_now()
        return now >= self.expires_at - timedelta(seconds=seconds)


class TokenGrant(BaseModel):
    """Result of a refresh token exchange"""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = Field(ge=0)


class AccessDecision(BaseModel):
    """Outcome of the source access check"""

    approved: bool
    reason: Optional[str] = None
    drive_id: Optional[str] = None


class EventType(str, Enum):
    PROGRESS = "progress"
    LOG_LINE = "logLine"
    DONE = "done"


class JobEvent(BaseModel):
    """Notification pushed to job observers"""

    type: EventType
    job_id: str
    progress: Optional[int] = None
    message: Optional[str] = None
    status: Optional[JobState] = None
    exit_code: Optional[int] = None
    failure_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class LogChunk(BaseModel):
    """A slice of a job log addressed by absolute line offsets"""

    job_id: str
    offset: int = Field(description="Absolute index of the first returned line")
    next_offset: int = Field(description="Offset to pass for the next incremental read")
    lines: List[str] = Field(default_factory=list)


class StartJobResponse(BaseModel):
    """Response from a start request"""

    job_id: str
    status: JobState
    already_running: bool = False


class JobStatusResponse(BaseModel):
    """Status of a job as seen by external observers"""

    job_id: str
    status: JobState
    progress_percent: int
    attempt: int = 1
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    failure_reason: Optional[str] = None
    pid: Optional[int] = None
    runtime_seconds: Optional[float] = None
    cpu_percent: Optional[float] = None
    memory_mb: Optional[float] = None

    @classmethod
    def from_job(cls, job: Job, process_info: Optional[Dict[str, Any]] = None) -> "JobStatusResponse":
        response = cls(
            job_id=job.id,
            status=job.state,
            progress_percent=job.progress_percent,
            attempt=job.attempt,
            started_at=job.started_at,
            finished_at=job.finished_at,
            exit_code=job.exit_code,
            failure_reason=job.failure_reason,
        )
        if process_info:
            response.pid = process_info.get("pid")
            response.runtime_seconds = process_info.get("runtime")
            response.cpu_percent = process_info.get("cpu_percent")
            response.memory_mb = process_info.get("memory_mb")
        return response


class StopOutcome(str, Enum):
    """Result of a stop request"""

    STOPPING = "stopping"  # signal sent, waiting for the process to exit
    STOPPED = "stopped"  # job removed before its process was spawned
    ALREADY_STOPPED = "already_stopped"
    NOT_FOUND = "not_found"
