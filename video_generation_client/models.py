import os
import re
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DURATION_PATTERN = re.compile(r"^\d+s$")


class JobStatus(str, Enum):
    processing = "processing"
    complete = "complete"


class JobState(str, Enum):
    created = "created"
    processing = "processing"
    complete = "complete"
    failed = "failed"


_TRANSITIONS = {
    JobState.created: {JobState.processing, JobState.complete, JobState.failed},
    JobState.processing: {JobState.processing, JobState.complete, JobState.failed},
    JobState.complete: set(),
    JobState.failed: set(),
}


class JobRequest(BaseModel):
    """Parameters used to price and submit a video generation job"""

    model_config = ConfigDict(frozen=True)

    model: str = Field(min_length=1)
    prompt: str = Field(min_length=1, max_length=2500)
    duration: str = "5s"
    resolution: Optional[str] = None
    image_url: Optional[str] = None
    aspect_ratio: Optional[str] = None
    negative_prompt: Optional[str] = Field(default=None, max_length=2500)
    audio: Optional[bool] = None

    @field_validator("duration")
    @classmethod
    def _check_duration(cls, value: str) -> str:
        if not DURATION_PATTERN.match(value):
            raise ValueError(f"duration must look like '5s', got {value!r}")
        return value

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


class JobQuote(BaseModel):
    quote: float
    raw_response: dict = Field(default_factory=dict)


class JobHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    queue_id: str = Field(min_length=1)
    model: str

    def to_payload(self) -> dict:
        return {"model": self.model, "queue_id": self.queue_id}


class JobResult(BaseModel):
    content: bytes
    media_type: str

    @property
    def size(self) -> int:
        return len(self.content)

    def save(self, path: Union[str, Path]) -> Path:
        """Writes the artifact to disk and returns the resolved path"""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.content)
        return target.resolve()


class ProcessingStatus(BaseModel):
    kind: JobStatus = JobStatus.processing
    status: str = "PROCESSING"
    average_execution_time: Optional[float] = None
    execution_duration: Optional[float] = None
    raw_response: dict = Field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return False


class CompletedStatus(BaseModel):
    kind: JobStatus = JobStatus.complete
    result: JobResult

    @property
    def is_complete(self) -> bool:
        return True


JobStatusView = Union[ProcessingStatus, CompletedStatus]


class Ack(BaseModel):
    success: bool = True
    already_released: bool = False
    raw_response: dict = Field(default_factory=dict)


class JobRun(BaseModel):
    """Local view of one job's lifecycle; terminal states are final"""

    handle: JobHandle
    state: JobState = JobState.created
    polls: int = 0

    def advance(self, state: JobState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Cannot move job {self.handle.queue_id} "
                f"from {self.state.value} to {state.value}"
            )
        self.state = state

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.complete, JobState.failed)


class EndpointPaths(BaseModel):
    quote: str = "/video/quote"
    queue: str = "/video/queue"
    retrieve: str = "/video/retrieve"
    complete: str = "/video/complete"


class ClientConfig(BaseModel):
    base_url: str
    api_key: str = Field(repr=False)
    request_timeout: float = 60.0
    paths: EndpointPaths = Field(default_factory=EndpointPaths)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        base_url = os.getenv("VIDEO_API_BASE_URL")
        api_key = os.getenv("VIDEO_API_KEY")
        if not base_url or not api_key:
            raise ValueError("VIDEO_API_BASE_URL and VIDEO_API_KEY must be set")
        return cls(
            base_url=base_url,
            api_key=api_key,
            request_timeout=float(os.getenv("VIDEO_API_TIMEOUT", "60")),
        )


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=4, ge=1)
    initial_delay: float = 1.0
    max_delay: float = 32.0
    backoff_factor: float = 2.0
    jitter: bool = True


class PollingConfig(BaseModel):
    poll_interval: float = Field(default=5.0, gt=0)
    timeout: float = Field(default=600.0, gt=0)  # 10 minutes
