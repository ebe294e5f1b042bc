from typing import Any, Optional

from video_generation_client.models import JobHandle, JobRun


class VideoAPIError(Exception):
    """Base class for every failure surfaced by the video generation client"""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class InvalidRequestError(VideoAPIError):
    pass


class JobNotFoundError(InvalidRequestError):
    pass


class AuthenticationError(VideoAPIError):
    pass


class PaymentRequiredError(VideoAPIError):
    remediation = "Top up the account balance before submitting new jobs"

    def __str__(self) -> str:
        return f"{self.message} ({self.remediation})"


class PolicyViolationError(VideoAPIError):
    pass


class UnexpectedResponseError(VideoAPIError):
    pass


class TransientError(VideoAPIError):
    retryable = True


class RateLimitError(VideoAPIError):
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        details: Any = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, details=details)
        self.retry_after = retry_after


class JobTimeoutError(VideoAPIError, TimeoutError):
    """The local wall-clock budget ran out; the remote job is left in place"""

    def __init__(self, handle: JobHandle, timeout: float):
        super().__init__(
            f"Job {handle.queue_id} did not complete within {timeout} seconds"
        )
        self.handle = handle
        self.timeout = timeout
        self.run: Optional[JobRun] = None


class JobCancelledError(VideoAPIError):
    def __init__(self, handle: Optional[JobHandle] = None):
        target = f"job {handle.queue_id}" if handle else "request"
        super().__init__(f"Waiting for {target} was cancelled")
        self.handle = handle
        self.run: Optional[JobRun] = None
