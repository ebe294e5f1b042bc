"""
Decoding of raw transport responses.

The retrieve endpoint does not report completion in a status field: while the
job runs it answers with a JSON status document, and once it is done it
answers with the media itself. The declared content type is therefore the
only discriminator.
"""
import time
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Tuple

from video_generation_client.errors import (
    AuthenticationError,
    InvalidRequestError,
    JobNotFoundError,
    PaymentRequiredError,
    PolicyViolationError,
    RateLimitError,
    TransientError,
    UnexpectedResponseError,
)
from video_generation_client.models import (
    CompletedStatus,
    JobResult,
    JobStatusView,
    ProcessingStatus,
)
from video_generation_client.transport import TransportResponse

# Values above these are absolute Unix timestamps rather than delays
_EPOCH_SECONDS = 1_000_000_000
_EPOCH_MILLISECONDS = 1_000_000_000_000


def decode_poll_response(response: TransportResponse) -> JobStatusView:
    content_type = response.content_type
    if not content_type:
        raise UnexpectedResponseError(
            "Poll response carries no content type", status_code=response.status
        )

    if response.is_json:
        data = response.json_body()
        if not isinstance(data, dict):
            raise UnexpectedResponseError(
                "Expected a JSON object in the status payload, "
                f"got {type(data).__name__}",
                status_code=response.status,
            )
        return ProcessingStatus(
            status=str(data.get("status", "PROCESSING")),
            average_execution_time=data.get("average_execution_time"),
            execution_duration=data.get("execution_duration"),
            raw_response=data,
        )

    if not response.body:
        raise UnexpectedResponseError(
            f"Poll response declared {content_type} but the body is empty",
            status_code=response.status,
        )
    return CompletedStatus(
        result=JobResult(content=response.body, media_type=content_type)
    )


def parse_retry_after(
    response: TransportResponse, now: Optional[float] = None
) -> Optional[float]:
    """Returns how many seconds the server asked us to wait, if it said so"""
    now = time.time() if now is None else now

    retry_after = response.header("retry-after")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass
        try:
            return max(0.0, parsedate_to_datetime(retry_after).timestamp() - now)
        except (TypeError, ValueError):
            pass

    reset = response.header("x-ratelimit-reset-requests")
    if reset:
        try:
            value = float(reset)
        except ValueError:
            return None
        if value >= _EPOCH_MILLISECONDS:
            value /= 1000.0
        if value >= _EPOCH_SECONDS:
            return max(0.0, value - now)
        return max(0.0, value)

    return None


def _error_message(response: TransportResponse) -> Tuple[str, Any]:
    fallback = f"HTTP {response.status}"
    if response.is_json:
        try:
            data = response.json_body()
        except UnexpectedResponseError:
            data = None
        if isinstance(data, dict):
            error = data.get("error") or data.get("message")
            if isinstance(error, dict):
                error = error.get("message")
            return str(error or fallback), data.get("details", data)
    text = response.body.decode("utf-8", errors="replace").strip()
    return (text[:200] or fallback), None


def raise_for_status(response: TransportResponse) -> None:
    """Maps an HTTP error status to the matching client exception"""
    status = response.status
    if status < 400:
        return

    message, details = _error_message(response)
    if status in (401, 403):
        raise AuthenticationError(message, status_code=status, details=details)
    if status == 402:
        raise PaymentRequiredError(message, status_code=status, details=details)
    if status == 404:
        raise JobNotFoundError(message, status_code=status, details=details)
    if status == 422:
        raise PolicyViolationError(message, status_code=status, details=details)
    if status == 429:
        raise RateLimitError(
            message,
            status_code=status,
            details=details,
            retry_after=parse_retry_after(response),
        )
    if status == 408 or status >= 500:
        raise TransientError(message, status_code=status, details=details)
    raise InvalidRequestError(message, status_code=status, details=details)
