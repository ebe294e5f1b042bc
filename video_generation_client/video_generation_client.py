import asyncio
import inspect
import random
from typing import Any, Callable, Dict, Optional

from loguru import logger
from video_generation_client.errors import (
    JobCancelledError,
    JobNotFoundError,
    JobTimeoutError,
    RateLimitError,
    UnexpectedResponseError,
    VideoAPIError,
)
from video_generation_client.models import (
    Ack,
    ClientConfig,
    JobHandle,
    JobQuote,
    JobRequest,
    JobResult,
    JobRun,
    JobState,
    JobStatus,
    JobStatusView,
    PollingConfig,
    RetryConfig,
)
from video_generation_client.responses import decode_poll_response, raise_for_status
from video_generation_client.transport import (
    AiohttpTransport,
    Transport,
    TransportResponse,
)


class VideoGenerationClient:
    def __init__(
        self,
        config: ClientConfig,
        retry: Optional[RetryConfig] = None,
        polling: Optional[PollingConfig] = None,
        transport: Optional[Transport] = None,
        on_status_change: Optional[Callable[[JobStatusView], Any]] = None,
    ):
        self.config = config
        self.retry = retry or RetryConfig()
        self.polling = polling or PollingConfig()
        self._owns_transport = transport is None
        self.transport = transport or AiohttpTransport(config)
        self.logger = logger
        self.on_status_change = on_status_change

    async def __aenter__(self) -> "VideoGenerationClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_transport:
            await self.transport.close()

    def _calculate_delay(self, attempt: int) -> float:
        """Exponential backoff delay for a retry attempt, with optional jitter"""
        delay = min(
            self.retry.initial_delay * (self.retry.backoff_factor**attempt),
            self.retry.max_delay,
        )

        # Add random jitter between 0-20% of the delay
        if self.retry.jitter:
            delay *= 1 + 0.2 * random.random()
        return delay

    def _polling_for(
        self, poll_interval: Optional[float], timeout: Optional[float]
    ) -> PollingConfig:
        return PollingConfig(
            poll_interval=(
                self.polling.poll_interval if poll_interval is None else poll_interval
            ),
            timeout=self.polling.timeout if timeout is None else timeout,
        )

    async def _sleep(
        self,
        delay: float,
        cancel_event: Optional[asyncio.Event],
        handle: Optional[JobHandle] = None,
    ) -> None:
        """Waits for the delay, raising JobCancelledError as soon as the event is set"""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return

        if cancel_event.is_set():
            raise JobCancelledError(handle)
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise JobCancelledError(handle)

    async def _request(
        self,
        path: str,
        payload: Dict[str, Any],
        cancel_event: Optional[asyncio.Event] = None,
        handle: Optional[JobHandle] = None,
        deadline: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> TransportResponse:
        """Sends one request, retrying transient failures and rate limits.

        With a deadline (loop clock), retry waits never run past it and
        JobTimeoutError is raised once no time is left for another attempt.
        """
        loop = asyncio.get_event_loop()
        attempt = 0
        while True:
            try:
                response = await self.transport.post_json(path, payload)
                raise_for_status(response)
                return response
            except VideoAPIError as e:
                if not e.retryable:
                    self.logger.warning(f"Request to {path} rejected: {e}")
                    raise

                attempt += 1
                if attempt >= self.retry.max_attempts:
                    self.logger.error(
                        f"Giving up on {path} after {attempt} attempts: {e}"
                    )
                    raise

                delay = self._calculate_delay(attempt - 1)
                if isinstance(e, RateLimitError) and e.retry_after is not None:
                    delay = max(delay, e.retry_after)

                if deadline is not None:
                    remaining = deadline - loop.time()
                    if delay >= remaining:
                        self.logger.warning(
                            f"Request to {path} failed ({e}), "
                            f"no time left to retry within {timeout}s"
                        )
                        await self._sleep(max(remaining, 0.0), cancel_event, handle)
                        raise JobTimeoutError(handle, timeout)

                self.logger.warning(
                    f"Request to {path} failed ({e}), retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{self.retry.max_attempts})"
                )
                await self._sleep(delay, cancel_event, handle)

    @staticmethod
    def _json_object(response: TransportResponse) -> Dict[str, Any]:
        if not response.is_json:
            raise UnexpectedResponseError(
                "Expected a JSON response, got "
                f"{response.content_type or 'no content type'}",
                status_code=response.status,
            )
        data = response.json_body()
        if not isinstance(data, dict):
            raise UnexpectedResponseError(
                "Expected a JSON object", status_code=response.status
            )
        return data

    async def quote(self, request: JobRequest) -> JobQuote:
        """Asks the service for a price estimate without creating a job"""
        response = await self._request(self.config.paths.quote, request.to_payload())
        data = self._json_object(response)
        if "quote" not in data:
            raise UnexpectedResponseError(
                "Quote response has no 'quote' field", status_code=response.status
            )
        return JobQuote(quote=data["quote"], raw_response=data)

    async def submit(
        self, request: JobRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> JobHandle:
        """Queues a job and returns the handle used to poll and release it"""
        response = await self._request(
            self.config.paths.queue, request.to_payload(), cancel_event
        )
        data = self._json_object(response)
        queue_id = data.get("queue_id")
        if not queue_id:
            raise UnexpectedResponseError(
                "Queue response has no 'queue_id' field", status_code=response.status
            )

        handle = JobHandle(
            queue_id=str(queue_id), model=data.get("model") or request.model
        )
        self.logger.info(f"Queued job {handle.queue_id} on model {handle.model}")
        return handle

    async def _poll_once(
        self,
        handle: JobHandle,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> JobStatusView:
        response = await self._request(
            self.config.paths.retrieve,
            handle.to_payload(),
            cancel_event,
            handle,
            deadline,
            timeout,
        )
        return decode_poll_response(response)

    async def poll(
        self, handle: JobHandle, cancel_event: Optional[asyncio.Event] = None
    ) -> JobStatusView:
        """Fetches the current status of a job; has no effect on the remote side"""
        return await self._poll_once(handle, cancel_event)

    async def complete(self, handle: JobHandle) -> Ack:
        """Releases the remote storage of a job. Releasing twice is not an error"""
        try:
            response = await self._request(
                self.config.paths.complete, handle.to_payload()
            )
        except JobNotFoundError:
            self.logger.debug(f"Job {handle.queue_id} was already released")
            return Ack(success=True, already_released=True)

        data = self._json_object(response) if response.is_json else {}
        return Ack(success=bool(data.get("success", True)), raw_response=data)

    async def _release(self, handle: JobHandle) -> None:
        try:
            await self.complete(handle)
        except VideoAPIError as e:
            self.logger.warning(
                f"Could not release storage for job {handle.queue_id}: {e}"
            )

    async def _handle_status_change(
        self, view: JobStatusView, last_status: Optional[JobStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != view.kind and self.on_status_change is not None:
            self.logger.debug(f"Job status changed to {view.kind.value}")
            result = self.on_status_change(view)
            if inspect.isawaitable(result):
                await result

    async def wait_for_result(
        self,
        handle: JobHandle,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> JobResult:
        """Poll a queued job until it completes, then release its remote storage.

        On JobTimeoutError and JobCancelledError the remote job is left in
        place and the error carries the local JobRun, so the same handle can
        be passed back here later.
        """
        polling = self._polling_for(poll_interval, timeout)
        loop = asyncio.get_event_loop()
        deadline = loop.time() + polling.timeout
        run = JobRun(handle=handle)
        last_status = None

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise JobTimeoutError(handle, polling.timeout)

                wait = min(polling.poll_interval, remaining)
                self.logger.debug(
                    f"Job {handle.queue_id} pending, waiting {wait:.2f}s"
                )
                await self._sleep(wait, cancel_event, handle)
                if loop.time() >= deadline:
                    raise JobTimeoutError(handle, polling.timeout)

                view = await self._poll_once(
                    handle, cancel_event, deadline, polling.timeout
                )
                run.polls += 1
                await self._handle_status_change(view, last_status)
                last_status = view.kind

                if view.is_complete:
                    run.advance(JobState.complete)
                    break
                run.advance(JobState.processing)
        except (JobTimeoutError, JobCancelledError) as e:
            e.run = run
            self.logger.warning(
                f"Stopped waiting for job {handle.queue_id} "
                f"after {run.polls} polls: {e}"
            )
            raise
        except VideoAPIError as e:
            run.advance(JobState.failed)
            self.logger.error(f"Job {handle.queue_id} failed: {e}")
            raise

        result = view.result
        self.logger.info(
            f"Job {handle.queue_id} completed after {run.polls} polls "
            f"({result.size} bytes of {result.media_type})"
        )
        await self._release(handle)
        return result

    async def run_to_completion(
        self,
        request: JobRequest,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> JobResult:
        """Submit a job, wait for its media and release the remote copy"""
        polling = self._polling_for(poll_interval, timeout)
        handle = await self.submit(request, cancel_event)
        return await self.wait_for_result(
            handle, polling.poll_interval, polling.timeout, cancel_event
        )
