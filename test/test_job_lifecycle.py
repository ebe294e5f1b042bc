import asyncio
import json
from typing import Dict, List, Union

import pydantic
import pytest
from video_generation_client.errors import (
    AuthenticationError,
    InvalidRequestError,
    JobCancelledError,
    JobNotFoundError,
    JobTimeoutError,
    PaymentRequiredError,
    PolicyViolationError,
    TransientError,
)
from video_generation_client.models import (
    ClientConfig,
    JobHandle,
    JobRequest,
    JobResult,
    JobRun,
    JobState,
    JobStatus,
    PollingConfig,
    RetryConfig,
)
from video_generation_client.transport import TransportResponse
from video_generation_client.video_generation_client import VideoGenerationClient

VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42-final-artifact"
QUEUE = "/video/queue"
QUOTE = "/video/quote"
RETRIEVE = "/video/retrieve"
COMPLETE = "/video/complete"

Scripted = Union[TransportResponse, Exception]


def json_response(
    data, status: int = 200, headers: Dict[str, str] = None
) -> TransportResponse:
    return TransportResponse(
        status=status,
        headers={
            "content-type": "application/json; charset=utf-8",
            **(headers or {}),
        },
        body=json.dumps(data).encode(),
    )


def video_response(body: bytes = VIDEO_BYTES) -> TransportResponse:
    return TransportResponse(
        status=200, headers={"content-type": "video/mp4"}, body=body
    )


def rate_limited(retry_after: str) -> TransportResponse:
    return json_response(
        {"error": "Too many requests"}, status=429, headers={"retry-after": retry_after}
    )


PROCESSING = json_response({"status": "PROCESSING", "execution_duration": 1200})
QUEUED = json_response({"model": "demo", "queue_id": "q-1"})
RELEASED = json_response({"success": True})


class StubTransport:
    """Replays scripted responses per path; the last one for a path repeats"""

    def __init__(self, routes: Dict[str, List[Scripted]]):
        self.routes = {path: list(responses) for path, responses in routes.items()}
        self.calls = []

    async def post_json(self, path, payload):
        self.calls.append((path, payload))
        scripted = self.routes[path]
        item = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        pass

    def count(self, path: str) -> int:
        return sum(1 for called, _ in self.calls if called == path)


@pytest.fixture
def request_params() -> JobRequest:
    return JobRequest(model="demo", prompt="lake at sunrise", duration="5s")


def make_client(
    transport: StubTransport, on_status_change=None
) -> VideoGenerationClient:
    return VideoGenerationClient(
        ClientConfig(base_url="http://stub", api_key="secret"),
        retry=RetryConfig(
            max_attempts=3, initial_delay=0.01, max_delay=0.05, jitter=False
        ),
        polling=PollingConfig(poll_interval=0.01, timeout=5.0),
        transport=transport,
        on_status_change=on_status_change,
    )


@pytest.mark.asyncio
async def test_run_to_completion_returns_media_and_releases_once(request_params):
    """Two processing polls, then the media: the job is released exactly once."""
    transport = StubTransport(
        {
            QUEUE: [QUEUED],
            RETRIEVE: [PROCESSING, PROCESSING, video_response()],
            COMPLETE: [RELEASED],
        }
    )
    client = make_client(transport)

    result = await client.run_to_completion(request_params)

    assert result == JobResult(content=VIDEO_BYTES, media_type="video/mp4")
    assert transport.count(RETRIEVE) == 3
    assert transport.count(COMPLETE) == 1
    assert (COMPLETE, {"model": "demo", "queue_id": "q-1"}) in transport.calls
    assert transport.calls[0] == (QUEUE, request_params.to_payload())


@pytest.mark.asyncio
async def test_poll_after_submit_reports_processing(request_params):
    transport = StubTransport({QUEUE: [QUEUED], RETRIEVE: [PROCESSING]})
    client = make_client(transport)

    handle = await client.submit(request_params)
    view = await client.poll(handle)

    assert handle == JobHandle(queue_id="q-1", model="demo")
    assert view.kind == JobStatus.processing
    assert not view.is_complete
    assert view.execution_duration == 1200


@pytest.mark.asyncio
async def test_media_on_first_poll_stops_polling(request_params):
    transport = StubTransport(
        {QUEUE: [QUEUED], RETRIEVE: [video_response()], COMPLETE: [RELEASED]}
    )
    client = make_client(transport)

    result = await client.run_to_completion(request_params)

    assert result.content == VIDEO_BYTES
    assert transport.count(RETRIEVE) == 1


@pytest.mark.asyncio
async def test_complete_twice_is_not_an_error():
    transport = StubTransport(
        {COMPLETE: [RELEASED, json_response({"error": "Unknown queue_id"}, status=404)]}
    )
    client = make_client(transport)
    handle = JobHandle(queue_id="q-1", model="demo")

    first = await client.complete(handle)
    second = await client.complete(handle)

    assert first.success and not first.already_released
    assert second.success and second.already_released


@pytest.mark.asyncio
async def test_timeout_leaves_remote_job_in_place(request_params):
    transport = StubTransport(
        {QUEUE: [QUEUED], RETRIEVE: [PROCESSING], COMPLETE: [RELEASED]}
    )
    client = make_client(transport)

    with pytest.raises(JobTimeoutError) as exc_info:
        await client.run_to_completion(
            request_params, poll_interval=0.01, timeout=0.05
        )

    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.handle.queue_id == "q-1"
    assert exc_info.value.run.state == JobState.processing
    assert exc_info.value.run.polls >= 1
    assert transport.count(COMPLETE) == 0


@pytest.mark.asyncio
async def test_timed_out_job_can_be_resumed(request_params):
    transport = StubTransport(
        {
            QUEUE: [QUEUED],
            RETRIEVE: [PROCESSING, PROCESSING, video_response()],
            COMPLETE: [RELEASED],
        }
    )
    client = make_client(transport)

    with pytest.raises(JobTimeoutError) as exc_info:
        await client.run_to_completion(
            request_params, poll_interval=0.05, timeout=0.03
        )
    assert transport.count(RETRIEVE) == 0

    result = await client.wait_for_result(
        exc_info.value.handle, poll_interval=0.01
    )

    assert result.media_type == "video/mp4"
    assert transport.count(COMPLETE) == 1


@pytest.mark.asyncio
async def test_cancel_during_wait_returns_promptly(request_params):
    transport = StubTransport(
        {QUEUE: [QUEUED], RETRIEVE: [PROCESSING], COMPLETE: [RELEASED]}
    )
    client = make_client(transport)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, cancel_event.set)

    started = loop.time()
    with pytest.raises(JobCancelledError) as exc_info:
        await client.run_to_completion(
            request_params, poll_interval=10.0, timeout=60.0, cancel_event=cancel_event
        )

    assert loop.time() - started < 1.0
    assert exc_info.value.handle.queue_id == "q-1"
    assert transport.count(RETRIEVE) == 0
    assert transport.count(COMPLETE) == 0


@pytest.mark.asyncio
async def test_rate_limit_waits_for_reset_hint(request_params):
    transport = StubTransport(
        {
            QUOTE: [
                rate_limited("0.2"),
                json_response({"quote": 0.25}),
            ]
        }
    )
    client = make_client(transport)
    loop = asyncio.get_running_loop()

    started = loop.time()
    quote = await client.quote(request_params)

    assert loop.time() - started >= 0.19
    assert quote.quote == 0.25
    assert transport.count(QUOTE) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error",
    [
        (400, InvalidRequestError),
        (401, AuthenticationError),
        (402, PaymentRequiredError),
        (422, PolicyViolationError),
    ],
)
async def test_client_errors_are_not_retried(request_params, status, error):
    transport = StubTransport(
        {QUEUE: [json_response({"error": "rejected"}, status=status)]}
    )
    client = make_client(transport)

    with pytest.raises(error):
        await client.submit(request_params)

    assert transport.count(QUEUE) == 1


@pytest.mark.asyncio
async def test_server_errors_exhaust_retry_budget():
    transport = StubTransport(
        {RETRIEVE: [json_response({"error": "unavailable"}, status=503)]}
    )
    client = make_client(transport)

    with pytest.raises(TransientError):
        await client.poll(JobHandle(queue_id="q-1", model="demo"))

    assert transport.count(RETRIEVE) == 3


@pytest.mark.asyncio
async def test_network_error_is_retried():
    transport = StubTransport(
        {RETRIEVE: [TransientError("connection reset"), video_response()]}
    )
    client = make_client(transport)

    view = await client.poll(JobHandle(queue_id="q-1", model="demo"))

    assert view.is_complete
    assert transport.count(RETRIEVE) == 2


@pytest.mark.asyncio
async def test_poll_failure_fails_job_without_cleanup(request_params):
    transport = StubTransport(
        {
            QUEUE: [QUEUED],
            RETRIEVE: [
                PROCESSING,
                json_response({"error": "Unknown queue_id"}, status=404),
            ],
            COMPLETE: [RELEASED],
        }
    )
    client = make_client(transport)

    with pytest.raises(JobNotFoundError):
        await client.run_to_completion(request_params)

    assert transport.count(COMPLETE) == 0


@pytest.mark.asyncio
async def test_failed_cleanup_does_not_hide_result(request_params):
    transport = StubTransport(
        {
            QUEUE: [QUEUED],
            RETRIEVE: [video_response()],
            COMPLETE: [json_response({"error": "Authentication failed"}, status=401)],
        }
    )
    client = make_client(transport)

    result = await client.run_to_completion(request_params)

    assert result.content == VIDEO_BYTES
    assert transport.count(COMPLETE) == 1


@pytest.mark.asyncio
async def test_status_change_callback_sees_each_transition(request_params):
    seen = []
    transport = StubTransport(
        {
            QUEUE: [QUEUED],
            RETRIEVE: [PROCESSING, PROCESSING, video_response()],
            COMPLETE: [RELEASED],
        }
    )
    client = make_client(
        transport, on_status_change=lambda view: seen.append(view.kind)
    )

    await client.run_to_completion(request_params)

    assert seen == [JobStatus.processing, JobStatus.complete]


def test_job_run_never_leaves_terminal_state():
    run = JobRun(handle=JobHandle(queue_id="q-1", model="demo"))
    run.advance(JobState.processing)
    run.advance(JobState.complete)

    assert run.is_terminal
    with pytest.raises(ValueError):
        run.advance(JobState.processing)
    with pytest.raises(ValueError):
        run.advance(JobState.failed)


def test_job_request_validation():
    request = JobRequest(
        model="demo", prompt="lake at sunrise", duration="10s", resolution="720p"
    )

    assert request.to_payload() == {
        "model": "demo",
        "prompt": "lake at sunrise",
        "duration": "10s",
        "resolution": "720p",
    }
    with pytest.raises(pydantic.ValidationError):
        JobRequest(model="demo", prompt="lake at sunrise", duration="ten seconds")
    with pytest.raises(pydantic.ValidationError):
        JobRequest(model="demo", prompt="x" * 2501)
    with pytest.raises(pydantic.ValidationError):
        request.prompt = "changed"


def test_client_config_from_env(monkeypatch):
    monkeypatch.setenv("VIDEO_API_BASE_URL", "https://api.example.test/v1")
    monkeypatch.setenv("VIDEO_API_KEY", "secret")
    monkeypatch.setenv("VIDEO_API_TIMEOUT", "12.5")

    config = ClientConfig.from_env()

    assert config.base_url == "https://api.example.test/v1"
    assert config.request_timeout == 12.5
    assert config.paths.retrieve == RETRIEVE
    assert "secret" not in repr(config)

    monkeypatch.delenv("VIDEO_API_KEY")
    with pytest.raises(ValueError):
        ClientConfig.from_env()


@pytest.mark.asyncio
async def test_rate_limited_polls_respect_the_timeout(request_params):
    """A retry wait that would outlast the timeout ends in JobTimeoutError."""
    transport = StubTransport(
        {QUEUE: [QUEUED], RETRIEVE: [rate_limited("1")], COMPLETE: [RELEASED]}
    )
    client = make_client(transport)
    loop = asyncio.get_running_loop()

    started = loop.time()
    with pytest.raises(JobTimeoutError) as exc_info:
        await client.run_to_completion(
            request_params, poll_interval=0.05, timeout=0.3
        )

    assert loop.time() - started < 0.6
    assert exc_info.value.handle.queue_id == "q-1"
    assert exc_info.value.run.state != JobState.failed
    assert transport.count(RETRIEVE) == 1
    assert transport.count(COMPLETE) == 0


@pytest.mark.asyncio
async def test_cancel_during_submit_retry_wait(request_params):
    transport = StubTransport({QUEUE: [rate_limited("5"), QUEUED]})
    client = make_client(transport)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, cancel_event.set)

    started = loop.time()
    with pytest.raises(JobCancelledError):
        await client.submit(request_params, cancel_event)

    assert loop.time() - started < 1.0
    assert transport.count(QUEUE) == 1


@pytest.mark.asyncio
async def test_cancel_during_poll_retry_wait(request_params):
    transport = StubTransport(
        {QUEUE: [QUEUED], RETRIEVE: [rate_limited("5")], COMPLETE: [RELEASED]}
    )
    client = make_client(transport)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.call_later(0.1, cancel_event.set)

    started = loop.time()
    with pytest.raises(JobCancelledError) as exc_info:
        await client.run_to_completion(
            request_params, poll_interval=0.01, timeout=60.0, cancel_event=cancel_event
        )

    assert loop.time() - started < 1.0
    assert exc_info.value.run.polls == 0
    assert transport.count(RETRIEVE) == 1
    assert transport.count(COMPLETE) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [{"poll_interval": 0}, {"timeout": -1.0}])
async def test_invalid_polling_overrides_are_rejected(request_params, overrides):
    transport = StubTransport({QUEUE: [QUEUED], RETRIEVE: [video_response()]})
    client = make_client(transport)

    with pytest.raises(pydantic.ValidationError):
        await client.run_to_completion(request_params, **overrides)

    assert transport.calls == []
