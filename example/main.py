import asyncio

from video_generation_client.errors import JobTimeoutError, VideoAPIError
from video_generation_client.models import (
    ClientConfig,
    JobRequest,
    PollingConfig,
    RetryConfig,
)
from video_generation_client.video_generation_client import VideoGenerationClient
from video_server import VideoGenerationServer


async def status_changed(view):
    print(f"Status changed to: {view.kind.value}")
    if not view.is_complete and view.execution_duration is not None:
        print(f"Elapsed on server: {view.execution_duration / 1000:.1f}s")


async def main():
    PORT = 8000
    server = VideoGenerationServer(completion_time=12.0, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(base_url=f"http://localhost:{PORT}", api_key=server.api_key)
    retry = RetryConfig(initial_delay=0.5, max_delay=4.0, backoff_factor=2.0)
    polling = PollingConfig(poll_interval=2.0, timeout=60.0)
    request = JobRequest(
        model="demo", prompt="lake at sunrise", duration="5s", resolution="720p"
    )

    async with VideoGenerationClient(
        config, retry, polling, on_status_change=status_changed
    ) as client:
        try:
            quote = await client.quote(request)
            print(f"Quoted price: {quote.quote}")

            result = await client.run_to_completion(request)
            path = result.save("output/lake.mp4")
            print(f"Saved {result.size} bytes of {result.media_type} to {path}")
        except JobTimeoutError as e:
            print(f"Polling timed out, job {e.handle.queue_id} left running: {e}")
        except VideoAPIError as e:
            print(f"Error occurred: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
