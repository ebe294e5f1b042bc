import random
import uuid
from datetime import datetime
from typing import Dict, Optional

from aiohttp import web
from loguru import logger

FAKE_MP4 = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom" + b"\x00" * 64


class VideoGenerationServer:
    """Imitates the quote/queue/retrieve/complete endpoints of the video API"""

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.1,
        api_key: str = "test-key",
        balance: float = 100.0,
        price_per_second: float = 0.05,
        blocked_terms: tuple = ("forbidden",),
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.api_key = api_key
        self.balance = balance
        self.price_per_second = price_per_second
        self.blocked_terms = blocked_terms
        self.rate_limited_requests = 0
        self.retry_after = 1.0
        self.jobs: Dict[str, datetime] = {}
        self.complete_calls = 0
        self.retrieve_calls = 0
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application(middlewares=[self.check_request])
        self.app.router.add_post("/video/quote", self.handle_quote)
        self.app.router.add_post("/video/queue", self.handle_queue)
        self.app.router.add_post("/video/retrieve", self.handle_retrieve)
        self.app.router.add_post("/video/complete", self.handle_complete)
        self.logger = logger

    @staticmethod
    def error(status: int, message: str, **headers: str) -> web.Response:
        return web.json_response(
            {"error": message}, status=status, headers=headers or None
        )

    @web.middleware
    async def check_request(self, request, handler):
        if request.headers.get("Authorization") != f"Bearer {self.api_key}":
            self.logger.info("Rejecting request with bad credentials")
            return self.error(401, "Authentication failed")

        if self.rate_limited_requests > 0:
            self.rate_limited_requests -= 1
            self.logger.info("Returning rate limited status")
            return self.error(
                429, "Rate limit exceeded", **{"Retry-After": str(self.retry_after)}
            )

        if random.random() < self.error_rate:
            self.logger.info("Returning error status")
            return self.error(503, "Service temporarily unavailable")

        return await handler(request)

    def _price(self, body: dict) -> float:
        seconds = int(str(body.get("duration", "5s")).rstrip("s") or 0)
        return round(seconds * self.price_per_second, 4)

    def _validate(self, body: dict) -> Optional[web.Response]:
        if not body.get("model") or not body.get("prompt"):
            return self.error(400, "Both 'model' and 'prompt' are required")
        prompt = body["prompt"].lower()
        if any(term in prompt for term in self.blocked_terms):
            return self.error(422, "Prompt violates the content policy")
        return None

    async def handle_quote(self, request):
        body = await request.json()
        rejection = self._validate(body)
        if rejection is not None:
            return rejection
        return web.json_response({"quote": self._price(body)})

    async def handle_queue(self, request):
        body = await request.json()
        rejection = self._validate(body)
        if rejection is not None:
            return rejection

        price = self._price(body)
        if price > self.balance:
            return self.error(402, "Insufficient balance")
        self.balance -= price

        queue_id = str(uuid.uuid4())
        self.jobs[queue_id] = datetime.now()
        self.logger.info(f"Queued job {queue_id}")
        return web.json_response({"model": body["model"], "queue_id": queue_id})

    async def handle_retrieve(self, request):
        body = await request.json()
        self.retrieve_calls += 1
        started = self.jobs.get(body.get("queue_id"))
        if started is None:
            return self.error(404, "Unknown queue_id")

        elapsed = (datetime.now() - started).total_seconds()

        if elapsed >= self.completion_time:
            self.logger.info("Returning completed video")
            return web.Response(body=FAKE_MP4, content_type="video/mp4")
        else:
            self.logger.info(f"Returning processing status (elapsed: {elapsed:.1f}s)")
            return web.json_response(
                {
                    "status": "PROCESSING",
                    "average_execution_time": self.completion_time * 1000,
                    "execution_duration": elapsed * 1000,
                }
            )

    async def handle_complete(self, request):
        body = await request.json()
        self.complete_calls += 1
        if self.jobs.pop(body.get("queue_id"), None) is None:
            return self.error(404, "Unknown queue_id")
        return web.json_response({"success": True})

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
