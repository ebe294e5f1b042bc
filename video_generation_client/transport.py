import asyncio
import json
from typing import Any, Dict, Optional, Protocol

import aiohttp
from loguru import logger
from pydantic import BaseModel, Field

from video_generation_client.errors import TransientError, UnexpectedResponseError
from video_generation_client.models import ClientConfig


class TransportResponse(BaseModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def content_type(self) -> str:
        """The declared media type, lower-cased and without parameters"""
        raw = self.header("content-type") or ""
        return raw.split(";", 1)[0].strip().lower()

    @property
    def is_json(self) -> bool:
        content_type = self.content_type
        return content_type == "application/json" or content_type.endswith("+json")

    def json_body(self) -> Any:
        try:
            return json.loads(self.body or b"null")
        except ValueError as e:
            raise UnexpectedResponseError(
                f"Response declared {self.content_type} but the body is not valid JSON",
                status_code=self.status,
            ) from e


class Transport(Protocol):
    async def post_json(self, path: str, payload: Dict[str, Any]) -> TransportResponse:
        ...

    async def close(self) -> None:
        ...


class AiohttpTransport:
    """Sends authenticated JSON POST requests through a shared aiohttp session"""

    def __init__(
        self,
        config: ClientConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = config.base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)
        self._session = session
        self._owns_session = session is None
        self.logger = logger

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def post_json(self, path: str, payload: Dict[str, Any]) -> TransportResponse:
        url = f"{self.base_url}{path}"
        session = self._get_session()

        try:
            async with session.post(
                url, json=payload, headers=self._headers
            ) as response:
                body = await response.read()
                return TransportResponse(
                    status=response.status,
                    headers={
                        key.lower(): value for key, value in response.headers.items()
                    },
                    body=body,
                )
        except aiohttp.ClientError as e:
            self.logger.error(f"Network error at {url}: {e}")
            raise TransientError(f"Network error at {url}: {e}") from e
        except asyncio.TimeoutError as e:
            self.logger.error(f"Request to {url} timed out")
            raise TransientError(f"Request to {url} timed out") from e

    async def close(self) -> None:
        session = self._session
        if self._owns_session and session is not None and not session.closed:
            await session.close()
