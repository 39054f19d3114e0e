# backend/app/controller/relay_client.py

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from app.api.streaming import REPLY_KIND_HEADER
from app.core.config_loader import settings
from app.core.errors import RelayClientError
from app.models.relay_models import GeneratedImage, Reply, StreamReply, ToolRequest


class ResponseFragments:
    """Decoded text chunks of a streamed HTTP body."""

    def __init__(self, response: httpx.Response):
        self._response = response

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            async for text in self._response.aiter_text():
                if text:
                    yield text
        except httpx.HTTPError as e:
            raise RelayClientError(f"Stream interrupted: {e}") from e

    async def aclose(self) -> None:
        await self._response.aclose()


async def _error_message(response: httpx.Response) -> str:
    body = await response.aread()
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return body.decode("utf-8", "replace").strip() or f"HTTP {response.status_code}"


class RelayClient:
    """
    HTTP client for the relay endpoints.

    chat() resolves the response into a Reply (StreamReply | ToolRequest)
    using the X-Reply-Kind tag, so callers never look at content types.
    """

    def __init__(
        self,
        base_url: str = settings.PUBLIC_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self):
        await self._client.aclose()

    @asynccontextmanager
    async def _post_stream(self, path: str, payload: dict) -> AsyncIterator[httpx.Response]:
        try:
            async with self._client.stream("POST", path, json=payload) as response:
                if response.status_code >= 400:
                    raise RelayClientError(await _error_message(response), response.status_code)
                yield response
        except httpx.HTTPError as e:
            raise RelayClientError(f"Failed to get response: {e}") from e

    @asynccontextmanager
    async def chat(self, message: str) -> AsyncIterator[Reply]:
        async with self._post_stream("/api/chat", {"message": message}) as response:
            if response.headers.get(REPLY_KIND_HEADER) == "tool":
                data = json.loads(await response.aread())
                yield ToolRequest(prompt=data.get("prompt") or message)
            else:
                yield StreamReply(ResponseFragments(response))

    @asynccontextmanager
    async def analyze_image(self, image: str, prompt: Optional[str] = None) -> AsyncIterator[StreamReply]:
        payload = {"image": image}
        if prompt:
            payload["prompt"] = prompt
        async with self._post_stream("/api/analyze-image", payload) as response:
            yield StreamReply(ResponseFragments(response))

    async def generate_image(self, prompt: str, wallet_address: Optional[str] = None) -> GeneratedImage:
        payload = {"prompt": prompt}
        if wallet_address:
            payload["walletAddress"] = wallet_address
        try:
            response = await self._client.post("/api/generate-image", json=payload)
        except httpx.HTTPError as e:
            raise RelayClientError(f"Failed to generate image: {e}") from e
        if response.status_code >= 400:
            raise RelayClientError(await _error_message(response), response.status_code)
        return GeneratedImage.from_payload(response.json())
