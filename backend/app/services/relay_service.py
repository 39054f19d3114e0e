# backend/app/services/relay_service.py

from enum import Enum
from typing import AsyncIterator, Optional
from uuid import uuid4

from fastapi.concurrency import run_in_threadpool

from app.core.config_loader import settings
from app.core.errors import InputValidationError, RelayError, StorageCopyError
from app.core.llm import FragmentStream, ModelGateway
from app.core.logger import get_logger, request_id_var
from app.models.relay_models import GeneratedImage, Reply, StreamReply
from app.services.storage_service import AssetStorage

logger = get_logger("relay")


class RelayState(str, Enum):
    RECEIVED = "received"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    TOOL_SELECTED = "tool_selected"
    COMPLETED = "completed"
    FAILED = "failed"


class RelayRun:
    """State of one relay request. Only logs; it never changes the outcome."""

    def __init__(self, endpoint: str):
        self.request_id = uuid4().hex[:12]
        self.endpoint = endpoint
        self.state = RelayState.RECEIVED
        request_id_var.set(self.request_id)
        logger.info("%s %s", endpoint, self.state.value)

    def move(self, state: RelayState, detail: str = ""):
        self.state = state
        if state == RelayState.FAILED:
            logger.error("%s %s %s", self.endpoint, state.value, detail)
        else:
            logger.info("%s %s %s", self.endpoint, state.value, detail)


class RelayedFragments:
    """
    Forwards provider fragments one by one and finishes the RelayRun.

    Closing it (caller went away, or the HTTP body ended early) closes the
    upstream provider stream.
    """

    def __init__(self, upstream: FragmentStream, run: RelayRun):
        self._upstream = upstream
        self._run = run
        self._finished = False

    def __aiter__(self) -> AsyncIterator[str]:
        return self._forward()

    async def _forward(self) -> AsyncIterator[str]:
        request_id_var.set(self._run.request_id)
        count = 0
        try:
            async for fragment in self._upstream:
                count += 1
                yield fragment
        except RelayError as e:
            self._finish(RelayState.FAILED, e.message)
            raise
        self._finish(RelayState.COMPLETED, f"fragments={count}")

    def _finish(self, state: RelayState, detail: str):
        if not self._finished:
            self._finished = True
            self._run.move(state, detail)

    async def aclose(self) -> None:
        if not self._finished and not self._upstream.closed:
            logger.info("caller stopped reading, closing upstream")
            self._finish(RelayState.FAILED, "caller disconnected")
        await self._upstream.aclose()


class ChatRelay:
    """
    Bridges one user turn to the model provider.

    - dispatch_chat: decision call (tool or text), then a streamed reply
    - dispatch_image_analysis: streamed reply about an uploaded image
    - generate_image: image URL, copied to durable storage when possible
    """

    def __init__(
        self,
        gateway: ModelGateway,
        storage: Optional[AssetStorage] = None,
        tool_use_enabled: bool = settings.tool_use_enabled,
    ):
        self._gateway = gateway
        self._storage = storage
        self._tool_use_enabled = tool_use_enabled

    # -----------------------------
    # Chat
    # -----------------------------
    async def dispatch_chat(self, message: Optional[str]) -> Reply:
        run = RelayRun("chat")
        if not message or not message.strip():
            run.move(RelayState.FAILED, "no message")
            raise InputValidationError("No message provided")

        run.move(RelayState.DISPATCHED)
        try:
            if self._tool_use_enabled:
                tool_request = await self._gateway.decide(message)
                if tool_request is not None:
                    run.move(RelayState.TOOL_SELECTED, f"prompt={tool_request.prompt[:60]!r}")
                    return tool_request

            upstream = await self._gateway.open_chat_stream(message)
        except RelayError as e:
            run.move(RelayState.FAILED, e.message)
            raise

        run.move(RelayState.STREAMING)
        return StreamReply(RelayedFragments(upstream, run))

    # -----------------------------
    # Image analysis
    # -----------------------------
    async def dispatch_image_analysis(self, image: Optional[str], prompt: Optional[str] = None) -> StreamReply:
        run = RelayRun("analyze-image")
        if not image:
            run.move(RelayState.FAILED, "no image")
            raise InputValidationError("No image provided")

        run.move(RelayState.DISPATCHED)
        try:
            upstream = await self._gateway.open_image_analysis_stream(image, prompt)
        except RelayError as e:
            run.move(RelayState.FAILED, e.message)
            raise

        run.move(RelayState.STREAMING)
        return StreamReply(RelayedFragments(upstream, run))

    # -----------------------------
    # Image generation
    # -----------------------------
    async def generate_image(self, prompt: Optional[str], wallet_address: Optional[str] = None) -> GeneratedImage:
        run = RelayRun("generate-image")
        if not prompt or not prompt.strip():
            run.move(RelayState.FAILED, "no prompt")
            raise InputValidationError("Prompt is required")

        run.move(RelayState.DISPATCHED)
        try:
            image = await self._gateway.generate_image(prompt)
        except RelayError as e:
            run.move(RelayState.FAILED, e.message)
            raise

        image_url = image.url
        if self._storage is not None:
            try:
                image_url = await run_in_threadpool(self._storage.copy_remote_image, image.url, wallet_address)
            except StorageCopyError as e:
                logger.warning("storage copy failed, keeping provider URL: %s", e.message)

        run.move(RelayState.COMPLETED)
        return GeneratedImage(
            image_url=image_url,
            revised_prompt=image.revised_prompt,
            original_prompt=prompt,
        )
