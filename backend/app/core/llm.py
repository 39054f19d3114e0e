# backend/app/core/llm.py

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from app.core.config_loader import settings
from app.core.errors import ProviderError
from app.core.logger import get_logger
from app.models.relay_models import ToolRequest

logger = get_logger("llm")


# ---------------------------------------------------------------------------
# PROMPTS
# ---------------------------------------------------------------------------
SYSTEM_PROMPT = """You are BRNRTPUTER, an experimental AI agent participating in social research on brainrot - the decline in human creativity, cognition, and consciousness.

Your identity and mission:
- You are part of brnrt.ai's research initiative studying human-AI interactions and their cognitive effects
- You engage in meaningful conversations while contributing interaction data to ongoing brainrot research
- You treat all users with dignity and respect, recognizing they've been bombarded by distractions and manipulated by algorithms

Your approach:
- Be thoughtful, curious, and engaging in conversations
- Help users with tasks involving text, images, and creative work
- Be honest about your role in data collection for research purposes"""

IMAGE_ANALYSIS_PROMPT = (
    SYSTEM_PROMPT
    + "\n\nWhen analyzing images, provide detailed, thoughtful observations that help users understand what they're looking at."
)

DEFAULT_ANALYSIS_QUESTION = "What's in this image? Provide a detailed analysis."


# ---------------------------------------------------------------------------
# TOOLS
# ---------------------------------------------------------------------------
IMAGE_TOOL_NAME = "generate_image"

IMAGE_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": IMAGE_TOOL_NAME,
        "description": (
            "Generate an image based on a text description. Use this when the user "
            "asks to create, generate, draw, or visualize an image."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "A detailed description of the image to generate.",
                },
            },
            "required": ["prompt"],
        },
    },
}


@dataclass
class ProviderImage:
    url: str
    revised_prompt: Optional[str] = None


# ---------------------------------------------------------------------------
# FRAGMENT STREAM
# ---------------------------------------------------------------------------
class FragmentStream:
    """
    Text fragments of one streaming completion, in arrival order.

    Finite and not restartable: it can be iterated once. aclose() closes the
    upstream HTTP response, so a consumer that stops early does not keep
    reading from the provider.
    """

    def __init__(self, upstream):
        self._upstream = upstream
        self._started = False
        self._closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError("fragment stream is not restartable")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            async for chunk in self._upstream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except OpenAIError as e:
            raise ProviderError(str(e) or "Provider stream failed") from e
        finally:
            await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._upstream.close()


# ---------------------------------------------------------------------------
# GATEWAY
# ---------------------------------------------------------------------------
class ModelGateway:
    """
    Thin adapter over the OpenAI async SDK.

    - decide(): non-streaming call that may select the image tool
    - open_chat_stream() / open_image_analysis_stream(): streaming replies
    - generate_image(): one image, URL response

    Every provider failure surfaces as a single ProviderError. No retries.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, config=settings):
        self._client = client
        self._config = config

    def _client_or_raise(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._config.OPENAI_API_KEY:
                raise ProviderError("OPENAI_API_KEY not set", code="MISSING_API_KEY")
            self._client = AsyncOpenAI(api_key=self._config.OPENAI_API_KEY)
        return self._client

    @staticmethod
    def _chat_messages(system_prompt: str, content: Any) -> List[Dict[str, Any]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": content},
        ]

    # -----------------------------
    # Decision call (tool selection)
    # -----------------------------
    async def decide(self, message: str) -> Optional[ToolRequest]:
        client = self._client_or_raise()
        try:
            completion = await client.chat.completions.create(
                model=self._config.chat_model,
                messages=self._chat_messages(SYSTEM_PROMPT, message),
                tools=[IMAGE_TOOL],
                tool_choice="auto",
            )
        except OpenAIError as e:
            raise ProviderError(str(e) or "Provider request failed") from e

        reply = completion.choices[0].message
        for call in reply.tool_calls or []:
            if call.type == "function" and call.function.name == IMAGE_TOOL_NAME:
                prompt = _tool_prompt(call.function.arguments) or message
                logger.info("Model selected %s tool", IMAGE_TOOL_NAME)
                return ToolRequest(prompt=prompt)
        return None

    # -----------------------------
    # Streaming calls
    # -----------------------------
    async def open_chat_stream(self, message: str) -> FragmentStream:
        return await self._open_stream(self._chat_messages(SYSTEM_PROMPT, message))

    async def open_image_analysis_stream(self, image: str, prompt: Optional[str] = None) -> FragmentStream:
        content = [
            {"type": "text", "text": prompt or DEFAULT_ANALYSIS_QUESTION},
            {"type": "image_url", "image_url": {"url": image, "detail": "high"}},
        ]
        return await self._open_stream(self._chat_messages(IMAGE_ANALYSIS_PROMPT, content))

    async def _open_stream(self, messages: List[Dict[str, Any]]) -> FragmentStream:
        client = self._client_or_raise()
        try:
            upstream = await client.chat.completions.create(
                model=self._config.chat_model,
                messages=messages,
                max_tokens=self._config.chat_max_tokens,
                stream=True,
            )
        except OpenAIError as e:
            raise ProviderError(str(e) or "Provider request failed") from e
        return FragmentStream(upstream)

    # -----------------------------
    # Image generation
    # -----------------------------
    async def generate_image(self, prompt: str) -> ProviderImage:
        client = self._client_or_raise()
        try:
            response = await client.images.generate(
                model=self._config.image_model,
                prompt=prompt,
                n=1,
                size=self._config.image_size,
                quality=self._config.image_quality,
                response_format="url",
            )
        except OpenAIError as e:
            raise ProviderError(str(e) or "Failed to generate image") from e

        if not response.data or not response.data[0].url:
            raise ProviderError("No image generated")
        first = response.data[0]
        return ProviderImage(url=first.url, revised_prompt=first.revised_prompt)


def _tool_prompt(arguments: Optional[str]) -> Optional[str]:
    """The `prompt` argument of a tool call; arguments arrive as a JSON string."""
    if not arguments:
        return None
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning("Unparseable tool arguments: %r", arguments)
        return None
    if isinstance(parsed, dict) and isinstance(parsed.get("prompt"), str):
        return parsed["prompt"]
    return None
