import asyncio
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from app.core.errors import ProviderError
from app.core.llm import IMAGE_TOOL, ModelGateway


async def _collect(stream):
    return [fragment async for fragment in stream]


def test_decide_returns_tool_request_when_tool_selected(gateway, fake_openai):
    fake_openai.chat.completions.tool_prompt = "a fluffy cat"

    request = asyncio.run(gateway.decide("draw me a cat"))

    assert request.prompt == "a fluffy cat"
    assert request.tool == "generate_image"
    call = fake_openai.chat.completions.calls[0]
    assert call["tools"] == [IMAGE_TOOL]
    assert call["tool_choice"] == "auto"
    assert call["messages"][0]["role"] == "system"
    assert call["messages"][1] == {"role": "user", "content": "draw me a cat"}


def test_decide_returns_none_for_plain_answer(gateway):
    assert asyncio.run(gateway.decide("hello")) is None


def test_decide_falls_back_to_user_message_on_bad_arguments(gateway, fake_openai):
    fake_openai.chat.completions.tool_arguments = "{not json"

    request = asyncio.run(gateway.decide("draw me a dog"))

    assert request.prompt == "draw me a dog"


def test_chat_stream_skips_empty_deltas_and_closes_upstream(gateway, fake_openai):
    async def scenario():
        stream = await gateway.open_chat_stream("hello")
        return stream, await _collect(stream)

    stream, fragments = asyncio.run(scenario())

    assert fragments == ["Hel", "lo", " world"]
    assert stream.closed
    assert fake_openai.chat.completions.upstreams[0].closed
    assert fake_openai.chat.completions.calls[0]["stream"] is True


def test_fragment_stream_is_not_restartable(gateway):
    async def scenario():
        stream = await gateway.open_chat_stream("hello")
        await _collect(stream)
        with pytest.raises(RuntimeError):
            await _collect(stream)

    asyncio.run(scenario())


def test_mid_stream_provider_error_is_wrapped(gateway, fake_openai):
    fake_openai.chat.completions.stream_error = OpenAIError("connection reset")

    async def scenario():
        stream = await gateway.open_chat_stream("hello")
        seen = []
        with pytest.raises(ProviderError) as info:
            async for fragment in stream:
                seen.append(fragment)
        return seen, info.value

    seen, error = asyncio.run(scenario())

    assert seen == ["Hel", "lo", " world"]
    assert "connection reset" in error.message
    assert fake_openai.chat.completions.upstreams[0].closed


def test_open_stream_failure_is_provider_error(gateway, fake_openai):
    fake_openai.chat.completions.error = OpenAIError("quota exceeded")

    with pytest.raises(ProviderError, match="quota exceeded"):
        asyncio.run(gateway.open_chat_stream("hello"))


def test_image_analysis_sends_image_part(gateway, fake_openai):
    async def scenario():
        stream = await gateway.open_image_analysis_stream("data:image/png;base64,AAAA", "what is it?")
        return await _collect(stream)

    asyncio.run(scenario())

    content = fake_openai.chat.completions.calls[0]["messages"][1]["content"]
    assert content[0] == {"type": "text", "text": "what is it?"}
    assert content[1]["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_generate_image(gateway, fake_openai):
    image = asyncio.run(gateway.generate_image("a cat"))

    assert image.url == fake_openai.images.url
    assert image.revised_prompt == "A fluffy cat, watercolor"
    call = fake_openai.images.calls[0]
    assert call["model"] == "dall-e-3"
    assert call["n"] == 1
    assert call["size"] == "1024x1024"


def test_generate_image_without_data(gateway, fake_openai):
    fake_openai.images.empty = True

    with pytest.raises(ProviderError, match="No image generated"):
        asyncio.run(gateway.generate_image("a cat"))


def test_missing_api_key():
    gateway = ModelGateway(config=SimpleNamespace(OPENAI_API_KEY=""))

    with pytest.raises(ProviderError) as info:
        asyncio.run(gateway.decide("hello"))

    assert info.value.code == "MISSING_API_KEY"
