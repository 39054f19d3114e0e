import json
import os
import tempfile
from contextlib import asynccontextmanager
from types import SimpleNamespace

# Settings are read at import time; point file-backed paths at a scratch dir first.
_SCRATCH = tempfile.mkdtemp(prefix="wallet-chat-tests-")
os.environ.setdefault("MEDIA_ROOT", os.path.join(_SCRATCH, "media"))
os.environ.setdefault("LOG_DIR", os.path.join(_SCRATCH, "logs"))
os.environ.setdefault("DB_PATH", ":memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-with-enough-bytes-for-hs256")

import pytest
import requests
from fastapi.testclient import TestClient

from app.api.deps import get_gateway, get_storage, get_store
from app.core.llm import ModelGateway
from app.db.sqlite_memory import SQLiteChatStore
from app.models.relay_models import GeneratedImage, StreamReply, ToolRequest
from app.services.storage_service import AssetStorage


# ---------------------------------------------------------------------------
# Fake OpenAI async client
# ---------------------------------------------------------------------------
def make_chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeUpstream:
    """Stands in for openai.AsyncStream: async-iterable chunks plus close()."""

    def __init__(self, fragments, error=None):
        self.fragments = list(fragments)
        self.error = error
        self.yielded = 0
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        # a role-only first chunk and an empty-choices chunk, as the API sends
        yield make_chunk(None)
        yield SimpleNamespace(choices=[])
        for text in self.fragments:
            self.yielded += 1
            yield make_chunk(text)
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self):
        self.calls = []
        self.fragments = ["Hel", "lo", " world"]
        self.tool_prompt = None
        self.tool_arguments = None
        self.error = None
        self.stream_error = None
        self.upstreams = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        if kwargs.get("stream"):
            upstream = FakeUpstream(self.fragments, self.stream_error)
            self.upstreams.append(upstream)
            return upstream

        tool_calls = None
        if self.tool_prompt is not None or self.tool_arguments is not None:
            arguments = self.tool_arguments
            if arguments is None:
                arguments = json.dumps({"prompt": self.tool_prompt})
            tool_calls = [
                SimpleNamespace(
                    id="call_1",
                    type="function",
                    function=SimpleNamespace(name="generate_image", arguments=arguments),
                )
            ]
        message = SimpleNamespace(role="assistant", content=None if tool_calls else "ok", tool_calls=tool_calls)
        return SimpleNamespace(choices=[SimpleNamespace(index=0, message=message, finish_reason="stop")])


class FakeImages:
    def __init__(self):
        self.calls = []
        self.url = "https://provider.example/img/abc.png?sig=temporary"
        self.revised_prompt = "A fluffy cat, watercolor"
        self.error = None
        self.empty = False

    async def generate(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        if self.empty:
            return SimpleNamespace(data=[])
        return SimpleNamespace(data=[SimpleNamespace(url=self.url, revised_prompt=self.revised_prompt)])


class FakeOpenAI:
    def __init__(self):
        self.chat = SimpleNamespace(completions=FakeCompletions())
        self.images = FakeImages()


# ---------------------------------------------------------------------------
# Fake relay client (controller unit tests)
# ---------------------------------------------------------------------------
class ListFragments:
    def __init__(self, fragments):
        self.fragments = list(fragments)
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for text in self.fragments:
            yield text

    async def aclose(self):
        self.closed = True


class FakeRelay:
    def __init__(self):
        self.calls = []
        self.fragments = ["Hi", " there", "!"]
        self.tool_prompt = None
        self.error = None
        self.image_error = None
        self.gate = None
        self.replies = []

    @asynccontextmanager
    async def chat(self, message):
        self.calls.append(("chat", message))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.tool_prompt is not None:
            yield ToolRequest(prompt=self.tool_prompt)
        else:
            reply = StreamReply(ListFragments(self.fragments))
            self.replies.append(reply)
            yield reply

    @asynccontextmanager
    async def analyze_image(self, image, prompt=None):
        self.calls.append(("analyze", image, prompt))
        if self.error is not None:
            raise self.error
        reply = StreamReply(ListFragments(self.fragments))
        self.replies.append(reply)
        yield reply

    async def generate_image(self, prompt, wallet_address=None):
        self.calls.append(("generate", prompt, wallet_address))
        if self.image_error is not None:
            raise self.image_error
        return GeneratedImage(
            image_url="http://testserver/media/w/cat.png",
            revised_prompt=f"revised: {prompt}",
            original_prompt=prompt,
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def no_network(monkeypatch):
    """Downloads fail unless a test installs its own fake."""

    def _offline(*args, **kwargs):
        raise requests.ConnectionError("network disabled in tests")

    monkeypatch.setattr("app.services.storage_service.requests.get", _offline)


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def fake_relay():
    return FakeRelay()


@pytest.fixture
def gateway(fake_openai):
    return ModelGateway(client=fake_openai)


@pytest.fixture
def store():
    db = SQLiteChatStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def storage(tmp_path):
    return AssetStorage(root=str(tmp_path / "media"), public_base_url="http://testserver")


@pytest.fixture
def app(gateway, store, storage):
    from main import app as fastapi_app

    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[get_store] = lambda: store
    fastapi_app.dependency_overrides[get_storage] = lambda: storage
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers(client):
    def _headers(wallet):
        res = client.post("/auth/session", json={"walletAddress": wallet})
        assert res.status_code == 200
        return {"Authorization": f"Bearer {res.json()['access_token']}"}

    return _headers
