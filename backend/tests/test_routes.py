import asyncio
import json

from openai import OpenAIError


# -----------------------------
# /api/chat
# -----------------------------
def test_chat_without_message_is_400(client, fake_openai):
    res = client.post("/api/chat", json={})

    assert res.status_code == 400
    assert res.json() == {"error": "No message provided"}
    assert fake_openai.chat.completions.calls == []


def test_chat_with_malformed_body_is_400(client):
    res = client.post("/api/chat", content=b"not json", headers={"Content-Type": "application/json"})

    assert res.status_code == 400
    assert "error" in res.json()


def test_chat_streams_plain_text(client):
    res = client.post("/api/chat", json={"message": "hello"})

    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/plain")
    assert res.headers["x-reply-kind"] == "stream"
    assert res.text == "Hello world"


def test_chat_tool_selection_is_json(client, fake_openai):
    fake_openai.chat.completions.tool_prompt = "a cat wearing a hat"

    res = client.post("/api/chat", json={"message": "draw a cat in a hat"})

    assert res.status_code == 200
    assert res.headers["x-reply-kind"] == "tool"
    assert res.json() == {"shouldGenerateImage": True, "prompt": "a cat wearing a hat"}
    # no streaming call was made
    assert all(not c.get("stream") for c in fake_openai.chat.completions.calls)


def test_chat_provider_failure_is_500(client, fake_openai):
    fake_openai.chat.completions.error = OpenAIError("insufficient_quota")

    res = client.post("/api/chat", json={"message": "hello"})

    assert res.status_code == 500
    assert res.json() == {"error": "insufficient_quota"}


def test_chat_closes_upstream_after_body(client, fake_openai):
    client.post("/api/chat", json={"message": "hello"})

    assert fake_openai.chat.completions.upstreams[0].closed


# -----------------------------
# /api/analyze-image
# -----------------------------
def test_analyze_image_without_image_is_400(client):
    res = client.post("/api/analyze-image", json={"prompt": "what is this?"})

    assert res.status_code == 400
    assert res.json() == {"error": "No image provided"}


def test_analyze_image_streams(client, fake_openai):
    fake_openai.chat.completions.fragments = ["A ", "cat."]

    res = client.post("/api/analyze-image", json={"image": "data:image/png;base64,AAAA"})

    assert res.status_code == 200
    assert res.text == "A cat."
    assert res.headers["x-reply-kind"] == "stream"


# -----------------------------
# /api/generate-image
# -----------------------------
def test_generate_image_without_prompt_is_400(client):
    res = client.post("/api/generate-image", json={})

    assert res.status_code == 400
    assert res.json() == {"error": "Prompt is required"}


def test_generate_image_keeps_provider_url_when_copy_fails(client, fake_openai):
    res = client.post("/api/generate-image", json={"prompt": "a cat", "walletAddress": "0xabc"})

    assert res.status_code == 200
    assert res.json() == {
        "imageUrl": fake_openai.images.url,
        "revisedPrompt": "A fluffy cat, watercolor",
        "originalPrompt": "a cat",
    }


def test_generate_image_provider_failure_is_500(client, fake_openai):
    fake_openai.images.error = OpenAIError("content_policy_violation")

    res = client.post("/api/generate-image", json={"prompt": "a cat"})

    assert res.status_code == 500
    assert res.json() == {"error": "content_policy_violation"}


def test_root(client):
    res = client.get("/")

    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_client_disconnect_stops_the_upstream_read(app, fake_openai):
    fake_openai.chat.completions.fragments = ["a", "b", "c", "d", "e", "f"]
    request_body = json.dumps({"message": "hello"}).encode()
    sent = []

    async def scenario():
        two_chunks_out = asyncio.Event()
        body_delivered = False

        async def receive():
            nonlocal body_delivered
            if not body_delivered:
                body_delivered = True
                return {"type": "http.request", "body": request_body, "more_body": False}
            await two_chunks_out.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)
            chunks = [m for m in sent if m["type"] == "http.response.body" and m.get("body")]
            if len(chunks) >= 2:
                two_chunks_out.set()

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/api/chat",
            "raw_path": b"/api/chat",
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"testserver"), (b"content-type", b"application/json")],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }
        await app(scope, receive, send)

    asyncio.run(scenario())

    upstream = fake_openai.chat.completions.upstreams[0]
    assert upstream.closed
    assert upstream.yielded < 6
    delivered = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    assert delivered.startswith(b"ab")
    assert delivered != b"abcdef"
