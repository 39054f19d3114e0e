# backend/app/api/streaming.py

from typing import AsyncIterator

from fastapi import Request
from fastapi.responses import StreamingResponse

from app.core.logger import get_logger
from app.models.relay_models import StreamReply

logger = get_logger("relay.http")

REPLY_KIND_HEADER = "X-Reply-Kind"


async def _body(request: Request, reply: StreamReply) -> AsyncIterator[bytes]:
    """Fragments go out as soon as they arrive; the upstream is closed in every case."""
    try:
        async for fragment in reply:
            if await request.is_disconnected():
                logger.info("Client disconnected from %s", request.url.path)
                break
            yield fragment.encode("utf-8")
    finally:
        await reply.aclose()


def stream_response(request: Request, reply: StreamReply) -> StreamingResponse:
    return StreamingResponse(
        _body(request, reply),
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            REPLY_KIND_HEADER: reply.kind,
        },
    )
