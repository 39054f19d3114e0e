# backend/app/api/routes_chat.py

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_relay
from app.api.streaming import REPLY_KIND_HEADER, stream_response
from app.models.relay_models import ChatIn, ToolRequest
from app.services.relay_service import ChatRelay

router = APIRouter(prefix="/api", tags=["chat"])


# -----------------------------
# Chat endpoint: streamed text, or a tool selection as JSON
# -----------------------------
@router.post("/chat", summary="Relay one chat turn to the model")
async def chat(req: ChatIn, request: Request, relay: ChatRelay = Depends(get_relay)):
    """
    Either
      200 application/json {"shouldGenerateImage": true, "prompt": ...}
    when the model picks the image tool, or
      200 text/plain streamed assistant text.
    The X-Reply-Kind header ("tool" | "stream") tags which one it is.
    """
    reply = await relay.dispatch_chat(req.message)

    if isinstance(reply, ToolRequest):
        return JSONResponse(reply.to_payload(), headers={REPLY_KIND_HEADER: reply.kind})

    return stream_response(request, reply)
