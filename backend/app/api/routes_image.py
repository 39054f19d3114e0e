# backend/app/api/routes_image.py

from fastapi import APIRouter, Depends, Request

from app.api.deps import get_relay
from app.api.streaming import stream_response
from app.models.relay_models import AnalyzeImageIn, GenerateImageIn
from app.services.relay_service import ChatRelay

router = APIRouter(prefix="/api", tags=["images"])


@router.post("/analyze-image", summary="Stream an analysis of an uploaded image")
async def analyze_image(req: AnalyzeImageIn, request: Request, relay: ChatRelay = Depends(get_relay)):
    reply = await relay.dispatch_image_analysis(req.image, req.prompt)
    return stream_response(request, reply)


@router.post("/generate-image", summary="Generate one image from a prompt")
async def generate_image(req: GenerateImageIn, relay: ChatRelay = Depends(get_relay)):
    """
    Returns {"imageUrl", "revisedPrompt", "originalPrompt"}.
    imageUrl points at durable storage, or at the provider URL when the copy failed.
    """
    image = await relay.generate_image(req.prompt, req.wallet_address)
    return image.to_payload()
