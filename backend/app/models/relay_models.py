# backend/app/models/relay_models.py

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field


# -------------------------
# Request bodies
# -------------------------
# Fields are optional on purpose: a missing field must become a 400 with
# {"error": ...} from the relay, not a 422 from request parsing.
class ChatIn(BaseModel):
    message: Optional[str] = None


class AnalyzeImageIn(BaseModel):
    image: Optional[str] = None     # data URL
    prompt: Optional[str] = None


class GenerateImageIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: Optional[str] = None
    wallet_address: Optional[str] = Field(default=None, alias="walletAddress")


# -------------------------
# Reply: tagged variant at the relay boundary
# -------------------------
class FragmentSource(Protocol):
    def __aiter__(self) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


@dataclass
class StreamReply:
    """Plain-text reply delivered as ordered fragments."""

    fragments: FragmentSource
    kind: str = "stream"

    def __aiter__(self) -> AsyncIterator[str]:
        return self.fragments.__aiter__()

    async def aclose(self) -> None:
        await self.fragments.aclose()


@dataclass
class ToolRequest:
    """The model chose the image tool instead of answering in text."""

    prompt: str
    tool: str = "generate_image"
    kind: str = "tool"

    def to_payload(self) -> dict:
        return {"shouldGenerateImage": True, "prompt": self.prompt}


Reply = Union[StreamReply, ToolRequest]


# -------------------------
# Image generation result
# -------------------------
@dataclass
class GeneratedImage:
    image_url: str
    revised_prompt: Optional[str]
    original_prompt: str

    def to_payload(self) -> dict:
        return {
            "imageUrl": self.image_url,
            "revisedPrompt": self.revised_prompt,
            "originalPrompt": self.original_prompt,
        }

    @classmethod
    def from_payload(cls, data: dict) -> "GeneratedImage":
        return cls(
            image_url=data["imageUrl"],
            revised_prompt=data.get("revisedPrompt"),
            original_prompt=data.get("originalPrompt") or "",
        )
