# backend/app/models/conversation_models.py

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateConversationIn(BaseModel):
    title: Optional[str] = None


class SessionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: str = Field(alias="walletAddress", min_length=1)


class SessionOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    wallet_address: str
