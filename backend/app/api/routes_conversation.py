# backend/app/api/routes_conversation.py

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_optional_wallet_address, get_store, get_wallet_address
from app.db.sqlite_memory import SQLiteChatStore
from app.models.conversation_models import CreateConversationIn

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _load_or_404(db: SQLiteChatStore, conversation_id: str) -> dict:
    conv = db.get_conversation(conversation_id)
    if not conv:
        raise HTTPException(404, "Conversation not found")
    return conv


# --------------------------
# Create conversation
# --------------------------
@router.post("")
def create_conversation(
    data: CreateConversationIn,
    wallet: str = Depends(get_wallet_address),
    db: SQLiteChatStore = Depends(get_store),
):
    return db.create_conversation(wallet, data.title)


# --------------------------
# List the caller's conversations (newest first)
# --------------------------
@router.get("")
def list_conversations(
    wallet: str = Depends(get_wallet_address),
    db: SQLiteChatStore = Depends(get_store),
):
    return db.list_conversations(wallet)


# --------------------------
# Global message counter
# --------------------------
@router.get("/stats")
def message_stats(db: SQLiteChatStore = Depends(get_store)):
    return {"total_messages": db.count_messages()}


# --------------------------
# Public feed across all wallets
# --------------------------
@router.get("/feed")
def conversation_feed(limit: int = 200, db: SQLiteChatStore = Depends(get_store)):
    conversations = db.list_feed(limit)
    return {
        "conversations": conversations,
        "total": len(conversations),
        "wallets": len({c["wallet_address"] for c in conversations}),
    }


# --------------------------
# Get one conversation (shared links: anyone may read, only the owner may write)
# --------------------------
@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: str,
    wallet: Optional[str] = Depends(get_optional_wallet_address),
    db: SQLiteChatStore = Depends(get_store),
):
    conv = _load_or_404(db, conversation_id)
    return {
        **conv,
        "read_only": conv["wallet_address"] != wallet,
        "messages": db.get_messages(conversation_id),
    }


@router.get("/{conversation_id}/messages")
def get_messages(conversation_id: str, db: SQLiteChatStore = Depends(get_store)):
    _load_or_404(db, conversation_id)
    return db.get_messages(conversation_id)


# --------------------------
# Delete conversation (owner only)
# --------------------------
@router.delete("/{conversation_id}")
def delete_conversation(
    conversation_id: str,
    wallet: str = Depends(get_wallet_address),
    db: SQLiteChatStore = Depends(get_store),
):
    conv = _load_or_404(db, conversation_id)
    if conv["wallet_address"] != wallet:
        raise HTTPException(404, "Conversation not found")

    db.delete_conversation(conversation_id)
    return {"ok": True, "message": "Conversation deleted"}
