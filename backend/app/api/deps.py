# backend/app/api/deps.py

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from app.core.config_loader import settings
from app.core.llm import ModelGateway
from app.core.security import decode_token
from app.db.sqlite_memory import SQLiteChatStore
from app.services.relay_service import ChatRelay
from app.services.storage_service import AssetStorage


# -----------------------------
# Shared singletons (overridable in tests via app.dependency_overrides)
# -----------------------------
@lru_cache()
def get_store() -> SQLiteChatStore:
    return SQLiteChatStore(settings.DB_PATH)


@lru_cache()
def get_gateway() -> ModelGateway:
    return ModelGateway()


@lru_cache()
def get_storage() -> Optional[AssetStorage]:
    if not settings.storage_copy_enabled:
        return None
    return AssetStorage()


def get_relay(
    gateway: ModelGateway = Depends(get_gateway),
    storage: Optional[AssetStorage] = Depends(get_storage),
) -> ChatRelay:
    return ChatRelay(gateway, storage)


# -----------------------------
# Helper: wallet address from Authorization header
# -----------------------------
def _wallet_from_header(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    payload = decode_token(authorization.split(" ", 1)[1])
    if not payload:
        return None
    return payload.get("sub")


def get_wallet_address(authorization: Optional[str] = Header(None)) -> str:
    wallet = _wallet_from_header(authorization)
    if not wallet:
        raise HTTPException(status_code=401, detail="Invalid token")
    return wallet


def get_optional_wallet_address(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return _wallet_from_header(authorization)
