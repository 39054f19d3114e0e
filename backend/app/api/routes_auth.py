# backend/app/api/routes_auth.py

from fastapi import APIRouter, Depends

from app.api.deps import get_wallet_address
from app.core.logger import get_logger
from app.core.security import create_access_token
from app.models.conversation_models import SessionIn, SessionOut

router = APIRouter(prefix="/auth", tags=["auth"])
logger = get_logger("auth")


# --------------------------
# SESSION: bind a wallet address to a bearer token.
# Proving wallet ownership happens at the login provider, before this call.
# --------------------------
@router.post("/session", response_model=SessionOut)
def open_session(data: SessionIn):
    token = create_access_token(subject=data.wallet_address)
    logger.info("Session opened for %s", data.wallet_address)
    return {"access_token": token, "wallet_address": data.wallet_address}


# --------------------------
# ME
# --------------------------
@router.get("/me")
def me(wallet: str = Depends(get_wallet_address)):
    return {"wallet_address": wallet}
