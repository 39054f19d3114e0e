# backend/app/core/security.py

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from app.core.config_loader import settings


ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# SESSION TOKEN (subject = wallet address)
# ---------------------------------------------------------------------------
def create_access_token(subject: str, expires_minutes: Optional[int] = None) -> str:
    """
    Default expiration = settings.access_token_expire_minutes
    """
    now = datetime.now(timezone.utc)
    minutes = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes

    payload = {
        "sub": subject,
        "exp": now + timedelta(minutes=minutes),
        "iat": now,
    }

    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None
