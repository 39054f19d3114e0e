# backend/app/utils/title_utils.py

TITLE_MAX_CHARS = 50
ELLIPSIS = "..."


def derive_title(text: str, limit: int = TITLE_MAX_CHARS) -> str:
    """
    Conversation title from the first user turn.

    Keeps the first `limit` characters and appends "..." only when the
    text was actually cut:
        derive_title("draw a cat")        -> "draw a cat"
        derive_title("x" * 60)            -> "x" * 50 + "..."
    """
    text = text or ""
    if len(text) > limit:
        return text[:limit] + ELLIPSIS
    return text


def image_title(filename: str) -> str:
    return f"Image: {filename}" if filename else "Image"
