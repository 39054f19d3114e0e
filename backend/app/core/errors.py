# backend/app/core/errors.py
"""
Error taxonomy shared by the relay, the store and the conversation controller.

Everything that can reach an HTTP response derives from RelayError and carries
the status code it maps to. Nothing here is fatal to the process: every error
is scoped to a single turn.
"""

from typing import Optional


class RelayError(Exception):
    """Base error. ``message`` is safe to show to the user."""

    http_status: int = 500

    def __init__(self, message: str, code: Optional[str] = None, **extra):
        self.message = message
        self.code = code or self.__class__.__name__
        self.extra = extra
        super().__init__(message)


class InputValidationError(RelayError):
    """Missing or malformed request field. Never retried."""

    http_status = 400


class ProviderError(RelayError):
    """Network, quota or model failure at the generative-AI provider."""

    http_status = 500


class PersistenceError(RelayError):
    """Write or read failure against the conversation store."""

    http_status = 500


class StorageCopyError(RelayError):
    """Best-effort asset relocation failed; callers fall back to the source URL."""

    http_status = 500


# ---------------------------------------------------------------------------
# CLIENT SIDE
# ---------------------------------------------------------------------------
class RelayClientError(RelayError):
    """Non-2xx answer (or transport failure) seen by the relay client."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.status_code = status_code


class ControllerError(Exception):
    """Turn rejected by the conversation controller before any network call."""


class IdentityRequiredError(ControllerError):
    def __init__(self):
        super().__init__("Please connect your wallet to start chatting")


class ReadOnlyConversationError(ControllerError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} is read-only for this wallet")
        self.conversation_id = conversation_id


class TurnInFlightError(ControllerError):
    def __init__(self):
        super().__init__("A turn is already in flight for this conversation")
