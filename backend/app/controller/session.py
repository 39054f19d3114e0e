# backend/app/controller/session.py

from typing import Any, Callable, Dict, List, Optional

from app.core.errors import PersistenceError
from app.core.logger import get_logger

logger = get_logger("session")


class SessionContext:
    """
    Who is chatting, and which conversations they have.

    bind() on login, clear() on logout. The controller reads the wallet and
    the active conversation from here instead of holding its own copy.
    """

    def __init__(self):
        self.wallet_address: Optional[str] = None
        self.active_conversation_id: Optional[str] = None
        self.conversations: List[Dict[str, Any]] = []
        self._on_clear: List[Callable[[], None]] = []

    def on_clear(self, callback: Callable[[], None]):
        """Run `callback` whenever the session is cleared (logout or wallet switch)."""
        self._on_clear.append(callback)

    @property
    def is_bound(self) -> bool:
        return bool(self.wallet_address)

    def bind(self, wallet_address: str, store=None):
        if not wallet_address:
            raise ValueError("wallet_address is required")
        if self.wallet_address and self.wallet_address != wallet_address:
            self.clear()
        self.wallet_address = wallet_address
        if store is not None:
            self.refresh_conversations(store)

    def clear(self):
        self.wallet_address = None
        self.active_conversation_id = None
        self.conversations = []
        for callback in list(self._on_clear):
            callback()

    def refresh_conversations(self, store):
        if not self.is_bound:
            self.conversations = []
            return
        try:
            self.conversations = store.list_conversations(self.wallet_address)
        except PersistenceError as e:
            logger.error("Could not load conversations for %s: %s", self.wallet_address, e.message)

    def conversation_created(self, conversation: Dict[str, Any]):
        self.active_conversation_id = conversation["id"]
        self.conversations.insert(0, conversation)

    def conversation_renamed(self, conversation_id: str, title: str):
        for conv in self.conversations:
            if conv["id"] == conversation_id:
                conv["title"] = title
