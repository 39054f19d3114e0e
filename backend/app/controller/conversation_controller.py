# backend/app/controller/conversation_controller.py
"""
Client-side sequencing of chat turns.

One submitted turn goes through:
    1. identity / read-only / in-flight checks (no network call on failure)
    2. create the conversation if none is active
    3. optimistic user turn, then persist it (first turn also sets the title)
    4. pending assistant placeholder, replaced in place as fragments arrive
    5. persist the final assistant turn
    6. status pending -> saving -> saved -> idle (local timers only)

Persistence failures are logged and never roll back what the user sees.
Relay failures turn the placeholder into an inline "Error: ..." turn.
Navigating away (open/new conversation, logout) abandons the turn in flight:
its relay read stops at the next fragment and it no longer touches the view.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from fastapi.concurrency import run_in_threadpool

from app.controller.relay_client import RelayClient
from app.controller.session import SessionContext
from app.core.errors import (
    IdentityRequiredError,
    ReadOnlyConversationError,
    RelayError,
    StorageCopyError,
    TurnInFlightError,
)
from app.core.logger import get_logger
from app.db.sqlite_memory import SQLiteChatStore
from app.models.relay_models import StreamReply, ToolRequest
from app.services.storage_service import AssetStorage
from app.utils.time_utils import clock_label, parse_iso, utc_now
from app.utils.title_utils import derive_title, image_title

logger = get_logger("controller")

THINKING = "Thinking"
GENERATING = "Generating image"
ANALYSIS_PROMPT = "Analyze this image in detail. Describe what you see."


class TurnStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    SAVED = "saved"


@dataclass
class Turn:
    role: str
    content: str = ""
    image: Optional[str] = None
    generated_image: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    pending: bool = False

    @property
    def label(self) -> str:
        return clock_label(self.timestamp)

    @classmethod
    def from_record(cls, record: dict) -> "Turn":
        return cls(
            role=record["role"],
            content=record.get("content") or "",
            image=record.get("image_url"),
            generated_image=record.get("generated_image_url"),
            timestamp=parse_iso(record["created_at"]),
        )


@dataclass
class _ActiveTurn:
    conversation_id: Optional[str] = None
    cancelled: bool = False


class _TurnAbandoned(Exception):
    pass


Listener = Callable[["ConversationController"], None]


class ConversationController:
    def __init__(
        self,
        session: SessionContext,
        relay: RelayClient,
        store: SQLiteChatStore,
        storage: Optional[AssetStorage] = None,
        saving_delay: float = 0.8,
        saved_delay: float = 1.0,
    ):
        self.session = session
        self._relay = relay
        self._store = store
        self._storage = storage
        self._saving_delay = saving_delay
        self._saved_delay = saved_delay

        self._turns: List[Turn] = []
        self._owner: Optional[str] = None
        self._status = TurnStatus.IDLE
        self._active: Optional[_ActiveTurn] = None
        self._status_timer: Optional[asyncio.TimerHandle] = None
        self._listeners: List[Listener] = []

        session.on_clear(self._on_session_cleared)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def turns(self) -> List[Turn]:
        return list(self._turns)

    @property
    def status(self) -> TurnStatus:
        return self._status

    @property
    def conversation_id(self) -> Optional[str]:
        return self.session.active_conversation_id

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    @property
    def read_only(self) -> bool:
        return self._owner is not None and self._owner != self.session.wallet_address

    @property
    def in_flight(self) -> bool:
        return self._active is not None

    @property
    def can_submit(self) -> bool:
        return self.session.is_bound and not self.read_only and not self.in_flight

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener(controller)` after every change. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self):
        for listener in list(self._listeners):
            listener(self)

    def _set_status(self, status: TurnStatus):
        self._status = status
        self._notify()

    # Turn-scoped view updates: an abandoned turn must not touch the new view.
    def _checkpoint(self, active: _ActiveTurn):
        if active.cancelled:
            raise _TurnAbandoned()

    def _append(self, active: _ActiveTurn, turn: Turn) -> int:
        self._checkpoint(active)
        self._turns.append(turn)
        self._notify()
        return len(self._turns) - 1

    def _replace(self, active: _ActiveTurn, index: int, turn: Turn):
        self._checkpoint(active)
        self._turns[index] = turn
        self._notify()

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------
    def open_conversation(self, conversation_id: str) -> bool:
        """Load a conversation. Someone else's conversation opens read-only.

        Returns False and leaves the current view untouched when the
        conversation cannot be loaded.
        """
        try:
            conversation = self._store.get_conversation(conversation_id)
            records = self._store.get_messages(conversation_id) if conversation else []
        except RelayError as e:
            logger.error("Could not load conversation %s: %s", conversation_id, e.message)
            return False

        if conversation is None:
            logger.info("Conversation %s not found", conversation_id)
            return False

        self._abandon_active()
        self.session.active_conversation_id = conversation_id
        self._owner = conversation["wallet_address"]
        self._turns = [Turn.from_record(r) for r in records]
        self._notify()
        return True

    def new_conversation(self):
        """Forget the active conversation; the next turn creates a new one."""
        self._abandon_active()
        self.session.active_conversation_id = None
        self._owner = None
        self._turns = []
        self._notify()

    def _on_session_cleared(self):
        self._abandon_active()
        self._owner = None
        self._turns = []
        self._notify()

    def _abandon_active(self):
        self._cancel_status_timer()
        self._status = TurnStatus.IDLE
        if self._active is not None:
            logger.info("Abandoning turn in %s", self._active.conversation_id)
            self._active.cancelled = True
            self._active = None

    # ------------------------------------------------------------------
    # Turn submission
    # ------------------------------------------------------------------
    def _check_can_submit(self):
        if not self.session.is_bound:
            raise IdentityRequiredError()
        if self.read_only:
            raise ReadOnlyConversationError(self.conversation_id)
        if self.in_flight:
            raise TurnInFlightError()

    def _begin(self) -> _ActiveTurn:
        self._cancel_status_timer()
        self._active = _ActiveTurn(conversation_id=self.session.active_conversation_id)
        return self._active

    async def _run(self, active: _ActiveTurn, steps):
        try:
            await steps
        except _TurnAbandoned:
            logger.info("Turn in %s stopped after navigation", active.conversation_id)
        finally:
            if self._active is active:
                self._active = None

    async def submit(self, text: str):
        """Send one text turn and stream the reply into the conversation."""
        self._check_can_submit()
        message = (text or "").strip()
        if not message:
            return
        active = self._begin()
        await self._run(active, self._text_turn(active, message))

    async def generate_image(self, prompt: str):
        """Direct image generation ("generate" command), skipping the decision call."""
        self._check_can_submit()
        prompt = (prompt or "").strip()
        if not prompt:
            return
        active = self._begin()
        await self._run(active, self._image_turn(active, prompt))

    async def submit_image(self, data_url: str, filename: str = "", prompt: str = ANALYSIS_PROMPT):
        """Upload an image and stream the model's analysis of it."""
        self._check_can_submit()
        if not data_url:
            return
        active = self._begin()
        await self._run(active, self._upload_turn(active, data_url, filename, prompt))

    # ------------------------------------------------------------------
    # Turn flows
    # ------------------------------------------------------------------
    async def _text_turn(self, active: _ActiveTurn, message: str):
        conversation_id = await self._ensure_conversation(active)
        if conversation_id is None:
            return

        title = derive_title(message) if not self._turns else None
        user_turn = Turn(role="user", content=message)
        self._append(active, user_turn)
        await self._persist(conversation_id, user_turn, title=title)

        index = self._append(active, Turn(role="assistant", content=THINKING, pending=True))
        self._set_status(TurnStatus.PENDING)

        tool_prompt = None
        try:
            async with self._relay.chat(message) as reply:
                if isinstance(reply, ToolRequest):
                    tool_prompt = reply.prompt
                else:
                    await self._consume(active, reply, index)
        except RelayError as e:
            self._fail(active, index, e.message)
            return

        if tool_prompt is not None:
            await self._generate_into(active, conversation_id, tool_prompt, index)
        else:
            await self._complete(active, conversation_id, index)

    async def _image_turn(self, active: _ActiveTurn, prompt: str):
        conversation_id = await self._ensure_conversation(active)
        if conversation_id is None:
            return

        title = derive_title(prompt) if not self._turns else None
        user_turn = Turn(role="user", content=prompt)
        self._append(active, user_turn)
        await self._persist(conversation_id, user_turn, title=title)

        index = self._append(active, Turn(role="assistant", content=GENERATING, pending=True))
        self._set_status(TurnStatus.PENDING)
        await self._generate_into(active, conversation_id, prompt, index)

    async def _upload_turn(self, active: _ActiveTurn, data_url: str, filename: str, prompt: str):
        conversation_id = await self._ensure_conversation(active)
        if conversation_id is None:
            return

        image_url = data_url
        if self._storage is not None:
            try:
                image_url = await run_in_threadpool(
                    self._storage.store_data_url, data_url, self.session.wallet_address
                )
            except StorageCopyError as e:
                logger.warning("Upload not stored, keeping inline image: %s", e.message)

        title = image_title(filename) if not self._turns else None
        user_turn = Turn(role="user", image=image_url)
        self._append(active, user_turn)
        await self._persist(conversation_id, user_turn, title=title)

        index = self._append(active, Turn(role="assistant", content=THINKING, pending=True))
        self._set_status(TurnStatus.PENDING)

        try:
            async with self._relay.analyze_image(data_url, prompt) as reply:
                await self._consume(active, reply, index)
        except RelayError as e:
            self._fail(active, index, e.message)
            return

        await self._complete(active, conversation_id, index)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    async def _ensure_conversation(self, active: _ActiveTurn) -> Optional[str]:
        if active.conversation_id:
            return active.conversation_id

        try:
            conversation = await run_in_threadpool(self._store.create_conversation, self.session.wallet_address)
        except RelayError as e:
            logger.error("Error creating conversation: %s", e.message)
            return None

        self._checkpoint(active)
        active.conversation_id = conversation["id"]
        self.session.conversation_created(conversation)
        self._owner = conversation["wallet_address"]
        self._notify()
        return conversation["id"]

    async def _consume(self, active: _ActiveTurn, reply: StreamReply, index: int):
        """Accumulate fragments into the placeholder at `index`, re-rendering on each one."""
        started = utc_now()
        accumulated = ""
        try:
            self._replace(active, index, Turn(role="assistant", content="", timestamp=started, pending=True))
            async for fragment in reply:
                accumulated += fragment
                self._replace(
                    active, index, Turn(role="assistant", content=accumulated, timestamp=started, pending=True)
                )
        finally:
            await reply.aclose()
        self._replace(active, index, Turn(role="assistant", content=accumulated, timestamp=started))

    async def _generate_into(self, active: _ActiveTurn, conversation_id: str, prompt: str, index: int):
        self._replace(active, index, Turn(role="assistant", content=GENERATING, pending=True))
        try:
            image = await self._relay.generate_image(prompt, self.session.wallet_address)
        except RelayError as e:
            self._fail(active, index, e.message)
            return

        turn = Turn(
            role="assistant",
            content=image.revised_prompt or image.original_prompt or prompt,
            generated_image=image.image_url,
        )
        self._replace(active, index, turn)
        await self._persist(conversation_id, turn)
        self._after_save(active)

    async def _complete(self, active: _ActiveTurn, conversation_id: str, index: int):
        self._checkpoint(active)
        final = self._turns[index]
        if final.content:
            await self._persist(conversation_id, final)
        else:
            logger.warning("Empty assistant reply in %s, nothing to save", conversation_id)
        self._after_save(active)

    async def _persist(self, conversation_id: str, turn: Turn, title: Optional[str] = None) -> bool:
        try:
            await run_in_threadpool(
                self._store.add_message,
                conversation_id,
                turn.role,
                turn.content,
                image_url=turn.image,
                generated_image_url=turn.generated_image,
            )
            if title is not None and await run_in_threadpool(self._store.set_title_once, conversation_id, title):
                self.session.conversation_renamed(conversation_id, title)
            return True
        except RelayError as e:
            logger.error("Error saving %s message in %s: %s", turn.role, conversation_id, e.message)
            return False

    def _fail(self, active: _ActiveTurn, index: int, message: str):
        logger.error("Turn failed: %s", message)
        self._checkpoint(active)
        self._turns[index] = replace(
            self._turns[index], content=f"Error: {message}", pending=False, timestamp=utc_now()
        )
        self._set_status(TurnStatus.IDLE)

    # ------------------------------------------------------------------
    # Status timers (presentation only, never hold the turn)
    # ------------------------------------------------------------------
    def _after_save(self, active: _ActiveTurn):
        self._checkpoint(active)
        self._set_status(TurnStatus.SAVING)
        self._schedule(self._saving_delay, self._mark_saved)

    def _schedule(self, delay: float, callback: Callable[[], None]):
        self._cancel_status_timer()
        loop = asyncio.get_running_loop()
        self._status_timer = loop.call_later(delay, callback)

    def _cancel_status_timer(self):
        if self._status_timer is not None:
            self._status_timer.cancel()
            self._status_timer = None

    def _mark_saved(self):
        self._status_timer = None
        if self._status == TurnStatus.SAVING:
            self._set_status(TurnStatus.SAVED)
            self._schedule(self._saved_delay, self._clear_saved)

    def _clear_saved(self):
        self._status_timer = None
        if self._status == TurnStatus.SAVED:
            self._set_status(TurnStatus.IDLE)
