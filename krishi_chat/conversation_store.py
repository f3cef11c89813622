"""Per-counterpart conversations with optimistic sends and echo reconciliation.

One store serves both marketplace roles. A seller talks to many buyers and
only sees inbound messages of the buyer currently in focus; a buyer talks to
the single farmer of a product. Messages render as the sorted REST history
followed by live messages in arrival order.
"""
import logging
import time
from collections import Counter
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from krishi_chat.chat_errors import HistoryFetchFailure, SendFailure
from krishi_chat.chat_models import (
    ChatMessage,
    Conversation,
    ConversationSnapshot,
    DeliveryStatus,
    Direction,
)
from krishi_chat.utils.record_parsing import clean_envelope, normalize_history_record

if TYPE_CHECKING:
    from krishi_chat.api import ChatRestClient
    from krishi_chat.connection_controller import ConnectionController
    from krishi_chat.counterpart_directory import CounterpartDirectory

logger = logging.getLogger(__name__)

SYSTEM_SENDER = "System"
LOADING_HISTORY = "Loading chat history..."
NO_HISTORY = "No chat history."
UNECHOED_LIMIT = 50

ChangeListener = Callable[[str], Any]


class ConversationStore:
    """Conversations keyed by counterpart id."""

    def __init__(
        self,
        *,
        rest: "ChatRestClient",
        controller: "ConnectionController",
        local_user_id: str,
        local_display_name: str = "You",
        multi_counterpart: bool = True,
        directory: Optional["CounterpartDirectory"] = None,
        max_messages: Optional[int] = None,
    ):
        """Initialize store.

        Args:
            rest: Source of conversation history
            controller: Connection used for outbound messages
            local_user_id: Id of the signed-in user, decides message direction
            local_display_name: Name shown on own messages
            multi_counterpart: Drop inbound messages of counterparts not in focus
            directory: Optional display metadata of counterparts
            max_messages: Upper bound of live messages kept per conversation
        """
        self._rest = rest
        self._controller = controller
        self.local_user_id = str(local_user_id)
        self.local_display_name = local_display_name
        self.multi_counterpart = multi_counterpart
        self._directory = directory
        self.max_messages = max_messages

        self.focused_id: Optional[str] = None
        self._conversations: Dict[str, Conversation] = {}
        self._generations: Dict[str, int] = {}
        self._listeners: List[ChangeListener] = []
        # Own messages confirmed by the hub whose echo has not arrived yet
        self._unechoed: List[ChatMessage] = []

    # ── Access ───────────────────────────────────────────────────

    def conversation(self, counterpart_id: str) -> Conversation:
        """The conversation with counterpart_id, created empty if absent."""
        key = str(counterpart_id)
        if key not in self._conversations:
            self._conversations[key] = Conversation(counterpart_id=key)
        return self._conversations[key]

    def get(self, counterpart_id: str) -> Optional[Conversation]:
        return self._conversations.get(str(counterpart_id))

    def messages(self, counterpart_id: Optional[str] = None) -> List[ChatMessage]:
        """Rendered messages of counterpart_id, or of the focused conversation."""
        key = counterpart_id or self.focused_id
        conversation = self.get(key) if key else None
        return conversation.messages if conversation else []

    @property
    def counterpart_ids(self) -> List[str]:
        return list(self._conversations)

    def focus(self, counterpart_id: Optional[str]) -> Optional[Conversation]:
        """Make counterpart_id the conversation in view; None closes the view."""
        self.focused_id = str(counterpart_id) if counterpart_id else None
        if self.focused_id is None:
            return None
        conversation = self.conversation(self.focused_id)
        self._notify(self.focused_id)
        return conversation

    def clear(self) -> None:
        self.focused_id = None
        self._conversations.clear()
        self._generations.clear()
        self._unechoed.clear()

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(self, counterpart_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(counterpart_id)
            except Exception:
                logger.exception(f"[STORE] Change listener failed for {counterpart_id}")

    def _append(self, counterpart_id: str, message: ChatMessage) -> None:
        conversation = self.conversation(counterpart_id)
        conversation.live.append(message)
        if self.max_messages and len(conversation.live) > self.max_messages:
            del conversation.live[: len(conversation.live) - self.max_messages]
        self._notify(conversation.counterpart_id)

    def _system(self, text: str) -> ChatMessage:
        return ChatMessage(sender_display_name=SYSTEM_SENDER, text=text, direction=Direction.SYSTEM)

    # ── History ──────────────────────────────────────────────────

    async def load_history(self, counterpart_id: str) -> bool:
        """Fetch and install the history of counterpart_id.

        A newer call for the same counterpart supersedes an older one that is
        still in flight; the older result is discarded.

        Returns:
            True if this call's result was installed
        """
        key = str(counterpart_id)
        conversation = self.conversation(key)
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation

        conversation.history_loading = True
        conversation.history_error = None
        # only messages confirmed before the fetch can already be in its result
        settled = {m.local_id for m in conversation.live if self._is_settled(m)}
        if not conversation.history:
            conversation.history = [self._system(LOADING_HISTORY)]
        self._notify(key)

        try:
            records = await self._rest.get_history(key)
        except HistoryFetchFailure as e:
            if self._generations.get(key) != generation:
                return False
            logger.warning(f"[STORE] History of {key} failed: {e}")
            conversation.history_loading = False
            conversation.history_error = str(e)
            conversation.history = [m for m in conversation.history if m.direction != Direction.SYSTEM]
            self._notify(key)
            return False

        if self._generations.get(key) != generation:
            logger.debug(f"[STORE] Discarding superseded history of {key}")
            return False

        counterpart_name = self._directory.name_of(key) if self._directory else None
        history = []
        for record in records:
            message = normalize_history_record(
                record,
                local_user_id=self.local_user_id,
                local_display_name=self.local_display_name,
                counterpart_display_name=counterpart_name,
            )
            if message is not None:
                history.append(message)
        history.sort(key=lambda m: m.effective_timestamp)

        self._drop_live_duplicates(conversation, history, settled)
        if not history and not conversation.live:
            history = [self._system(NO_HISTORY)]
        conversation.history = history
        conversation.history_loaded = True
        conversation.history_loading = False
        logger.info(f"[STORE] Loaded {len(history)} messages with {key}")
        self._notify(key)
        return True

    @staticmethod
    def _is_settled(message: ChatMessage) -> bool:
        return message.direction != Direction.SYSTEM and message.delivery_status == DeliveryStatus.SENT

    @staticmethod
    def _drop_live_duplicates(conversation: Conversation, history: List[ChatMessage], settled: Set[str]) -> None:
        """Remove live messages that the fresh history already contains.

        Only messages in ``settled`` (sent or received before the fetch
        started) are candidates. Pending and failed messages always stay.
        """
        remaining = Counter((m.sender_id, m.text) for m in history)
        kept = []
        for message in conversation.live:
            key = (message.sender_id, message.text)
            if message.local_id in settled and message.delivery_status == DeliveryStatus.SENT and remaining[key] > 0:
                remaining[key] -= 1
                continue
            kept.append(message)
        conversation.live = kept

    # ── Inbound ──────────────────────────────────────────────────

    def handle_receive_message(self, *args: Any) -> Optional[ChatMessage]:
        """Hub handler for ``ReceiveMessage``.

        Accepts ``(sender_id, sender_name, text)`` and a legacy two-argument
        form whose first argument depends on the role: sellers receive
        ``(sender_id, text)``, buyers receive ``(sender_name, text)`` with no
        sender id.
        """
        if len(args) == 3:
            return self.receive(args[0], args[1], args[2])
        if len(args) == 2:
            if self.multi_counterpart:
                return self.receive(args[0], None, args[1])
            return self.receive(None, args[0], args[1])
        logger.debug(f"[STORE] Ignoring ReceiveMessage with {len(args)} arguments")
        return None

    def receive(self, sender_id: Optional[str], sender_display_name: Optional[str], text: Any) -> Optional[ChatMessage]:
        """Apply an inbound message.

        Returns:
            The appended or reconciled message, None if it was dropped
        """
        cleaned = clean_envelope(text or "")
        if not isinstance(cleaned, str) or not cleaned.strip():
            return None

        if sender_id is not None and str(sender_id) == self.local_user_id:
            return self._receive_own(cleaned)

        if sender_id is None:
            target = self.focused_id
            if target is None:
                logger.debug("[STORE] Dropping message without sender while no conversation is open")
                return None
        else:
            target = str(sender_id)
            if self.multi_counterpart and target != self.focused_id:
                # TODO: count these as unread once the product decides on buffering
                logger.debug(f"[STORE] Dropping message from {target}, focused on {self.focused_id}")
                return None

        name = sender_display_name
        if not name and self._directory is not None:
            name = self._directory.name_of(target)
        if sender_id is not None and self._directory is not None:
            self._directory.schedule_ensure(target)

        message = ChatMessage(
            sender_id=str(sender_id) if sender_id is not None else None,
            sender_display_name=name or "Unknown",
            text=cleaned,
            direction=Direction.COUNTERPART,
        )
        self._append(target, message)
        return message

    def _receive_own(self, text: str) -> Optional[ChatMessage]:
        ordered = sorted(self._conversations.values(), key=lambda c: c.counterpart_id != self.focused_id)
        for conversation in ordered:
            pending = conversation.find_pending(text)
            if pending is not None:
                pending.mark_sent()
                self._notify(conversation.counterpart_id)
                return pending
        confirmed = next((m for m in self._unechoed if m.text == text), None)
        if confirmed is not None:
            self._unechoed.remove(confirmed)
            return confirmed
        if self.focused_id is None:
            return None
        message = ChatMessage(
            sender_id=self.local_user_id,
            sender_display_name=self.local_display_name,
            text=text,
            direction=Direction.OWN,
        )
        self._append(self.focused_id, message)
        return message

    def add_system_message(self, text: str, counterpart_id: Optional[str] = None) -> Optional[ChatMessage]:
        """Append a status line to a conversation, skipping an immediate repeat."""
        target = counterpart_id or self.focused_id
        if target is None:
            return None
        conversation = self.conversation(target)
        last = conversation.live[-1] if conversation.live else None
        if last is not None and last.direction == Direction.SYSTEM and last.text == text:
            return None
        message = self._system(text)
        self._append(target, message)
        return message

    # ── Outbound ─────────────────────────────────────────────────

    async def send(self, counterpart_id: str, text: str) -> ChatMessage:
        """Show text as pending, then deliver it through the hub.

        The returned message ends up SENT or FAILED. Failed messages are not
        retried.

        Raises:
            ValueError: If text is blank
        """
        text = text.strip()
        if not text:
            raise ValueError("Cannot send an empty message")
        key = str(counterpart_id)
        message = ChatMessage(
            sender_id=self.local_user_id,
            sender_display_name=self.local_display_name,
            text=text,
            direction=Direction.OWN,
            delivery_status=DeliveryStatus.PENDING,
        )
        self._append(key, message)

        try:
            await self._controller.send("SendMessage", key, text)
        except SendFailure as e:
            logger.warning(f"[STORE] Send to {key} failed: {e}")
            message.mark_failed()
        else:
            if message.mark_sent():
                self._unechoed.append(message)
                del self._unechoed[:-UNECHOED_LIMIT]
        self._notify(key)
        return message

    # ── Persistence ──────────────────────────────────────────────

    def snapshot(self, limit: int = 100) -> ConversationSnapshot:
        """Bounded copy of the focused conversation."""
        conversation = self.get(self.focused_id) if self.focused_id else None
        messages = []
        if conversation is not None:
            messages = [m for m in conversation.messages if m.direction != Direction.SYSTEM][-limit:]
        return ConversationSnapshot(
            open=conversation is not None,
            receiver_id=self.focused_id,
            messages=messages,
            ts=time.time(),
        )

    def restore(self, snapshot: ConversationSnapshot) -> Optional[str]:
        """Reinstate a snapshot as the focused conversation.

        Messages that were still pending when the snapshot was taken are
        marked failed; their delivery outcome is unknown.

        Returns:
            The restored counterpart id, None if the snapshot held no conversation
        """
        if not snapshot.open or not snapshot.receiver_id:
            return None
        conversation = self.conversation(snapshot.receiver_id)
        restored = [m.model_copy() for m in snapshot.messages]
        for message in restored:
            message.mark_failed()
        conversation.live = restored + conversation.live
        self.focused_id = conversation.counterpart_id
        logger.info(f"[STORE] Restored {len(restored)} messages with {self.focused_id}")
        self._notify(self.focused_id)
        return self.focused_id
