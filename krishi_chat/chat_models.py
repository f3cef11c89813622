"""Models for chat sessions, conversations and messages."""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class Direction(str, Enum):
    """Who a message is from, seen from the local user."""
    OWN = "own"
    COUNTERPART = "counterpart"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    """Delivery state of a message. PENDING is the only non-terminal state."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ConnectionState(str, Enum):
    """State of the hub connection owned by the ConnectionController."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class ChatMessage(BaseModel):
    """A single message in a conversation."""
    local_id: str = Field(default_factory=lambda: uuid4().hex)
    sender_id: Optional[str] = None
    sender_display_name: str = ""
    text: str
    direction: Direction
    delivery_status: DeliveryStatus = DeliveryStatus.SENT
    timestamp: Optional[datetime] = Field(default_factory=utc_now, description="None if the server record carried no usable time")

    @property
    def effective_timestamp(self) -> datetime:
        """Timestamp used for ordering; records without a time sort first."""
        return self.timestamp or EPOCH

    @property
    def is_pending(self) -> bool:
        return self.delivery_status == DeliveryStatus.PENDING

    def mark_sent(self) -> bool:
        """Move a pending message to SENT. Returns False if it was already terminal."""
        if self.delivery_status != DeliveryStatus.PENDING:
            return False
        self.delivery_status = DeliveryStatus.SENT
        return True

    def mark_failed(self) -> bool:
        """Move a pending message to FAILED. Returns False if it was already terminal."""
        if self.delivery_status != DeliveryStatus.PENDING:
            return False
        self.delivery_status = DeliveryStatus.FAILED
        return True


class Conversation(BaseModel):
    """Messages exchanged with one counterpart.

    ``history`` is the sorted REST history, replaced on every load.
    ``live`` holds messages sent or received since, in arrival order.
    """
    counterpart_id: str
    history: List[ChatMessage] = Field(default_factory=list)
    live: List[ChatMessage] = Field(default_factory=list)
    history_loaded: bool = False
    history_loading: bool = False
    history_error: Optional[str] = None

    @property
    def messages(self) -> List[ChatMessage]:
        return self.history + self.live

    def find_pending(self, text: str) -> Optional[ChatMessage]:
        """First own pending message with exactly this text."""
        return next(
            (m for m in self.live if m.direction == Direction.OWN and m.is_pending and m.text == text),
            None,
        )


class CounterpartMeta(BaseModel):
    """Display metadata of a counterpart. Missing fields are unresolved, not errors."""
    id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class SessionIdentity(BaseModel):
    """Logical chat session of this client, persisted across restarts."""
    session_id: str
    previous_connection_id: Optional[str] = None


class ConnectionInfo(BaseModel):
    """Last connection this client held, kept for post-connect cleanup."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    connection_id: str
    session_id: Optional[str] = None
    ts: int = 0


class Credential(BaseModel):
    """Bearer credential and identity supplied by the host application."""
    token: str
    user_id: str
    full_name: str = ""

    @property
    def display_name(self) -> str:
        return self.full_name or "You"


class DisconnectRequest(BaseModel):
    """Body of the disconnect notification endpoint."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str
    connection_id: str
    session_id: Optional[str] = None
    reason: str
    timestamp: int
    replacement_connection_id: Optional[str] = None


class ConversationSnapshot(BaseModel):
    """Bounded copy of the focused conversation persisted for restarts."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    open: bool = False
    receiver_id: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    ts: float = 0.0
