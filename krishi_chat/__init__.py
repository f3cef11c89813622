"""krishi-chat — real-time marketplace chat session and connection manager."""

from krishi_chat.chat_models import (
    ChatMessage, ConnectionState, Conversation, CounterpartMeta, Credential, DeliveryStatus, Direction,
)
from krishi_chat.chat_config import ChatEndpoints, ChatHubConfig
from krishi_chat.chat_errors import (
    ChatError, ChatRestError, ConnectFailure, CredentialMissing, HistoryFetchFailure, HubError,
    ListPollFailure, MetadataFetchFailure, SendFailure,
)
from krishi_chat.connection_controller import ConnectionController
from krishi_chat.conversation_store import ConversationStore
from krishi_chat.counterpart_directory import CounterpartDirectory
from krishi_chat.counterpart_poller import CounterpartListPoller
from krishi_chat.presence_heartbeat import PresenceHeartbeat
from krishi_chat.reconnect_policy import FixedDelayPolicy, ReconnectPolicy, ScheduledDelayPolicy
from krishi_chat.session_identity import SessionIdentityManager
from krishi_chat.session_reclaimer import PreviousSessionReclaimer

__all__ = [
    "ChatMessage",
    "ConnectionState",
    "Conversation",
    "CounterpartMeta",
    "Credential",
    "DeliveryStatus",
    "Direction",
    "ChatEndpoints",
    "ChatHubConfig",
    "ChatError",
    "ChatRestError",
    "ConnectFailure",
    "CredentialMissing",
    "HistoryFetchFailure",
    "HubError",
    "ListPollFailure",
    "MetadataFetchFailure",
    "SendFailure",
    "ConnectionController",
    "ConversationStore",
    "CounterpartDirectory",
    "CounterpartListPoller",
    "PresenceHeartbeat",
    "FixedDelayPolicy",
    "ReconnectPolicy",
    "ScheduledDelayPolicy",
    "SessionIdentityManager",
    "PreviousSessionReclaimer",
    "ChatClient",
]


def __getattr__(name: str):
    if name == "ChatClient":
        from krishi_chat.chat_client import ChatClient
        return ChatClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
