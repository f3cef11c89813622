"""Exception types raised by the chat core.

None of these are fatal to the host application; components catch them at
their boundaries and turn them into status or per-conversation errors.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for chat core errors."""
    pass


class HubError(ChatError):
    """Raised by hub transports for connect, invoke and protocol failures."""
    pass


class ConnectFailure(HubError):
    """A connect attempt failed. Retried by the controller unless manually closed."""
    pass


class SendFailure(ChatError):
    """A hub invocation failed. The affected message is marked failed."""
    pass


class CredentialMissing(ChatError):
    """No bearer token or user id is available."""
    pass


class ChatRestError(ChatError):
    """A REST call to the marketplace backend failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class HistoryFetchFailure(ChatRestError):
    """Chat history could not be loaded."""
    pass


class MetadataFetchFailure(ChatRestError):
    """Counterpart name or avatar could not be loaded."""
    pass


class ListPollFailure(ChatRestError):
    """The counterpart list endpoint returned an error other than "no data"."""
    pass
