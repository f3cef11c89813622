from .hub_transport import CredentialFactory, HubTransport, ResumeHints, TransportState
from .signalr_transport import SignalRWebSocketTransport

__all__ = [
    "CredentialFactory",
    "HubTransport",
    "ResumeHints",
    "TransportState",
    "SignalRWebSocketTransport",
]
