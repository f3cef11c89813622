"""Pydantic config models for the krishi-chat client.

ChatEndpoints — REST paths of the marketplace backend.
ChatHubConfig — hub location, timers and limits shared by all components.
"""

import os
from typing import Optional
from urllib.parse import quote

from pydantic import BaseModel, Field


class ChatEndpoints(BaseModel):
    """REST paths relative to ``ChatHubConfig.api_base``."""
    history: str = "/api/Chat/getChatHistory/{counterpart_id}"
    counterparts: str = "/api/Chat/getMyCustomersForChat"
    user_name: str = "/api/User/getUserNameById/{user_id}"
    user_image: str = "/api/User/getUserImageById/{user_id}"
    disconnect: str = "/api/Chat/markOffline"
    farmer_for_product: str = "/api/Chat/getFarmerIdByProductId/{product_id}"


class ChatHubConfig(BaseModel):
    """Connection, timer and buffer settings."""
    api_base: str
    hub_path: str = "/chatHub"
    endpoints: ChatEndpoints = Field(default_factory=ChatEndpoints)

    retry_delay: float = 1.5
    """Fixed delay between connect attempts."""
    stop_contention_delay: float = 0.12
    """Wait before re-checking when a start arrives during a stop."""
    transport_reconnect_delays: list[float] = Field(default_factory=lambda: [0.0, 2.0, 10.0, 30.0])
    """Delays of the transport's own automatic reconnect."""
    heartbeat_interval: float = 25.0
    poll_interval: float = 5.0
    request_timeout: float = 15.0
    invoke_timeout: float = 30.0
    reclaim_timeout: float = 2.0
    """Upper bound a pre-start reclaim may delay a connect."""
    disconnect_timeout: float = 2.0
    send_connect_timeout: float = 10.0

    snapshot_limit: int = 100
    snapshot_debounce: float = 0.3
    meta_prefetch_limit: int = 15

    @property
    def hub_url(self) -> str:
        return self.api_base.rstrip("/") + self.hub_path

    def url_for(self, endpoint: str, **params: str) -> str:
        """Absolute URL of a named endpoint with its path parameters filled in."""
        template = getattr(self.endpoints, endpoint)
        quoted = {k: quote(str(v), safe="") for k, v in params.items()}
        return self.api_base.rstrip("/") + template.format(**quoted)

    @classmethod
    def from_env(cls, api_base: Optional[str] = None) -> "ChatHubConfig":
        """Build a config from ``KRISHI_*`` environment variables.

        Raises:
            ValueError: If no API base URL is configured
        """
        api_base = api_base or os.environ.get("KRISHI_API_BASE")
        if not api_base:
            raise ValueError("KRISHI_API_BASE environment variable is not set")
        values = {"api_base": api_base}
        if os.environ.get("KRISHI_HUB_PATH"):
            values["hub_path"] = os.environ["KRISHI_HUB_PATH"]
        for key, env in (
            ("retry_delay", "KRISHI_RETRY_DELAY"),
            ("heartbeat_interval", "KRISHI_HEARTBEAT_INTERVAL"),
            ("poll_interval", "KRISHI_POLL_INTERVAL"),
            ("request_timeout", "KRISHI_REQUEST_TIMEOUT"),
        ):
            if os.environ.get(env):
                values[key] = float(os.environ[env])
        return cls(**values)
