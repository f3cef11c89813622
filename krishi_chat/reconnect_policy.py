"""Retry policies consulted by the connection controller and hub transports."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


class ReconnectPolicy(ABC):
    """Decides how long to wait before the next connect attempt."""

    @abstractmethod
    def next_delay(self, attempt: int) -> Optional[float]:
        """Delay in seconds before retry number ``attempt`` (0-based), or None to give up."""
        pass


@dataclass
class FixedDelayPolicy(ReconnectPolicy):
    """Retry forever at a fixed interval."""
    delay: float = 1.5

    def next_delay(self, attempt: int) -> Optional[float]:
        return self.delay


@dataclass
class ScheduledDelayPolicy(ReconnectPolicy):
    """Retry along a fixed schedule, then give up."""
    delays: list[float] = field(default_factory=lambda: [0.0, 2.0, 10.0, 30.0])

    def next_delay(self, attempt: int) -> Optional[float]:
        if attempt < len(self.delays):
            return self.delays[attempt]
        return None
