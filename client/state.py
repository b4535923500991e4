from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Optional


class SessionState(str, Enum):
    """Client-side lifecycle of one session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"                  # transport open, waiting for connect.connected
    AWAITING_HANDSHAKE = "awaiting_handshake"  # subscribeTo sent, waiting for connect.ack
    SUBSCRIBED = "subscribed"
    FAILED = "failed"


@dataclass
class QuoteHistory:
    """Bounded record of what a session surfaced to its caller."""
    limit: int = 20
    received: int = 0
    absent: int = 0
    recent: Deque[str] = field(default_factory=deque)

    def record(self, price: Optional[str]) -> None:
        if price is None:
            self.absent += 1
            return
        self.received += 1
        self.recent.append(price)
        while len(self.recent) > self.limit:
            self.recent.popleft()

    @property
    def last(self) -> Optional[str]:
        return self.recent[-1] if self.recent else None

    def numeric(self) -> List[float]:
        values = []
        for price in self.recent:
            try:
                values.append(float(price))
            except ValueError:
                continue
        return values
