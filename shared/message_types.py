from __future__ import annotations

from enum import Enum


# Discriminator key of every server-originated envelope
TYPE_KEY = "t"

# Client requests carry no discriminator, they are detected by key presence
SUBSCRIBE_KEY = "subscribeTo"
UNSUBSCRIBE_KEY = "unsubscribeFrom"

PRODUCT_TOPIC_PREFIX = "trading.product."


class MessageType(str, Enum):
    """Server-to-client envelope discriminators."""

    CONNECTED = "connect.connected"      # handshake greeting
    ACK = "connect.ack"                  # subscribe acknowledgment
    FAILED = "connect.failed"            # informational failure signal
    QUOTE = "trading.quote"              # periodic/initial value

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if string is a valid message type."""
        try:
            cls(value)
            return True
        except ValueError:
            return False
