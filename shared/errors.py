from __future__ import annotations

from typing import Optional


class QuoteStreamError(Exception):
    """Base class for every recoverable quote stream error."""
    pass


class TransportError(QuoteStreamError):
    """Raised when opening, sending on, or receiving from a connection fails."""
    pass


class DecodeError(QuoteStreamError):
    """Raised when an inbound frame cannot be turned into an envelope."""
    pass


class UnknownMessageType(DecodeError):
    """Raised when the discriminator is absent or not one we know."""
    pass


class MalformedPayload(DecodeError):
    """Raised when a known message type carries an invalid body."""
    pass


class ProtocolViolation(QuoteStreamError):
    """Raised when a message arrives out of sequence for the current state."""
    pass


class NotFound(QuoteStreamError):
    """Raised when an unsubscribe references an identity nobody holds."""

    def __init__(self, connection_id: int, detail: Optional[str] = None):
        self.connection_id = connection_id
        super().__init__(detail or f"No subscriber with connectionId {connection_id}")


class ConfigError(QuoteStreamError):
    """Raised when configuration values are missing or invalid."""
    pass
