from __future__ import annotations

import itertools
import threading
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

from shared.errors import NotFound, ProtocolViolation
from shared.log import get_logger

if TYPE_CHECKING:
    from server.core.ConnectionLink import ConnectionLink

logger = get_logger(__name__)


class SubscriberRegistry:
    """
    Ordered set of subscribed connections keyed by their identity.

    Identities come from a running counter and are never reused, so
    removing one subscriber leaves every other identity untouched.
    All access goes through one lock: connection handlers and the
    broadcast scheduler may run on different workers.
    """

    def __init__(self, first_id: int = 0):
        self._lock = threading.Lock()
        self._subscribers: Dict[int, ConnectionLink] = {}
        self._ids: Iterator[int] = itertools.count(first_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._subscribers

    def subscribe(self, link: ConnectionLink) -> int:
        """Register link and return the identity assigned to it."""
        with self._lock:
            if any(existing is link for existing in self._subscribers.values()):
                raise ProtocolViolation("Connection is already subscribed")
            connection_id = next(self._ids)
            self._subscribers[connection_id] = link
        logger.info("Subscribed (%d live)", len(self), extra={"connection_id": connection_id})
        return connection_id

    def unsubscribe(self, connection_id: int) -> ConnectionLink:
        """Remove and return the subscriber holding connection_id."""
        with self._lock:
            link = self._subscribers.pop(connection_id, None)
        if link is None:
            raise NotFound(connection_id)
        logger.info("Unsubscribed (%d live)", len(self), extra={"connection_id": connection_id})
        return link

    def get(self, connection_id: int) -> Optional[ConnectionLink]:
        with self._lock:
            return self._subscribers.get(connection_id)

    def snapshot(self) -> List[ConnectionLink]:
        """Copy of the subscribers in subscribe order, safe to iterate."""
        with self._lock:
            return list(self._subscribers.values())

    def identities(self) -> List[int]:
        with self._lock:
            return list(self._subscribers.keys())

    def clear(self) -> List[ConnectionLink]:
        """Drain the registry, returning what was in it."""
        with self._lock:
            drained = list(self._subscribers.values())
            self._subscribers.clear()
        if drained:
            logger.info("Registry drained (%d subscribers)", len(drained))
        return drained
