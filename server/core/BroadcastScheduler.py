from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from server.core.QuoteSource import QuoteSource
from server.core.SubscriberRegistry import SubscriberRegistry
from shared.envelope import Quote
from shared.errors import TransportError
from shared.log import get_logger

if TYPE_CHECKING:
    from server.core.ConnectionLink import ConnectionLink

logger = get_logger(__name__)

SendFailureHandler = Callable[["ConnectionLink", TransportError], Awaitable[None]]
QuoteObserver = Callable[[Quote], None]


@dataclass
class TickReport:
    """Outcome of one broadcast tick."""
    quote: Optional[Quote] = None
    attempted: int = 0
    delivered: int = 0
    failed: List[Optional[int]] = field(default_factory=list)


class BroadcastScheduler:
    """
    Periodically pushes a fresh quote to every subscriber.

    Each tick takes one registry snapshot and sends to all entries
    concurrently. A failed send is reported through on_send_failure and
    never affects the other recipients or the loop itself.
    """

    def __init__(
        self,
        registry: SubscriberRegistry,
        quote_source: QuoteSource,
        interval: float = 1.0,
        *,
        on_send_failure: Optional[SendFailureHandler] = None,
        on_quote: Optional[QuoteObserver] = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.registry = registry
        self.quote_source = quote_source
        self.interval = interval
        self.on_send_failure = on_send_failure
        self.on_quote = on_quote
        self.ticks = 0
        self.delivered = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the timer loop on the running event loop."""
        if self.running:
            raise RuntimeError("Broadcast scheduler already running")
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run(self) -> None:
        """Tick forever at the configured period."""
        logger.info(f"Broadcasting every {self.interval}s")
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Broadcast tick failed: {e}")

    async def tick(self) -> TickReport:
        """Generate one quote and fan it out to the current subscribers."""
        subscribers = self.registry.snapshot()
        if not subscribers:
            return TickReport()

        quote = self.quote_source()
        self.ticks += 1
        if self.on_quote is not None:
            self.on_quote(quote)
        logger.debug("Broadcasting %s to %d subscribers", quote.current_price, len(subscribers),
                     extra={"msg_type": quote.type.value})

        results = await asyncio.gather(
            *(self._deliver(link, quote) for link in subscribers),
            return_exceptions=True,
        )

        report = TickReport(quote=quote, attempted=len(subscribers))
        for link, result in zip(subscribers, results):
            if result is True:
                report.delivered += 1
            else:
                if isinstance(result, BaseException):
                    logger.error(f"Unexpected error delivering quote: {result!r}",
                                 extra={"connection_id": link.connection_id})
                report.failed.append(link.connection_id)
        self.delivered += report.delivered
        self.failures += len(report.failed)
        return report

    async def _deliver(self, link: ConnectionLink, quote: Quote) -> bool:
        try:
            await link.send(quote)
            return True
        except TransportError as e:
            logger.warning(f"Quote not delivered: {e}", extra={"connection_id": link.connection_id})
            if self.on_send_failure is not None:
                await self.on_send_failure(link, e)
            return False
