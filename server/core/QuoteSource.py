from __future__ import annotations

import random
from typing import Callable, Optional

from shared.envelope import Quote

# Anything that produces a fresh quote on each call
QuoteSource = Callable[[], Quote]


class RandomQuoteSource:
    """Placeholder market-data feed: a uniformly random integer price."""

    def __init__(self, security_id: str = "100", low: int = 1, high: int = 1000,
                 rng: Optional[random.Random] = None):
        if low > high:
            raise ValueError(f"low ({low}) must not exceed high ({high})")
        self.security_id = security_id
        self.low = low
        self.high = high
        self._rng = rng or random.Random()

    def __call__(self) -> Quote:
        price = self._rng.randint(self.low, self.high)
        return Quote(security_id=self.security_id, current_price=str(price))
