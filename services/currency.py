"""
Currency conversion with an explicit, TTL-bound rate cache.

The converter is handed an FX quote function (normally MarketDataService.fx_quote)
and a RateCache owned by the caller. Lookups fall back to the inverse quote and
finally to a neutral 1.0, recording each degradation so it can be surfaced.
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Tuple

from services.common import is_pence, major_currency

logger = logging.getLogger(__name__)

FxQuoteFn = Callable[[str, str], Optional[float]]

DEFAULT_TTL_SECONDS = 3600
# Degradations a converter remembers; older ones are dropped
MAX_DEGRADATIONS = 256


class RateCache:
    """
    Exchange-rate cache keyed by "{from}{to}" with a fixed time-to-live.

    Concurrent writers may race on the same key; the last write wins, which is
    harmless since every writer stores the same quote.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, float]] = {}

    @staticmethod
    def key(from_currency: str, to_currency: str) -> str:
        return f"{from_currency}{to_currency}"

    def get(self, from_currency: str, to_currency: str) -> Optional[float]:
        entry = self._entries.get(self.key(from_currency, to_currency))
        if entry is None:
            return None
        rate, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            return None
        return rate

    def set(self, from_currency: str, to_currency: str, rate: float) -> None:
        self._entries[self.key(from_currency, to_currency)] = (rate, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class FxDegradation:
    """A rate that could not be resolved and was replaced by 1.0."""
    from_currency: str
    to_currency: str
    reason: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _usable(rate: Optional[float]) -> bool:
    return rate is not None and not math.isnan(rate) and not math.isinf(rate) and rate > 0


class CurrencyConverter:
    """
    Resolves spot exchange rates between ISO currency codes.

    Args:
        fx_quote: Callable returning the rate for (from, to) or None; may raise
        cache: RateCache to memoize into (a private one is created if omitted)
        max_degradations: How many recent degradations to keep
    """

    def __init__(
        self,
        fx_quote: FxQuoteFn,
        cache: Optional[RateCache] = None,
        max_degradations: int = MAX_DEGRADATIONS
    ):
        self._fx_quote = fx_quote
        self.cache = cache if cache is not None else RateCache()
        self.degradations: Deque[FxDegradation] = deque(maxlen=max_degradations)
        # Total ever recorded, including entries already dropped from the deque
        self.degradation_count = 0

    def _try_quote(self, from_currency: str, to_currency: str) -> Optional[float]:
        try:
            rate = self._fx_quote(from_currency, to_currency)
        except Exception as e:
            logger.warning(f"FX quote {from_currency}{to_currency}=X failed: {e}")
            return None
        return float(rate) if _usable(rate) else None

    def rate(self, from_currency: str, to_currency: str) -> float:
        """
        Rate to multiply an amount in from_currency by to express it in to_currency.

        Pence codes are handled as GBP/100. Never raises: an unresolvable pair
        yields 1.0 and is recorded in self.degradations.
        """
        if not from_currency or not to_currency:
            return 1.0

        scale = 1.0
        if is_pence(from_currency):
            scale /= 100.0
        if is_pence(to_currency):
            scale *= 100.0
        source = major_currency(from_currency)
        target = major_currency(to_currency)

        if source == target:
            return scale

        cached = self.cache.get(source, target)
        if cached is not None:
            return cached * scale

        direct = self._try_quote(source, target)
        if direct is not None:
            self.cache.set(source, target, direct)
            return direct * scale

        inverse = self._try_quote(target, source)
        if inverse is not None:
            rate = 1.0 / inverse
            self.cache.set(source, target, rate)
            return rate * scale

        self._degrade(source, target, "no direct or inverse quote")
        return scale

    def _degrade(self, from_currency: str, to_currency: str, reason: str) -> None:
        self.degradations.append(FxDegradation(from_currency, to_currency, reason))
        self.degradation_count += 1
        logger.warning(
            f"Exchange rate {from_currency}->{to_currency} unavailable ({reason}); using 1.0",
            extra={
                "event": "fx_rate_degraded",
                "from_currency": from_currency,
                "to_currency": to_currency,
            }
        )

    def rates_for(self, currency: str) -> Dict[str, float]:
        """Snapshot rates from a currency into USD and EUR."""
        return {
            "to_usd": self.rate(currency, "USD"),
            "to_eur": self.rate(currency, "EUR"),
        }

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        """Convert an amount between currencies."""
        return amount * self.rate(from_currency, to_currency)

    def degraded_pairs(self, since: int = 0) -> List[str]:
        """
        Distinct "FROM->TO" pairs that fell back to 1.0, in first-seen order.

        Args:
            since: A previous degradation_count; only later degradations are listed
        """
        recent = list(self.degradations)
        newer = self.degradation_count - since
        if newer < len(recent):
            recent = recent[len(recent) - newer:] if newer > 0 else []
        seen = []
        for item in recent:
            pair = f"{item.from_currency}->{item.to_currency}"
            if pair not in seen:
                seen.append(pair)
        return seen

    def reset_degradations(self) -> None:
        self.degradations.clear()
        self.degradation_count = 0


# Process-wide cache shared by converters that are not handed their own
_shared_cache: Optional[RateCache] = None


def shared_rate_cache() -> RateCache:
    """Get or create the process-wide rate cache (TTL from settings)."""
    global _shared_cache
    if _shared_cache is None:
        from config import get_settings
        _shared_cache = RateCache(ttl_seconds=get_settings().fx_cache_ttl_seconds)
    return _shared_cache
