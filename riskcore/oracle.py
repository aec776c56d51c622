# riskcore/oracle.py
"""
Price cache in front of the external PriceOracle.

Reads never block on a slow or dead feed. A cached price still inside the
fresh window is served without touching the oracle; past it, the oracle is
asked again on a worker thread and given at most fetch_timeout_seconds. When
the feed is slow or dead the last valid price is served with a time-decay
discount, and once the cached value is older than the maximum staleness the
read fails closed with StaleDataError.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FetchTimeout
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional

from .interfaces import PriceOracle, PriceReading
from .validation import StaleDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceCacheConfig:
    fresh_seconds: float = 60.0            # Readings younger than this are used as-is
    max_staleness_seconds: float = 900.0   # Beyond this, fail closed
    decay_bps_per_minute: Decimal = Decimal(10)
    max_discount_bps: Decimal = Decimal(500)
    min_confidence: Decimal = Decimal(80)
    fetch_timeout_seconds: float = 0.5     # Longest a read waits on the oracle


@dataclass(frozen=True)
class CachedPrice:
    asset: str
    price: Decimal           # Price after discount
    raw_price: Decimal
    age_seconds: float
    discount_bps: Decimal
    from_cache: bool

    def to_dict(self) -> Dict[str, str]:
        return {
            "asset": self.asset,
            "price": str(self.price),
            "raw_price": str(self.raw_price),
            "age_seconds": f"{self.age_seconds:.1f}",
            "discount_bps": str(self.discount_bps),
            "from_cache": str(self.from_cache),
        }


class PriceCache:
    """Last-valid-price cache with time-decay discount and bounded oracle reads."""

    def __init__(
        self,
        oracle: PriceOracle,
        config: Optional[PriceCacheConfig] = None,
        clock: Callable[[], float] = time.time,
        max_workers: int = 4,
    ):
        self.oracle = oracle
        self.config = config or PriceCacheConfig()
        self._clock = clock
        self._lock = threading.Lock()
        # asset -> (price, observed_at) where observed_at is when the price was current
        self._last_valid: Dict[str, tuple] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="price-fetch")
        # One outstanding fetch per asset; a hung feed never piles up workers
        self._inflight: Dict[str, Future] = {}

    def get(self, asset: str) -> CachedPrice:
        now = self._clock()

        with self._lock:
            cached = self._last_valid.get(asset)
        if cached is not None and now - cached[1] <= self.config.fresh_seconds:
            return self._serve(asset, cached, now, from_cache=True)

        reading = self._read(asset)

        if reading is not None:
            observed_at = now - reading.age_seconds
            with self._lock:
                previous = self._last_valid.get(asset)
                if previous is None or observed_at >= previous[1]:
                    self._last_valid[asset] = (reading.price, observed_at)

        with self._lock:
            cached = self._last_valid.get(asset)

        if cached is None:
            raise StaleDataError(asset, float("inf"), self.config.max_staleness_seconds)
        return self._serve(asset, cached, now, from_cache=reading is None)

    def discount_bps(self, age_seconds: float) -> Decimal:
        stale_minutes = Decimal(str(max(0.0, age_seconds - self.config.fresh_seconds))) / 60
        return min(self.config.max_discount_bps, self.config.decay_bps_per_minute * stale_minutes)

    def is_fresh(self, asset: str) -> bool:
        """True when a price for the asset can currently be served."""
        try:
            self.get(asset)
        except StaleDataError:
            return False
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _serve(self, asset: str, cached: tuple, now: float, from_cache: bool) -> CachedPrice:
        raw_price, observed_at = cached
        age = max(0.0, now - observed_at)

        if age > self.config.max_staleness_seconds:
            logger.error(
                f"[ORACLE] {asset} price is {age:.0f}s old, "
                f"max {self.config.max_staleness_seconds:.0f}s - failing closed"
            )
            raise StaleDataError(asset, age, self.config.max_staleness_seconds)

        if age <= self.config.fresh_seconds:
            return CachedPrice(asset, raw_price, raw_price, age, Decimal(0), from_cache=from_cache)

        discount_bps = self.discount_bps(age)
        price = raw_price * (Decimal(10000) - discount_bps) / Decimal(10000)
        logger.warning(
            f"[ORACLE] Serving decayed {asset} price {price} "
            f"(raw {raw_price}, age {age:.0f}s, discount {discount_bps}bps)"
        )
        return CachedPrice(asset, price, raw_price, age, discount_bps, from_cache=True)

    def _fetch(self, asset: str) -> PriceReading:
        with self._lock:
            future = self._inflight.get(asset)
            if future is None or future.done():
                future = self._executor.submit(self.oracle.get_price, asset)
                self._inflight[asset] = future
        return future.result(timeout=self.config.fetch_timeout_seconds)

    def _read(self, asset: str) -> Optional[PriceReading]:
        try:
            reading = self._fetch(asset)
        except FetchTimeout:
            logger.warning(
                f"[ORACLE] Feed for {asset} did not answer within "
                f"{self.config.fetch_timeout_seconds}s"
            )
            return None
        except Exception as e:
            logger.warning(f"[ORACLE] Feed unavailable for {asset}: {e}")
            return None

        if reading.price <= 0:
            logger.warning(f"[ORACLE] Ignoring non-positive price for {asset}: {reading.price}")
            return None
        if reading.confidence < self.config.min_confidence:
            logger.warning(
                f"[ORACLE] Ignoring low-confidence {asset} reading "
                f"({reading.confidence} < {self.config.min_confidence})"
            )
            return None
        return reading
