"""
Unit tests for PriceCache decay and staleness
"""

import threading
import time
from decimal import Decimal

import pytest

from riskcore.interfaces import PriceReading
from riskcore.oracle import PriceCache, PriceCacheConfig
from riskcore.validation import StaleDataError


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ScriptedOracle:
    """Serves whatever reading is set; raises when the feed is down."""

    def __init__(self):
        self.readings = {}
        self.down = False

    def set(self, asset, price, confidence=100, age=0.0):
        self.readings[asset] = PriceReading(Decimal(price), Decimal(confidence), age)

    def get_price(self, asset):
        if self.down:
            raise ConnectionError("feed down")
        if asset not in self.readings:
            raise KeyError(asset)
        return self.readings[asset]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    oracle = ScriptedOracle()
    oracle.set("ETH", 100)
    return oracle


@pytest.fixture
def cache(oracle, clock):
    return PriceCache(oracle, PriceCacheConfig(), clock=clock)


class TestPriceCache:

    def test_fresh_price_served_as_is(self, cache):
        result = cache.get("ETH")

        assert result.price == Decimal(100)
        assert result.discount_bps == 0
        assert result.from_cache is False

    def test_cached_price_after_feed_failure(self, cache, oracle, clock):
        cache.get("ETH")
        oracle.down = True
        clock.advance(30)

        result = cache.get("ETH")
        assert result.price == Decimal(100)
        assert result.from_cache is True

    def test_decay_discount(self, cache, oracle, clock):
        cache.get("ETH")
        oracle.down = True
        clock.advance(120)

        result = cache.get("ETH")
        # One minute past fresh at 10 bps/min
        assert result.discount_bps == 10
        assert result.price == Decimal("99.9")
        assert result.raw_price == Decimal(100)

    def test_discount_is_capped(self, cache):
        assert cache.discount_bps(899) == Decimal(500)
        assert cache.discount_bps(30) == 0

    def test_stale_price_fails_closed(self, cache, oracle, clock):
        cache.get("ETH")
        oracle.down = True
        clock.advance(901)

        with pytest.raises(StaleDataError):
            cache.get("ETH")
        assert cache.is_fresh("ETH") is False

    def test_never_seen_asset_raises(self, cache):
        with pytest.raises(StaleDataError):
            cache.get("BTC")

    def test_reading_age_counts(self, cache, oracle):
        oracle.set("ETH", 100, age=1000)
        with pytest.raises(StaleDataError):
            cache.get("ETH")

    def test_low_confidence_reading_ignored(self, cache, oracle, clock):
        cache.get("ETH")
        oracle.set("ETH", 50, confidence=40)
        clock.advance(120)

        result = cache.get("ETH")
        assert result.raw_price == Decimal(100)
        assert result.from_cache is True

    def test_non_positive_price_ignored(self, cache, oracle):
        oracle.set("ETH", 0)
        with pytest.raises(StaleDataError):
            cache.get("ETH")

    def test_newer_reading_replaces_cache(self, cache, oracle, clock):
        cache.get("ETH")
        clock.advance(61)
        oracle.set("ETH", 120)

        result = cache.get("ETH")
        assert result.price == Decimal(120)
        assert result.from_cache is False

    def test_recovery_after_outage(self, cache, oracle, clock):
        cache.get("ETH")
        oracle.down = True
        clock.advance(1000)
        assert not cache.is_fresh("ETH")

        oracle.down = False
        assert cache.is_fresh("ETH")


class BlockingOracle(ScriptedOracle):
    """Counts reads; while hung, every read waits for release."""

    def __init__(self):
        super().__init__()
        self.calls = 0
        self.hung = False
        self.release = threading.Event()

    def get_price(self, asset):
        self.calls += 1
        if self.hung:
            self.release.wait(5)
            raise ConnectionError("feed timed out upstream")
        return super().get_price(asset)


class TestOracleReads:

    @pytest.fixture
    def oracle(self):
        oracle = BlockingOracle()
        oracle.set("ETH", 2000)
        return oracle

    @pytest.fixture
    def cache(self, oracle, clock):
        cache = PriceCache(oracle, PriceCacheConfig(fetch_timeout_seconds=0.05), clock=clock)
        yield cache
        oracle.release.set()
        cache.close()

    def test_fresh_cache_skips_oracle(self, cache, oracle, clock):
        cache.get("ETH")
        clock.advance(30)
        oracle.set("ETH", 2100)

        result = cache.get("ETH")
        assert result.price == Decimal(2000)
        assert result.from_cache is True
        assert oracle.calls == 1

    def test_oracle_asked_again_past_fresh_window(self, cache, oracle, clock):
        cache.get("ETH")
        clock.advance(61)

        cache.get("ETH")
        assert oracle.calls == 2

    def test_hung_feed_serves_cached_price_without_waiting(self, cache, oracle, clock):
        cache.get("ETH")
        oracle.hung = True
        clock.advance(120)

        started = time.monotonic()
        result = cache.get("ETH")
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert result.from_cache is True
        assert result.raw_price == Decimal(2000)
        assert result.discount_bps == 10

    def test_hung_feed_without_cache_fails_closed(self, cache, oracle):
        oracle.hung = True

        started = time.monotonic()
        with pytest.raises(StaleDataError):
            cache.get("ETH")
        assert time.monotonic() - started < 1.0

    def test_hung_feed_gets_one_outstanding_read(self, cache, oracle, clock):
        cache.get("ETH")
        oracle.hung = True
        clock.advance(120)

        cache.get("ETH")
        cache.get("ETH")
        assert oracle.calls == 2
