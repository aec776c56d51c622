"""
In-memory collaborators for running the risk core as a service or simulator.

- InMemoryTokenLedger: burned amounts and the compensation pool
- InMemoryFundLedger: NAV reads and compensation credits against the entity store
- InMemoryInvestorRegistry: activity ledgers scored by InvestorScoreCalculator
- StaticPriceOracle: settable prices with confidence and age
"""

import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set, Tuple

from riskcore.behavior import ActivityKind, ActivityLedger, ActivityRecord, InvestorScoreCalculator
from riskcore.interfaces import PriceReading
from riskcore.models import BehaviorMetrics, ZERO
from riskcore.store import EntityStore

logger = logging.getLogger(__name__)


class InMemoryTokenLedger:
    def __init__(self):
        self._lock = threading.Lock()
        self.burned: Dict[str, Decimal] = {}
        self.compensation_pool = ZERO

    def burn(self, manager_id: str, amount: Decimal) -> None:
        with self._lock:
            self.burned[manager_id] = self.burned.get(manager_id, ZERO) + amount
        logger.info(f"[LEDGER] Burned {amount} TOSS from {manager_id}")

    def transfer_to_compensation_pool(self, amount: Decimal) -> None:
        with self._lock:
            self.compensation_pool += amount

    def reverse_burn(self, manager_id: str, amount: Decimal) -> None:
        with self._lock:
            self.burned[manager_id] = self.burned.get(manager_id, ZERO) - amount
            if self.burned[manager_id] == 0:
                del self.burned[manager_id]
        logger.warning(f"[LEDGER] Reversed burn of {amount} TOSS from {manager_id}")

    def withdraw_from_compensation_pool(self, amount: Decimal) -> None:
        with self._lock:
            self.compensation_pool -= amount

    @property
    def total_burned(self) -> Decimal:
        with self._lock:
            return sum(self.burned.values(), ZERO)


class InMemoryFundLedger:
    """
    NAV bookkeeping backed by the entity store.

    Compensation is valued in USD at the TOSS price the slash used; the
    pipeline holds the fund lock while calling in.
    """

    def __init__(self, store: EntityStore, toss_price: Optional[Callable[[], Decimal]] = None):
        self.store = store
        self._toss_price = toss_price
        self._lock = threading.Lock()
        self.compensated: Dict[str, Decimal] = {}
        self.dirty: Set[str] = set()

    def get_nav(self, fund_id: str) -> Decimal:
        fund = self.store.funds.get(fund_id)
        return fund.net_asset_value if fund else ZERO

    def apply_compensation(self, fund_id: str, amount: Decimal) -> None:
        fund = self.store.funds.get(fund_id)
        if fund is None:
            raise KeyError(f"Unknown fund {fund_id}")
        usd = amount * self._toss_price() if self._toss_price else amount
        fund.set_nav(fund.net_asset_value + usd)
        with self._lock:
            self.compensated[fund_id] = self.compensated.get(fund_id, ZERO) + amount

    def reverse_compensation(self, fund_id: str, amount: Decimal) -> None:
        fund = self.store.funds.get(fund_id)
        if fund is not None:
            usd = amount * self._toss_price() if self._toss_price else amount
            fund.set_nav(fund.net_asset_value - usd)
        with self._lock:
            self.compensated[fund_id] = self.compensated.get(fund_id, ZERO) - amount
            if self.compensated[fund_id] == 0:
                del self.compensated[fund_id]
        logger.warning(f"[LEDGER] Reversed compensation of {amount} TOSS to {fund_id}")

    def mark_dirty(self, fund_id: str) -> None:
        with self._lock:
            self.dirty.add(fund_id)

    def take_dirty(self) -> List[str]:
        """Funds whose NAV needs re-aggregation; clears the set."""
        with self._lock:
            dirty, self.dirty = sorted(self.dirty), set()
        return dirty


class InMemoryInvestorRegistry:
    """
    Behavioral metrics per investor.

    Withdrawals within LOSS_REACTION_WINDOW of a recorded fund loss count
    towards the Loss Reaction Index.
    """

    LOSS_REACTION_WINDOW = timedelta(hours=24)

    def __init__(self, store: EntityStore, calculator: Optional[InvestorScoreCalculator] = None):
        self.store = store
        self.calculator = calculator or InvestorScoreCalculator()
        self._lock = threading.Lock()
        self._ledgers: Dict[str, ActivityLedger] = {}
        self._intent: Dict[str, Decimal] = {}
        self._overrides: Dict[str, BehaviorMetrics] = {}
        self._fund_losses: Dict[str, datetime] = {}

    def record_activity(
        self,
        investor_id: str,
        fund_id: str,
        kind: ActivityKind,
        amount: Decimal,
        at: Optional[datetime] = None,
    ) -> ActivityRecord:
        at = at or datetime.now()
        with self._lock:
            loss_at = self._fund_losses.get(fund_id)
            after_loss = (
                kind == ActivityKind.WITHDRAWAL
                and loss_at is not None
                and loss_at <= at <= loss_at + self.LOSS_REACTION_WINDOW
            )
            record = ActivityRecord(kind=kind, amount=amount, at=at, after_loss=after_loss)
            self._ledgers.setdefault(investor_id, ActivityLedger()).add(record)
        return record

    def record_fund_loss(self, fund_id: str, at: Optional[datetime] = None) -> None:
        with self._lock:
            self._fund_losses[fund_id] = at or datetime.now()

    def set_intent_probability(self, investor_id: str, probability: Decimal) -> None:
        """Score from the external intent-detection collaborator (0-100)."""
        with self._lock:
            self._intent[investor_id] = Decimal(probability)

    def set_metrics(self, investor_id: str, metrics: Optional[BehaviorMetrics]) -> None:
        """Pin metrics for an investor (None clears the pin)."""
        with self._lock:
            if metrics is None:
                self._overrides.pop(investor_id, None)
            else:
                self._overrides[investor_id] = metrics

    def get_metrics(self, investor_id: str, now: Optional[datetime] = None) -> BehaviorMetrics:
        now = now or datetime.now()
        investor = self.store.investors.get(investor_id)
        v7 = investor.violations.count_7d(now) if investor else 0
        v30 = investor.violations.count_30d(now) if investor else 0

        with self._lock:
            override = self._overrides.get(investor_id)
            ledger = self._ledgers.get(investor_id) or ActivityLedger()
            intent = self._intent.get(investor_id, ZERO)

        if override is not None:
            return BehaviorMetrics(
                wbr=override.wbr,
                dvr=override.dvr,
                lri=override.lri,
                intent_probability=override.intent_probability,
                violations_7d=max(override.violations_7d, v7),
                violations_30d=max(override.violations_30d, v30),
            )

        return self.calculator.compute(ledger, now, intent, v7, v30)


class StaticPriceOracle:
    """Prices set by hand; an asset marked down raises like a dead feed."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self._lock = threading.Lock()
        self._prices: Dict[str, Tuple[Decimal, Decimal, float]] = {}
        self._down: Set[str] = set()
        for asset, price in (prices or {}).items():
            self.set_price(asset, price)

    def set_price(self, asset: str, price, confidence=Decimal(100), age_seconds: float = 0.0) -> None:
        with self._lock:
            self._prices[asset] = (Decimal(str(price)), Decimal(str(confidence)), age_seconds)
            self._down.discard(asset)

    def set_down(self, asset: str, down: bool = True) -> None:
        with self._lock:
            if down:
                self._down.add(asset)
            else:
                self._down.discard(asset)

    def get_price(self, asset: str) -> PriceReading:
        with self._lock:
            if asset in self._down:
                raise ConnectionError(f"Price feed for {asset} unavailable")
            if asset not in self._prices:
                raise KeyError(f"No price for {asset}")
            price, confidence, age = self._prices[asset]
        return PriceReading(price=price, confidence=confidence, age_seconds=age)
