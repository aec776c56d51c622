# riskcore/models.py
"""
Entities owned by the protocol and mutated only through validated operations.
"""

import hashlib
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, Optional


ZERO = Decimal(0)


class FundStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"
    EMERGENCY = "emergency"


class InvestorState(Enum):
    """Investor lifecycle states. BANNED is terminal."""
    ACTIVE = "active"
    LIMITED = "limited"
    HIGH_RISK = "high_risk"
    FROZEN = "frozen"
    BANNED = "banned"


class OperationKind(Enum):
    TRADE = "trade"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass
class Fund:
    """A managed fund. NAV never goes negative; the high-water mark never decreases."""
    fund_id: str
    manager_id: str
    net_asset_value: Decimal = ZERO
    high_water_mark: Decimal = ZERO
    risk_tier: int = 1
    status: FundStatus = FundStatus.ACTIVE
    total_shares: Decimal = ZERO
    exposures: Dict[str, Decimal] = field(default_factory=dict)  # asset -> USD
    realized_volatility_pct: Decimal = ZERO

    def __post_init__(self):
        if self.high_water_mark < self.net_asset_value:
            self.high_water_mark = self.net_asset_value

    def set_nav(self, new_nav: Decimal) -> None:
        if new_nav < 0:
            raise ValueError(f"NAV for fund {self.fund_id} cannot go negative ({new_nav})")
        self.net_asset_value = new_nav
        if new_nav > self.high_water_mark:
            self.high_water_mark = new_nav

    @property
    def share_price(self) -> Optional[Decimal]:
        if self.total_shares <= 0:
            return None
        return self.net_asset_value / self.total_shares

    @property
    def drawdown_pct(self) -> Decimal:
        """Current drawdown from the high-water mark, in percent."""
        if self.high_water_mark <= 0:
            return ZERO
        return (self.high_water_mark - self.net_asset_value) / self.high_water_mark * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fund_id": self.fund_id,
            "manager_id": self.manager_id,
            "net_asset_value": str(self.net_asset_value),
            "high_water_mark": str(self.high_water_mark),
            "risk_tier": self.risk_tier,
            "status": self.status.value,
            "total_shares": str(self.total_shares),
            "exposures": {k: str(v) for k, v in self.exposures.items()},
        }


@dataclass
class FundManager:
    """A staked fund operator. The banned flag only ever goes from False to True."""
    manager_id: str
    per_fund_stake: Dict[str, Decimal] = field(default_factory=dict)
    banned: bool = False
    reputation_score: Decimal = Decimal(100)
    slash_count: int = 0
    total_slashed: Decimal = ZERO
    operations: int = 0
    rejections: int = 0
    clean_operations: int = 0

    @property
    def total_stake(self) -> Decimal:
        return sum(self.per_fund_stake.values(), ZERO)

    def stake_in(self, fund_id: str) -> Decimal:
        return self.per_fund_stake.get(fund_id, ZERO)

    def ban(self) -> None:
        self.banned = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manager_id": self.manager_id,
            "total_stake": str(self.total_stake),
            "per_fund_stake": {k: str(v) for k, v in self.per_fund_stake.items()},
            "banned": self.banned,
            "reputation_score": str(self.reputation_score),
            "slash_count": self.slash_count,
        }


class ViolationLog:
    """Timestamps of investor violations with 7-day and 30-day windows."""

    SHORT_WINDOW = timedelta(days=7)
    LONG_WINDOW = timedelta(days=30)

    def __init__(self, maxlen: int = 1000):
        self._events: Deque[datetime] = deque(maxlen=maxlen)

    def record(self, at: datetime) -> None:
        self._events.append(at)

    def count_since(self, now: datetime, window: timedelta) -> int:
        cutoff = now - window
        return sum(1 for ts in self._events if cutoff < ts <= now)

    def count_7d(self, now: datetime) -> int:
        return self.count_since(now, self.SHORT_WINDOW)

    def count_30d(self, now: datetime) -> int:
        return self.count_since(now, self.LONG_WINDOW)

    @property
    def last_violation(self) -> Optional[datetime]:
        return self._events[-1] if self._events else None

    def __len__(self) -> int:
        return len(self._events)

    def __deepcopy__(self, memo):
        clone = ViolationLog(maxlen=self._events.maxlen)
        clone._events.extend(self._events)
        return clone


@dataclass(frozen=True)
class BehaviorMetrics:
    """
    Investor behavioral metrics.

    wbr, dvr are ratios in [0, 1]; lri is an index in [0, 100];
    intent_probability is on the 0-100 scale.
    """
    wbr: Decimal = ZERO
    dvr: Decimal = ZERO
    lri: Decimal = ZERO
    intent_probability: Decimal = ZERO
    violations_7d: int = 0
    violations_30d: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wbr": str(self.wbr),
            "dvr": str(self.dvr),
            "lri": str(self.lri),
            "intent_probability": str(self.intent_probability),
            "violations_7d": self.violations_7d,
            "violations_30d": self.violations_30d,
        }


@dataclass
class Investor:
    investor_id: str
    state: InvestorState = InvestorState.ACTIVE
    state_changed_at: datetime = field(default_factory=datetime.now)
    violations: ViolationLog = field(default_factory=ViolationLog)
    metrics: BehaviorMetrics = field(default_factory=BehaviorMetrics)
    shares: Dict[str, Decimal] = field(default_factory=dict)  # fund_id -> shares
    high_risk_withdrawal_used: bool = False

    def shares_in(self, fund_id: str) -> Decimal:
        return self.shares.get(fund_id, ZERO)

    def record_violation(self, at: datetime) -> None:
        self.violations.record(at)

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now()
        return {
            "investor_id": self.investor_id,
            "state": self.state.value,
            "state_changed_at": self.state_changed_at.isoformat(),
            "violations_7d": self.violations.count_7d(now),
            "violations_30d": self.violations.count_30d(now),
            "metrics": self.metrics.to_dict(),
            "shares": {k: str(v) for k, v in self.shares.items()},
            "high_risk_withdrawal_used": self.high_risk_withdrawal_used,
        }


@dataclass(frozen=True)
class SlashingEvent:
    """Immutable record of an executed slash. burn + compensation == slash."""
    fund_id: str
    manager_id: str
    fault_index: int
    slash_amount: Decimal
    burn_amount: Decimal
    compensation_amount: Decimal
    timestamp: datetime
    config_version: int
    banned: bool = False
    binding_cap: str = "base"

    def __post_init__(self):
        if self.burn_amount + self.compensation_amount != self.slash_amount:
            raise ValueError(
                f"Slash conservation violated: {self.burn_amount} + "
                f"{self.compensation_amount} != {self.slash_amount}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fund_id": self.fund_id,
            "manager_id": self.manager_id,
            "fault_index": self.fault_index,
            "slash_amount": str(self.slash_amount),
            "burn_amount": str(self.burn_amount),
            "compensation_amount": str(self.compensation_amount),
            "timestamp": self.timestamp.isoformat(),
            "config_version": self.config_version,
            "banned": self.banned,
            "binding_cap": self.binding_cap,
        }


@dataclass
class Operation:
    """
    A proposed fund operation.

    Trades are submitted by the fund manager; deposits and withdrawals by an
    investor. `amount` is USD notional. For trades, `realized_pnl_usd` is the
    NAV change the trade commits and `fund_loss_usd` the realized loss used to
    cap a slash.
    """
    kind: OperationKind
    fund_id: str
    caller_id: str
    amount: Decimal
    investor_id: Optional[str] = None
    asset: Optional[str] = None
    session_id: Optional[str] = None
    execution_price: Optional[Decimal] = None
    realized_pnl_usd: Decimal = ZERO
    fund_loss_usd: Decimal = ZERO
    intent_probability: Decimal = ZERO
    confirmed_fraud: bool = False
    systemic_risk: bool = False
    requires_bridge: bool = False
    timestamp: float = field(default_factory=time.time)
    operation_id: Optional[str] = None

    def __post_init__(self):
        for name in ("amount", "realized_pnl_usd", "fund_loss_usd", "intent_probability"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                setattr(self, name, Decimal(str(value)))
        if self.execution_price is not None and not isinstance(self.execution_price, Decimal):
            self.execution_price = Decimal(str(self.execution_price))
        if self.operation_id is None:
            content = f"{self.kind.value}:{self.fund_id}:{self.caller_id}:{self.amount}:{self.timestamp}"
            self.operation_id = hashlib.sha256(content.encode()).hexdigest()[:16]

    @property
    def subject_investor_id(self) -> Optional[str]:
        if self.kind == OperationKind.TRADE:
            return None
        return self.investor_id or self.caller_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind.value,
            "fund_id": self.fund_id,
            "caller_id": self.caller_id,
            "investor_id": self.subject_investor_id,
            "amount": str(self.amount),
            "asset": self.asset,
            "execution_price": str(self.execution_price) if self.execution_price is not None else None,
            "realized_pnl_usd": str(self.realized_pnl_usd),
            "fund_loss_usd": str(self.fund_loss_usd),
            "intent_probability": str(self.intent_probability),
            "confirmed_fraud": self.confirmed_fraud,
            "systemic_risk": self.systemic_risk,
        }
