# riskcore/behavior.py
"""
Investor Score Calculator - behavioral metrics from an activity ledger.

- WBR (Withdraw Behavior Ratio): withdrawn / (deposited + withdrawn) over 30d
- DVR (Deposit Velocity Ratio): deposits in the last 24h / allowed daily count
- LRI (Loss Reaction Index): share of 30d withdrawal volume made within 24h
  of a fund loss, 0-100
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Deque, Iterable, Optional

from .models import BehaviorMetrics, ZERO


class ActivityKind(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass(frozen=True)
class ActivityRecord:
    kind: ActivityKind
    amount: Decimal
    at: datetime
    after_loss: bool = False  # Withdrawal placed within 24h of a fund loss


class ActivityLedger:
    """Bounded history of one investor's deposits and withdrawals."""

    def __init__(self, maxlen: int = 5000):
        self._records: Deque[ActivityRecord] = deque(maxlen=maxlen)

    def add(self, record: ActivityRecord) -> None:
        self._records.append(record)

    def since(self, cutoff: datetime, until: Optional[datetime] = None) -> Iterable[ActivityRecord]:
        return [r for r in self._records if cutoff < r.at and (until is None or r.at <= until)]

    def __len__(self) -> int:
        return len(self._records)


class InvestorScoreCalculator:
    """Computes bounded behavioral ratios for an investor."""

    WINDOW = timedelta(days=30)
    VELOCITY_WINDOW = timedelta(hours=24)

    def __init__(self, max_daily_deposits: int = 10):
        self.max_daily_deposits = max_daily_deposits

    def compute(
        self,
        ledger: ActivityLedger,
        now: datetime,
        intent_probability: Decimal = ZERO,
        violations_7d: int = 0,
        violations_30d: int = 0,
    ) -> BehaviorMetrics:
        window = list(ledger.since(now - self.WINDOW, now))

        deposited = sum((r.amount for r in window if r.kind == ActivityKind.DEPOSIT), ZERO)
        withdrawn = sum((r.amount for r in window if r.kind == ActivityKind.WITHDRAWAL), ZERO)
        gross = deposited + withdrawn
        wbr = withdrawn / gross if gross > 0 else ZERO

        recent_deposits = sum(
            1 for r in window
            if r.kind == ActivityKind.DEPOSIT and r.at > now - self.VELOCITY_WINDOW
        )
        dvr = min(Decimal(1), Decimal(recent_deposits) / Decimal(self.max_daily_deposits))

        reactive = sum(
            (r.amount for r in window if r.kind == ActivityKind.WITHDRAWAL and r.after_loss),
            ZERO,
        )
        lri = reactive / withdrawn * 100 if withdrawn > 0 else ZERO

        return BehaviorMetrics(
            wbr=_round(wbr),
            dvr=_round(dvr),
            lri=_round(lri),
            intent_probability=intent_probability,
            violations_7d=violations_7d,
            violations_30d=violations_30d,
        )


def _round(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.0001"))
