# riskcore/interfaces.py
"""
Interfaces of the external collaborators this core talks to.

The core never implements a ledger, an oracle or a registry; the host
supplies objects that satisfy these protocols.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Protocol, runtime_checkable

from .models import BehaviorMetrics, InvestorState


@dataclass(frozen=True)
class PriceReading:
    price: Decimal
    confidence: Decimal  # 0-100
    age_seconds: float


@runtime_checkable
class PriceOracle(Protocol):
    def get_price(self, asset: str) -> PriceReading:
        """Return the latest reading; raise if the feed is unavailable."""
        ...


@runtime_checkable
class TokenLedger(Protocol):
    def burn(self, manager_id: str, amount: Decimal) -> None:
        ...

    def transfer_to_compensation_pool(self, amount: Decimal) -> None:
        ...

    # Undo steps, called only while a failed slash is rolled back

    def reverse_burn(self, manager_id: str, amount: Decimal) -> None:
        ...

    def withdraw_from_compensation_pool(self, amount: Decimal) -> None:
        ...


@runtime_checkable
class FundLedger(Protocol):
    def get_nav(self, fund_id: str) -> Decimal:
        ...

    def apply_compensation(self, fund_id: str, amount: Decimal) -> None:
        ...

    def reverse_compensation(self, fund_id: str, amount: Decimal) -> None:
        ...

    def mark_dirty(self, fund_id: str) -> None:
        ...


@runtime_checkable
class InvestorRegistry(Protocol):
    def get_metrics(self, investor_id: str, now: Optional[datetime] = None) -> BehaviorMetrics:
        ...


@dataclass(frozen=True)
class SystemHealth:
    """Snapshot of substrate health read by the critical-safety stage."""
    sequencer_up: bool = True
    bridge_up: bool = True
    oracle_up: bool = True
    emergency_halt: bool = False

    @property
    def healthy(self) -> bool:
        return self.sequencer_up and self.oracle_up and not self.emergency_halt


# (investor_id, current_state) -> approve?
ManualReviewHook = Callable[[str, InvestorState], bool]


def deny_all_reviews(investor_id: str, state: InvestorState) -> bool:
    """Default review hook: nothing leaves FROZEN without an external approval."""
    return False
