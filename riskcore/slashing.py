# riskcore/slashing.py
"""
Slashing Engine - converts a Fault Index into a bounded stake confiscation.

Step 1: piecewise-linear slash ratio from FI
Step 2: slash = min(stake * ratio, alpha * loss_usd / toss_price, manager_total_stake)
Step 3: burn = slash * (100 - gamma) / 100, compensation = slash - burn
Step 4: FI >= ban threshold -> manager banned, permanently

compute_slash() is pure. SlashingEngine.apply() mutates the manager record and
hand_off() routes burn/compensation to the ledgers; the pipeline wraps both in
a transaction so they commit together with any state transition. Each ledger
step registers its reversal on that transaction as soon as it succeeds.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Tuple

from .config import RiskConfig
from .interfaces import FundLedger, TokenLedger
from .models import FundManager, SlashingEvent, ZERO
from .transaction import StateTransaction
from .validation import PreconditionError

logger = logging.getLogger(__name__)


HUNDRED = Decimal(100)

# Amounts are fixed-point with this many decimal places
AMOUNT_QUANTUM = Decimal("0.000001")

# (fi_from, fi_to, ratio_from_pct, ratio_to_pct); the first segment starts at
# the configured min_slashing_fi
_SEGMENTS: Tuple[Tuple[int, int, Decimal, Decimal], ...] = (
    (60, 85, Decimal(10), Decimal(50)),
    (85, 100, Decimal(50), Decimal(100)),
)
_FIRST_SEGMENT_END = 60
_FIRST_SEGMENT_RATIOS = (Decimal(1), Decimal(10))


def _quantize(amount: Decimal) -> Decimal:
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def _lerp(fi: Decimal, fi_lo: Decimal, fi_hi: Decimal, r_lo: Decimal, r_hi: Decimal) -> Decimal:
    if fi_hi == fi_lo:
        return r_hi
    return r_lo + (fi - fi_lo) / (fi_hi - fi_lo) * (r_hi - r_lo)


def slash_ratio(fault_index: int, config: RiskConfig) -> Decimal:
    """
    Slash ratio in percent (0-100) for a fault index.

        FI < min_slashing_fi  -> 0
        min_slashing_fi..60   -> 1%..10%
        60..85                -> 10%..50%
        85..100               -> 50%..100%
    """
    fi = Decimal(fault_index)
    if fi < config.min_slashing_fi:
        return ZERO

    if fi <= _FIRST_SEGMENT_END:
        ratio = _lerp(
            fi,
            Decimal(config.min_slashing_fi),
            Decimal(_FIRST_SEGMENT_END),
            *_FIRST_SEGMENT_RATIOS,
        )
    else:
        ratio = HUNDRED
        for fi_lo, fi_hi, r_lo, r_hi in _SEGMENTS:
            if fi <= fi_hi:
                ratio = _lerp(fi, Decimal(fi_lo), Decimal(fi_hi), r_lo, r_hi)
                break

    return max(ZERO, min(HUNDRED, ratio))


@dataclass(frozen=True)
class SlashComputation:
    """Full input/output of one slash calculation, kept for replay."""
    fault_index: int
    ratio_pct: Decimal
    base_amount: Decimal
    loss_cap: Decimal
    total_cap: Decimal
    slash_amount: Decimal
    burn_amount: Decimal
    compensation_amount: Decimal
    ban: bool
    binding_cap: str
    config_version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fault_index": self.fault_index,
            "ratio_pct": str(self.ratio_pct),
            "base_amount": str(self.base_amount),
            "loss_cap": str(self.loss_cap),
            "total_cap": str(self.total_cap),
            "slash_amount": str(self.slash_amount),
            "burn_amount": str(self.burn_amount),
            "compensation_amount": str(self.compensation_amount),
            "ban": self.ban,
            "binding_cap": self.binding_cap,
            "config_version": self.config_version,
        }


def _as_amount(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise PreconditionError(f"{name} must be numeric, got {value!r}")
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if not amount.is_finite() or amount < 0:
        raise PreconditionError(f"{name} must be a non-negative finite number, got {value}")
    return amount


def compute_slash(
    stake: Any,
    fault_index: int,
    fund_loss_usd: Any,
    manager_total_stake: Any,
    toss_price: Any,
    config: RiskConfig,
) -> SlashComputation:
    """
    Compute slash, burn and compensation amounts.

    Never raises for valid numeric input; a zero slash is a valid result.
    """
    if not isinstance(config, RiskConfig):
        raise PreconditionError("config must be a RiskConfig snapshot")
    if isinstance(fault_index, bool) or not isinstance(fault_index, int) or not 0 <= fault_index <= 100:
        raise PreconditionError(f"fault_index must be an integer in [0, 100], got {fault_index!r}")

    stake_d = _as_amount(stake, "stake")
    loss_d = _as_amount(fund_loss_usd, "fund_loss_usd")
    total_d = _as_amount(manager_total_stake, "manager_total_stake")
    price_d = _as_amount(toss_price, "toss_price")
    if price_d == 0:
        raise PreconditionError("toss_price must be positive")

    ratio = slash_ratio(fault_index, config)
    base = _quantize(stake_d * ratio / HUNDRED)
    loss_cap = _quantize(config.alpha * loss_d / price_d)
    total_cap = _quantize(total_d)

    candidates = (("base", base), ("loss_cap", loss_cap), ("total_cap", total_cap))
    binding_cap, slash_amount = min(candidates, key=lambda item: item[1])

    burn = _quantize(slash_amount * (HUNDRED - Decimal(config.gamma)) / HUNDRED)
    compensation = slash_amount - burn

    return SlashComputation(
        fault_index=fault_index,
        ratio_pct=ratio,
        base_amount=base,
        loss_cap=loss_cap,
        total_cap=total_cap,
        slash_amount=slash_amount,
        burn_amount=burn,
        compensation_amount=compensation,
        ban=fault_index >= config.ban_threshold_fi,
        binding_cap=binding_cap,
        config_version=config.version,
    )


class SlashingEngine:
    """
    Applies computed slashes to manager records and routes the proceeds.

    Burn goes to the token ledger; compensation goes to the compensation pool
    and is credited to the fund's NAV through the fund ledger.
    """

    def __init__(self, token_ledger: TokenLedger, fund_ledger: FundLedger):
        self.token_ledger = token_ledger
        self.fund_ledger = fund_ledger
        self._events: List[SlashingEvent] = []

    def preview(
        self,
        manager: FundManager,
        fund_id: str,
        fault_index: int,
        fund_loss_usd: Decimal,
        toss_price: Decimal,
        config: RiskConfig,
    ) -> SlashComputation:
        return compute_slash(
            stake=manager.stake_in(fund_id),
            fault_index=fault_index,
            fund_loss_usd=fund_loss_usd,
            manager_total_stake=manager.total_stake,
            toss_price=toss_price,
            config=config,
        )

    def apply(
        self,
        manager: FundManager,
        fund_id: str,
        computation: SlashComputation,
        now: Optional[datetime] = None,
    ) -> SlashingEvent:
        """
        Mutate the manager record for a computed slash.

        Deducts from the fund's stake first, then from the manager's other
        funds in id order, so total_stake always drops by exactly the slash.
        """
        remaining = computation.slash_amount
        order = [fund_id] + sorted(f for f in manager.per_fund_stake if f != fund_id)
        for fid in order:
            if remaining <= 0:
                break
            available = manager.per_fund_stake.get(fid, ZERO)
            taken = min(available, remaining)
            if taken > 0:
                manager.per_fund_stake[fid] = available - taken
                remaining -= taken

        if computation.slash_amount > 0:
            manager.slash_count += 1
            manager.total_slashed += computation.slash_amount

        if computation.ban and not manager.banned:
            manager.ban()
            logger.critical(
                f"[SLASHING] Manager {manager.manager_id} BANNED "
                f"(FI={computation.fault_index}, config v{computation.config_version})"
            )

        event = SlashingEvent(
            fund_id=fund_id,
            manager_id=manager.manager_id,
            fault_index=computation.fault_index,
            slash_amount=computation.slash_amount,
            burn_amount=computation.burn_amount,
            compensation_amount=computation.compensation_amount,
            timestamp=now or datetime.now(),
            config_version=computation.config_version,
            banned=manager.banned,
            binding_cap=computation.binding_cap,
        )
        return event

    def hand_off(self, event: SlashingEvent, tx: Optional[StateTransaction] = None) -> None:
        """
        Route burn and compensation to the collaborators.

        With a transaction, every completed ledger step is undone if the
        transaction rolls back, so a failure part-way leaves no partial slash.
        """
        manager_id, fund_id = event.manager_id, event.fund_id
        burn, compensation = event.burn_amount, event.compensation_amount

        if burn > 0:
            self.token_ledger.burn(manager_id, burn)
            if tx is not None:
                tx.on_rollback(lambda: self.token_ledger.reverse_burn(manager_id, burn))
        if compensation > 0:
            self.token_ledger.transfer_to_compensation_pool(compensation)
            if tx is not None:
                tx.on_rollback(lambda: self.token_ledger.withdraw_from_compensation_pool(compensation))
            self.fund_ledger.apply_compensation(fund_id, compensation)
            if tx is not None:
                tx.on_rollback(lambda: self.fund_ledger.reverse_compensation(fund_id, compensation))
        self.fund_ledger.mark_dirty(event.fund_id)

        logger.warning(
            f"[SLASHING] Executed on {event.manager_id}/{event.fund_id}: "
            f"slash={event.slash_amount} burn={event.burn_amount} "
            f"compensation={event.compensation_amount} (FI={event.fault_index})"
        )

    def record(self, event: SlashingEvent) -> None:
        """Append to the in-process event history once the commit succeeded."""
        self._events.append(event)

    @property
    def events(self) -> List[SlashingEvent]:
        return list(self._events)
