# riskcore/investor_state.py
"""
Investor State Machine - graduated restriction of misbehaving investors.

Five states with per-state operational limits:
- ACTIVE:    full access
- LIMITED:   deposit 50%, withdrawal 25%, fund tiers <= 2
- HIGH_RISK: deposit 10%, one-time withdrawal of 50% of balance, tier 1 only
- FROZEN:    nothing
- BANNED:    nothing, terminal

Escalation is immediate on a trigger. De-escalation needs a clean period since
the last violation AND metrics under recovery bounds that are stricter than
the trigger bounds; leaving FROZEN also needs a manual-review approval.

Every move is looked up in TRANSITION_TABLE and checked against
ALLOWED_TRANSITIONS; anything else raises InvalidTransitionError.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Tuple

from .interfaces import ManualReviewHook, deny_all_reviews
from .models import BehaviorMetrics, Investor, InvestorState
from .transaction import StateTransaction
from .validation import InvalidTransitionError

logger = logging.getLogger(__name__)


class Trigger(Enum):
    """Kinds of event that can move an investor between states."""
    BEHAVIOR_ANOMALY = "behavior_anomaly"
    REPEATED_VIOLATIONS = "repeated_violations"
    INTENT_OR_SYSTEMIC = "intent_or_systemic"
    CONFIRMED_FRAUD = "confirmed_fraud"
    RECOVERY = "recovery"


S = InvestorState

ALLOWED_TRANSITIONS: Dict[InvestorState, FrozenSet[InvestorState]] = {
    S.ACTIVE: frozenset({S.LIMITED, S.HIGH_RISK, S.FROZEN, S.BANNED}),
    S.LIMITED: frozenset({S.ACTIVE, S.HIGH_RISK, S.FROZEN}),
    S.HIGH_RISK: frozenset({S.LIMITED, S.FROZEN, S.BANNED}),
    S.FROZEN: frozenset({S.HIGH_RISK, S.BANNED}),
    S.BANNED: frozenset(),
}

# (state, trigger) -> next state. LIMITED has no direct edge to BANNED, so
# confirmed fraud moves LIMITED -> HIGH_RISK and then HIGH_RISK -> BANNED.
TRANSITION_TABLE: Dict[Tuple[InvestorState, Trigger], InvestorState] = {
    (S.ACTIVE, Trigger.BEHAVIOR_ANOMALY): S.LIMITED,
    (S.ACTIVE, Trigger.REPEATED_VIOLATIONS): S.HIGH_RISK,
    (S.LIMITED, Trigger.REPEATED_VIOLATIONS): S.HIGH_RISK,
    (S.ACTIVE, Trigger.INTENT_OR_SYSTEMIC): S.FROZEN,
    (S.LIMITED, Trigger.INTENT_OR_SYSTEMIC): S.FROZEN,
    (S.HIGH_RISK, Trigger.INTENT_OR_SYSTEMIC): S.FROZEN,
    (S.ACTIVE, Trigger.CONFIRMED_FRAUD): S.BANNED,
    (S.LIMITED, Trigger.CONFIRMED_FRAUD): S.HIGH_RISK,
    (S.HIGH_RISK, Trigger.CONFIRMED_FRAUD): S.BANNED,
    (S.FROZEN, Trigger.CONFIRMED_FRAUD): S.BANNED,
    (S.LIMITED, Trigger.RECOVERY): S.ACTIVE,
    (S.HIGH_RISK, Trigger.RECOVERY): S.LIMITED,
    (S.FROZEN, Trigger.RECOVERY): S.HIGH_RISK,
}


def is_allowed(from_state: InvestorState, to_state: InvestorState) -> bool:
    return to_state in ALLOWED_TRANSITIONS[from_state]


def verify_transition_table() -> None:
    """Every table entry must be an allowed edge."""
    for (from_state, _trigger), to_state in TRANSITION_TABLE.items():
        if not is_allowed(from_state, to_state):
            raise InvalidTransitionError(from_state, to_state)


verify_transition_table()


@dataclass(frozen=True)
class StateLimits:
    """Operational limits a state imposes; enforced by stage-4 validation."""
    deposit_pct: Decimal
    withdrawal_pct: Decimal
    max_fund_tier: Optional[int]  # None = any tier
    one_time_withdrawal: bool = False

    @property
    def can_deposit(self) -> bool:
        return self.deposit_pct > 0

    @property
    def can_withdraw(self) -> bool:
        return self.withdrawal_pct > 0

    def allows_tier(self, tier: int) -> bool:
        if self.max_fund_tier is None:
            return True
        return tier <= self.max_fund_tier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deposit_pct": str(self.deposit_pct),
            "withdrawal_pct": str(self.withdrawal_pct),
            "max_fund_tier": self.max_fund_tier,
            "one_time_withdrawal": self.one_time_withdrawal,
        }


STATE_LIMITS: Dict[InvestorState, StateLimits] = {
    S.ACTIVE: StateLimits(Decimal(100), Decimal(100), None),
    S.LIMITED: StateLimits(Decimal(50), Decimal(25), 2),
    S.HIGH_RISK: StateLimits(Decimal(10), Decimal(50), 1, one_time_withdrawal=True),
    S.FROZEN: StateLimits(Decimal(0), Decimal(0), 0),
    S.BANNED: StateLimits(Decimal(0), Decimal(0), 0),
}


@dataclass(frozen=True)
class BehaviorThresholds:
    """Trigger bounds and the stricter recovery bounds (hysteresis)."""
    # Escalation
    wbr_trigger: Decimal = Decimal("0.5")
    dvr_trigger: Decimal = Decimal("0.7")
    lri_trigger: Decimal = Decimal(60)
    intent_trigger: Decimal = Decimal(80)
    violations_7d_high_risk: int = 3
    violations_30d_high_risk: int = 5

    # Recovery
    wbr_recovery: Decimal = Decimal("0.3")
    dvr_recovery: Decimal = Decimal("0.5")
    lri_recovery: Decimal = Decimal(40)
    intent_recovery: Decimal = Decimal(50)

    # Clean periods, counted from the later of the last violation and the
    # last state change
    clean_period: Dict[InvestorState, timedelta] = field(default_factory=lambda: {
        S.LIMITED: timedelta(days=30),
        S.HIGH_RISK: timedelta(days=60),
        S.FROZEN: timedelta(days=90),
    })


@dataclass(frozen=True)
class Transition:
    """One applied state change, carried in StateTransitioned audit events."""
    investor_id: str
    from_state: InvestorState
    to_state: InvestorState
    trigger: Trigger
    reason: str
    at: datetime
    metrics: BehaviorMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "investor_id": self.investor_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "trigger": self.trigger.value,
            "reason": self.reason,
            "at": self.at.isoformat(),
            "metrics": self.metrics.to_dict(),
        }


class InvestorStateMachine:
    """
    Decides and applies investor state transitions.

    plan() is pure and returns the transitions an evaluation would make;
    apply() mutates the investor record. evaluate() does both.

    Given a StateTransaction, history entries are only written once it
    commits; a rolled-back move never shows up in get_history().
    """

    def __init__(
        self,
        thresholds: Optional[BehaviorThresholds] = None,
        review_hook: Optional[ManualReviewHook] = None,
    ):
        self.thresholds = thresholds or BehaviorThresholds()
        self.review_hook = review_hook or deny_all_reviews
        self._history: Deque[Dict[str, Any]] = deque(maxlen=1000)

    # ========================================================================
    # Public API
    # ========================================================================

    @staticmethod
    def limits_for(state: InvestorState) -> StateLimits:
        return STATE_LIMITS[state]

    def plan(
        self,
        investor: Investor,
        metrics: BehaviorMetrics,
        now: datetime,
        systemic_risk: bool = False,
        confirmed_fraud: bool = False,
    ) -> List[Transition]:
        """Work out the transitions for one behavioral re-scoring, without applying them."""
        transitions: List[Transition] = []
        state = investor.state

        trigger, reason = self._decide(investor, state, metrics, now, systemic_risk, confirmed_fraud)
        while trigger is not None:
            to_state = TRANSITION_TABLE.get((state, trigger))
            if to_state is None:
                break
            if not is_allowed(state, to_state):
                raise InvalidTransitionError(state, to_state)
            transitions.append(Transition(
                investor_id=investor.investor_id,
                from_state=state,
                to_state=to_state,
                trigger=trigger,
                reason=reason,
                at=now,
                metrics=metrics,
            ))
            state = to_state
            # Only fraud keeps moving within one evaluation (LIMITED -> HIGH_RISK -> BANNED)
            if trigger != Trigger.CONFIRMED_FRAUD or state == S.BANNED:
                break

        return transitions

    def apply(
        self,
        investor: Investor,
        transitions: List[Transition],
        tx: Optional[StateTransaction] = None,
    ) -> None:
        for transition in transitions:
            self.transition(
                investor, transition.to_state, transition.trigger, transition.reason, transition.at, tx=tx,
            )
        if transitions:
            investor.metrics = transitions[-1].metrics

    def evaluate(
        self,
        investor: Investor,
        metrics: BehaviorMetrics,
        now: datetime,
        systemic_risk: bool = False,
        confirmed_fraud: bool = False,
        tx: Optional[StateTransaction] = None,
    ) -> List[Transition]:
        transitions = self.plan(investor, metrics, now, systemic_risk, confirmed_fraud)
        self.apply(investor, transitions, tx=tx)
        investor.metrics = metrics
        return transitions

    def transition(
        self,
        investor: Investor,
        to_state: InvestorState,
        trigger: Trigger,
        reason: str,
        now: datetime,
        tx: Optional[StateTransaction] = None,
    ) -> None:
        """Move an investor along one allowed edge."""
        from_state = investor.state
        if not is_allowed(from_state, to_state):
            logger.error(
                f"[STATE] Rejected edge {from_state.value} -> {to_state.value} "
                f"for investor {investor.investor_id}"
            )
            raise InvalidTransitionError(from_state, to_state)

        investor.state = to_state
        investor.state_changed_at = now
        if to_state == S.HIGH_RISK:
            investor.high_risk_withdrawal_used = False

        entry = {
            "timestamp": now.isoformat(),
            "investor_id": investor.investor_id,
            "from": from_state.value,
            "to": to_state.value,
            "trigger": trigger.value,
            "reason": reason,
        }
        if tx is None:
            self._history.append(entry)
        else:
            tx.on_commit(lambda: self._history.append(entry))

        if trigger == Trigger.RECOVERY:
            logger.info(
                f"[STATE] DE-ESCALATION {investor.investor_id}: "
                f"{from_state.value} -> {to_state.value} | {reason}"
            )
        else:
            log = logger.critical if to_state == S.BANNED else logger.warning
            log(
                f"[STATE] ESCALATION {investor.investor_id}: "
                f"{from_state.value} -> {to_state.value} | {reason}"
            )

    def recovery_blockers(self, investor: Investor, metrics: BehaviorMetrics, now: datetime) -> List[str]:
        """Reasons the investor cannot de-escalate right now (empty = eligible)."""
        state = investor.state
        if state in (S.ACTIVE, S.BANNED):
            return [f"No recovery path from {state.value}"]

        blockers: List[str] = []
        required = self.thresholds.clean_period[state]
        elapsed = now - self._clean_since(investor)
        if elapsed < required:
            remaining = required - elapsed
            blockers.append(f"Clean period: {remaining.days}d {remaining.seconds // 3600}h remaining")

        blockers.extend(self._metrics_above_recovery(metrics))

        if not blockers and state == S.FROZEN and not self.review_hook(investor.investor_id, state):
            blockers.append("Manual review not approved")

        return blockers

    def get_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        return list(self._history)[-limit:]

    # ========================================================================
    # Internal Methods
    # ========================================================================

    def _decide(
        self,
        investor: Investor,
        state: InvestorState,
        metrics: BehaviorMetrics,
        now: datetime,
        systemic_risk: bool,
        confirmed_fraud: bool,
    ) -> Tuple[Optional[Trigger], str]:
        """Pick the single strongest applicable trigger."""
        t = self.thresholds

        if state == S.BANNED:
            return None, ""

        if confirmed_fraud:
            return Trigger.CONFIRMED_FRAUD, "Confirmed fraud"

        if metrics.intent_probability > t.intent_trigger or systemic_risk:
            if state == S.FROZEN:
                return None, ""
            reason = (
                "Systemic risk flag" if systemic_risk
                else f"Intent probability {metrics.intent_probability} > {t.intent_trigger}"
            )
            return Trigger.INTENT_OR_SYSTEMIC, reason

        if (metrics.violations_7d >= t.violations_7d_high_risk
                or metrics.violations_30d >= t.violations_30d_high_risk):
            if state in (S.ACTIVE, S.LIMITED):
                return Trigger.REPEATED_VIOLATIONS, (
                    f"Violations 7d={metrics.violations_7d}, 30d={metrics.violations_30d}"
                )
            return None, ""

        anomalies = self._metrics_above_trigger(metrics)
        if anomalies:
            if state == S.ACTIVE:
                return Trigger.BEHAVIOR_ANOMALY, "; ".join(anomalies)
            return None, ""

        if state != S.ACTIVE and not self.recovery_blockers(investor, metrics, now):
            return Trigger.RECOVERY, "Clean period elapsed and metrics under recovery bounds"

        return None, ""

    def _metrics_above_trigger(self, m: BehaviorMetrics) -> List[str]:
        t = self.thresholds
        found = []
        if m.wbr > t.wbr_trigger:
            found.append(f"WBR {m.wbr} > {t.wbr_trigger}")
        if m.dvr > t.dvr_trigger:
            found.append(f"DVR {m.dvr} > {t.dvr_trigger}")
        if m.lri > t.lri_trigger:
            found.append(f"LRI {m.lri} > {t.lri_trigger}")
        if m.violations_7d > 0:
            found.append(f"{m.violations_7d} violation(s) in last 7d")
        return found

    def _metrics_above_recovery(self, m: BehaviorMetrics) -> List[str]:
        t = self.thresholds
        found = []
        if m.wbr >= t.wbr_recovery:
            found.append(f"WBR {m.wbr} >= recovery bound {t.wbr_recovery}")
        if m.dvr >= t.dvr_recovery:
            found.append(f"DVR {m.dvr} >= recovery bound {t.dvr_recovery}")
        if m.lri >= t.lri_recovery:
            found.append(f"LRI {m.lri} >= recovery bound {t.lri_recovery}")
        if m.intent_probability >= t.intent_recovery:
            found.append(f"Intent {m.intent_probability} >= recovery bound {t.intent_recovery}")
        if m.violations_7d > 0:
            found.append(f"{m.violations_7d} violation(s) in last 7d")
        return found

    @staticmethod
    def _clean_since(investor: Investor) -> datetime:
        last = investor.violations.last_violation
        if last is None or last < investor.state_changed_at:
            return investor.state_changed_at
        return last
