"""
Unit tests for investor behavioral metrics and manager reputation
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from riskcore.behavior import ActivityKind, ActivityLedger, ActivityRecord, InvestorScoreCalculator
from riskcore.models import FundManager
from riskcore.reputation import record_outcome, recompute_reputation

NOW = datetime(2026, 3, 1, 12, 0, 0)


def deposit(amount, hours_ago=1):
    return ActivityRecord(ActivityKind.DEPOSIT, Decimal(amount), NOW - timedelta(hours=hours_ago))


def withdrawal(amount, hours_ago=1, after_loss=False):
    return ActivityRecord(ActivityKind.WITHDRAWAL, Decimal(amount), NOW - timedelta(hours=hours_ago), after_loss)


@pytest.fixture
def calculator():
    return InvestorScoreCalculator(max_daily_deposits=10)


@pytest.fixture
def ledger():
    return ActivityLedger()


class TestInvestorScoreCalculator:

    def test_empty_ledger_is_clean(self, calculator, ledger):
        metrics = calculator.compute(ledger, NOW)
        assert metrics.wbr == 0
        assert metrics.dvr == 0
        assert metrics.lri == 0

    def test_withdraw_behavior_ratio(self, calculator, ledger):
        ledger.add(deposit(1000, hours_ago=48))
        ledger.add(withdrawal(1500))

        metrics = calculator.compute(ledger, NOW)
        assert metrics.wbr == Decimal("0.6")

    def test_activity_outside_window_ignored(self, calculator, ledger):
        ledger.add(withdrawal(5000, hours_ago=24 * 31))
        ledger.add(deposit(1000))

        assert calculator.compute(ledger, NOW).wbr == 0

    def test_future_activity_ignored(self, calculator, ledger):
        ledger.add(withdrawal(5000, hours_ago=-1))
        assert calculator.compute(ledger, NOW).wbr == 0

    def test_deposit_velocity(self, calculator, ledger):
        for _ in range(7):
            ledger.add(deposit(10))
        assert calculator.compute(ledger, NOW).dvr == Decimal("0.7")

    def test_deposit_velocity_is_capped(self, calculator, ledger):
        for _ in range(15):
            ledger.add(deposit(10))
        assert calculator.compute(ledger, NOW).dvr == 1

    def test_velocity_only_counts_last_day(self, calculator, ledger):
        for _ in range(9):
            ledger.add(deposit(10, hours_ago=30))
        ledger.add(deposit(10))
        assert calculator.compute(ledger, NOW).dvr == Decimal("0.1")

    def test_loss_reaction_index(self, calculator, ledger):
        ledger.add(withdrawal(100, after_loss=True))
        ledger.add(withdrawal(300, hours_ago=72))

        assert calculator.compute(ledger, NOW).lri == Decimal(25)

    def test_passes_through_intent_and_violations(self, calculator, ledger):
        metrics = calculator.compute(ledger, NOW, intent_probability=Decimal(42), violations_7d=1, violations_30d=2)
        assert metrics.intent_probability == 42
        assert metrics.violations_7d == 1
        assert metrics.violations_30d == 2

    def test_ratios_are_quantized(self, calculator, ledger):
        ledger.add(deposit(2))
        ledger.add(withdrawal(1))
        assert calculator.compute(ledger, NOW).wbr == Decimal("0.3333")


class TestReputation:

    def test_new_manager_starts_at_100(self):
        manager = FundManager("fm-1")
        assert recompute_reputation(manager) == 100

    def test_slash_penalty_before_min_operations(self):
        manager = FundManager("fm-1", slash_count=2)
        assert recompute_reputation(manager) == 70

    def test_slash_penalty_is_capped(self):
        manager = FundManager("fm-1", slash_count=10)
        assert recompute_reputation(manager) == 40

    def test_rejection_rate_and_clean_bonus(self):
        manager = FundManager("fm-1", operations=10, rejections=5, clean_operations=4)
        # 100 - 0.5 * 40 + 4 * 0.5
        assert recompute_reputation(manager) == Decimal("82.00")

    def test_score_clamped_to_100(self):
        manager = FundManager("fm-1", operations=100, clean_operations=100)
        assert recompute_reputation(manager) == 100

    def test_banned_manager_scores_zero(self):
        manager = FundManager("fm-1")
        manager.ban()
        assert recompute_reputation(manager) == 0

    def test_record_outcome_counts(self):
        manager = FundManager("fm-1")
        record_outcome(manager, approved=True, clean=True)
        record_outcome(manager, approved=False, clean=False)
        record_outcome(manager, approved=True, clean=False)

        assert manager.operations == 3
        assert manager.rejections == 1
        assert manager.clean_operations == 1
