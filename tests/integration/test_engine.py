# tests/integration/test_engine.py
"""
RiskEngine integration tests

Covers:
- Behavioral re-scoring and manual review for FROZEN investors
- Breaker halt with raise_on_halt and audit of breaker changes
- Governance config publishing
- Previews and status
- File-backed audit trail
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from riskcore.config import RiskConfig
from riskcore.models import InvestorState, Operation, OperationKind
from riskcore.validation import CircuitHaltedError, PreconditionError
from riskops.audit_logger import AuditLogger, EventType as AuditEventType
from riskops.config import Settings
from riskops.engine import RiskEngine
from riskops.event_bus import EventType as BusEventType
from riskops.memory import StaticPriceOracle


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    engine = RiskEngine(
        settings=Settings(_env_file=None, audit_enabled=False),
        oracle=StaticPriceOracle({"TOSS": 1, "ETH": 2000}),
        audit=AuditLogger(),
        clock=clock,
    )
    engine.register_fund("f1", "fm", nav=Decimal(100000), risk_tier=1, stake=Decimal(10000))
    engine.register_investor("inv-1")
    return engine


# =============================================================================
# ENTITIES
# =============================================================================

class TestRegistration:

    def test_fund_starts_at_unit_share_price(self, engine):
        fund = engine.store.funds.get("f1")
        assert fund.total_shares == Decimal(100000)
        assert fund.share_price == Decimal(1)
        assert engine.store.managers.get("fm").stake_in("f1") == Decimal(10000)

    def test_duplicate_fund(self, engine):
        with pytest.raises(PreconditionError):
            engine.register_fund("f1", "other")

    def test_register_investor_is_idempotent(self, engine):
        first = engine.store.investors.get("inv-1")
        assert engine.register_investor("inv-1") is first

    def test_manager_stake_accumulates_across_funds(self, engine):
        engine.register_fund("f2", "fm", nav=Decimal(5000), stake=Decimal(500))
        assert engine.store.managers.get("fm").total_stake == Decimal(10500)


# =============================================================================
# RE-SCORING AND REVIEW
# =============================================================================

class TestReview:

    def test_frozen_needs_review_after_clean_period(self, engine, clock):
        transitions = engine.rescore_investor("inv-1", systemic_risk=True)
        assert [t.to_state for t in transitions] == [InvestorState.FROZEN]

        clock.advance(days=91)
        assert engine.rescore_investor("inv-1") == []
        assert engine.store.investors.get("inv-1").state == InvestorState.FROZEN

        transitions = engine.approve_review("inv-1", reviewer="compliance")
        assert [t.to_state for t in transitions] == [InvestorState.HIGH_RISK]
        assert engine.store.investors.get("inv-1").state == InvestorState.HIGH_RISK
        # Approval is consumed once the investor leaves FROZEN
        assert "inv-1" not in engine._approved_reviews

    def test_review_before_clean_period_is_kept(self, engine, clock):
        engine.rescore_investor("inv-1", systemic_risk=True)
        clock.advance(days=10)

        assert engine.approve_review("inv-1", reviewer="compliance") == []
        assert "inv-1" in engine._approved_reviews

        clock.advance(days=85)
        transitions = engine.rescore_investor("inv-1")
        assert [t.to_state for t in transitions] == [InvestorState.HIGH_RISK]

    def test_review_is_audited_and_published(self, engine, clock):
        engine.rescore_investor("inv-1", systemic_risk=True)
        clock.advance(days=91)
        engine.approve_review("inv-1", reviewer="compliance")

        reviews = engine.audit.query(event_types=[AuditEventType.REVIEW_APPROVED])
        assert reviews[0].actor_id == "compliance"
        assert reviews[0].entity_id == "inv-1"

        transitions = engine.audit.query(event_types=[AuditEventType.STATE_TRANSITIONED])
        assert len(transitions) == 2

        published = engine.bus.get_history(BusEventType.STATE_TRANSITIONED)
        assert [e.data["transition"]["to_state"] for e in published] == ["frozen", "high_risk"]
        assert len(engine.bus.get_history(BusEventType.REVIEW_APPROVED)) == 1

    def test_review_of_unknown_investor(self, engine):
        with pytest.raises(KeyError):
            engine.approve_review("ghost", reviewer="compliance")

    def test_rescore_unknown_investor(self, engine):
        assert engine.rescore_investor("ghost") == []

    def test_fraud_from_limited_bans_in_two_steps(self, engine):
        engine.store.investors.get("inv-1").state = InvestorState.LIMITED

        transitions = engine.rescore_investor("inv-1", confirmed_fraud=True)
        assert [t.to_state for t in transitions] == [InvestorState.HIGH_RISK, InvestorState.BANNED]


# =============================================================================
# BREAKER
# =============================================================================

class TestBreaker:

    def test_raise_on_halt(self, engine):
        engine.breaker.trip("manual drill")
        op = Operation(OperationKind.DEPOSIT, "f1", "inv-1", Decimal(100))

        with pytest.raises(CircuitHaltedError):
            engine.submit(op, raise_on_halt=True)

        outcome = engine.submit(op)
        assert not outcome.approved

    def test_breaker_changes_are_audited(self, engine):
        engine.breaker.trip("manual drill")
        assert engine.reset_breaker("ops")

        assert len(engine.audit.query(event_types=[AuditEventType.CIRCUIT_HALTED])) == 1
        reset = engine.audit.query(event_types=[AuditEventType.CIRCUIT_RESET])
        assert reset[0].data["to"] == "green"
        assert len(engine.bus.get_history(BusEventType.CIRCUIT_HALTED)) == 1

    def test_reset_when_not_halted(self, engine):
        assert engine.reset_breaker("ops") is False


# =============================================================================
# GOVERNANCE
# =============================================================================

class TestGovernance:

    def test_publish_config(self, engine):
        engine.publish_config(RiskConfig(version=2, gamma=60), actor="dao")

        assert engine.config_provider.current().gamma == 60
        events = engine.audit.query(event_types=[AuditEventType.CONFIG_PUBLISHED])
        assert events[0].config_version == 2
        assert events[0].actor_id == "dao"
        assert len(engine.bus.get_history(BusEventType.CONFIG_PUBLISHED)) == 1

    def test_stale_version_rejected(self, engine):
        engine.publish_config(RiskConfig(version=2))
        with pytest.raises(PreconditionError):
            engine.publish_config(RiskConfig(version=2))

    def test_old_versions_stay_readable(self, engine):
        engine.publish_config(RiskConfig(version=2, gamma=60))
        assert engine.config_provider.get(1).gamma == 80


# =============================================================================
# PREVIEWS AND STATUS
# =============================================================================

class TestPreviews:

    def test_preview_fault_index(self, engine):
        preview = engine.preview_fault_index(50, 50, 50, 50)
        assert preview["fault_index"] == 50
        assert preview["band"] == "slashing"
        assert preview["config_version"] == 1

    def test_preview_against_older_version(self, engine):
        engine.publish_config(RiskConfig(version=2, min_slashing_fi=50))
        assert engine.preview_fault_index(40, 40, 40, 40)["band"] == "warning"
        assert engine.preview_fault_index(40, 40, 40, 40, version=1)["band"] == "slashing"

    def test_preview_slash(self, engine):
        computation = engine.preview_slash(
            stake=Decimal(10000),
            fault_index=50,
            fund_loss_usd=Decimal(5000),
            manager_total_stake=Decimal(10000),
        )
        assert computation.slash_amount == Decimal(700)
        assert computation.burn_amount == Decimal(140)

    def test_preview_changes_nothing(self, engine):
        engine.preview_slash(Decimal(10000), 95, Decimal(50000), Decimal(10000))
        assert engine.store.managers.get("fm").stake_in("f1") == Decimal(10000)
        assert engine.token_ledger.total_burned == 0

    def test_status(self, engine):
        engine.submit(Operation(OperationKind.DEPOSIT, "f1", "inv-1", Decimal(100)))
        status = engine.get_status()

        assert status["config_version"] == 1
        assert status["entities"] == {"funds": 1, "managers": 1, "investors": 1}
        assert status["pipeline"]["approved"] == 1
        assert status["breaker"]["state"] == "green"
        assert status["health"]["sequencer_up"] is True


# =============================================================================
# PERSISTENT AUDIT
# =============================================================================

class TestPersistentAudit:

    def test_engine_writes_audit_files(self, tmp_path, clock):
        settings = Settings(_env_file=None, audit_enabled=True, audit_path=str(tmp_path / "audit"))
        engine = RiskEngine(settings=settings, oracle=StaticPriceOracle({"TOSS": 1}), clock=clock)
        engine.register_fund("f1", "fm", nav=Decimal(1000), stake=Decimal(100))
        engine.register_investor("inv-1")

        engine.submit(Operation(OperationKind.DEPOSIT, "f1", "inv-1", Decimal(50)))

        assert list((tmp_path / "audit").glob("audit_*.jsonl"))
        reloaded = AuditLogger(storage_dir=tmp_path / "audit")
        assert reloaded.verify_file(next((tmp_path / "audit").glob("audit_*.jsonl")))["valid"]
        assert reloaded.verify_file(next((tmp_path / "audit").glob("audit_*.jsonl")))["total_events"] >= 1
