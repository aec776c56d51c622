"""
Unit tests for the slashing formulas and SlashingEngine
"""

from decimal import Decimal

import pytest

from riskcore.config import RiskConfig
from riskcore.models import FundManager
from riskcore.slashing import SlashingEngine, compute_slash, slash_ratio
from riskcore.transaction import StateTransaction
from riskcore.validation import PreconditionError

BIG = Decimal(10) ** 9


class RecordingTokenLedger:
    def __init__(self):
        self.burned = []
        self.pool = []

    def burn(self, manager_id, amount):
        self.burned.append((manager_id, amount))

    def transfer_to_compensation_pool(self, amount):
        self.pool.append(amount)

    def reverse_burn(self, manager_id, amount):
        self.burned.remove((manager_id, amount))

    def withdraw_from_compensation_pool(self, amount):
        self.pool.remove(amount)


class RecordingFundLedger:
    def __init__(self):
        self.compensations = []
        self.dirty = []

    def get_nav(self, fund_id):
        return Decimal(0)

    def apply_compensation(self, fund_id, amount):
        self.compensations.append((fund_id, amount))

    def reverse_compensation(self, fund_id, amount):
        self.compensations.remove((fund_id, amount))

    def mark_dirty(self, fund_id):
        self.dirty.append(fund_id)


@pytest.fixture
def config():
    return RiskConfig()


class TestSlashRatio:

    @pytest.mark.parametrize("fi,ratio", [
        (0, 0),
        (29, 0),
        (30, 1),
        (50, 7),
        (60, 10),
        (85, 50),
        (100, 100),
    ])
    def test_segment_boundaries(self, config, fi, ratio):
        assert slash_ratio(fi, config) == ratio

    def test_monotonic(self, config):
        ratios = [slash_ratio(fi, config) for fi in range(101)]
        assert ratios == sorted(ratios)

    def test_first_segment_starts_at_configured_minimum(self):
        config = RiskConfig(version=2, min_slashing_fi=40)
        assert slash_ratio(39, config) == 0
        assert slash_ratio(40, config) == 1
        assert slash_ratio(60, config) == 10


class TestComputeSlash:

    def test_base_slash_and_split(self, config):
        result = compute_slash(10000, 50, BIG, 10000, 1, config)

        assert result.slash_amount == Decimal("700")
        assert result.burn_amount == Decimal("140")
        assert result.compensation_amount == Decimal("560")
        assert result.binding_cap == "base"
        assert result.ban is False
        assert result.config_version == 1

    def test_loss_cap_binds(self, config):
        result = compute_slash(10000, 92, 250, 10000, 1, config)

        assert result.slash_amount == Decimal("250")
        assert result.binding_cap == "loss_cap"
        assert result.burn_amount == Decimal("50")
        assert result.compensation_amount == Decimal("200")
        assert result.ban is True

    def test_loss_cap_uses_toss_price(self, config):
        result = compute_slash(10000, 100, 1000, 10000, 2, config)
        assert result.loss_cap == Decimal("500")
        assert result.slash_amount == Decimal("500")

    def test_alpha_scales_loss_cap(self):
        config = RiskConfig(version=2, alpha=Decimal("2.0"))
        result = compute_slash(10000, 100, 100, 10000, 1, config)
        assert result.slash_amount == Decimal("200")

    def test_total_stake_cap_binds(self, config):
        result = compute_slash(10000, 100, BIG, 500, 1, config)
        assert result.slash_amount == Decimal("500")
        assert result.binding_cap == "total_cap"

    def test_zero_loss_gives_zero_slash(self, config):
        result = compute_slash(10000, 90, 0, 10000, 1, config)

        assert result.slash_amount == 0
        assert result.burn_amount == 0
        assert result.compensation_amount == 0
        assert result.ban is True

    def test_below_minimum_fi(self, config):
        result = compute_slash(10000, 29, 1000, 10000, 1, config)
        assert result.slash_amount == 0
        assert result.ratio_pct == 0

    def test_conservation_with_odd_amounts(self, config):
        result = compute_slash(Decimal("1234.567891"), 77, BIG, BIG, 1, config)
        assert result.burn_amount + result.compensation_amount == result.slash_amount
        assert result.slash_amount == result.slash_amount.quantize(Decimal("0.000001"))

    def test_gamma_changes_split(self):
        config = RiskConfig(version=2, gamma=50)
        result = compute_slash(10000, 50, BIG, 10000, 1, config)
        assert result.burn_amount == Decimal("350")
        assert result.compensation_amount == Decimal("350")

    @pytest.mark.parametrize("kwargs", [
        {"toss_price": 0},
        {"toss_price": -1},
        {"stake": -1},
        {"fund_loss_usd": Decimal("NaN")},
        {"fault_index": 101},
        {"fault_index": 50.5},
        {"fault_index": True},
    ])
    def test_invalid_input(self, config, kwargs):
        args = {
            "stake": 10000,
            "fault_index": 50,
            "fund_loss_usd": 1000,
            "manager_total_stake": 10000,
            "toss_price": 1,
            "config": config,
        }
        args.update(kwargs)
        with pytest.raises(PreconditionError):
            compute_slash(**args)

    def test_config_must_be_snapshot(self):
        with pytest.raises(PreconditionError):
            compute_slash(10000, 50, 1000, 10000, 1, {"gamma": 80})


class TestSlashingEngine:

    @pytest.fixture
    def engine(self):
        return SlashingEngine(RecordingTokenLedger(), RecordingFundLedger())

    def test_apply_deducts_from_fund_stake(self, engine, config):
        manager = FundManager("fm-1", per_fund_stake={"fund-1": Decimal(10000)})
        computation = engine.preview(manager, "fund-1", 50, BIG, Decimal(1), config)

        event = engine.apply(manager, "fund-1", computation)

        assert manager.stake_in("fund-1") == Decimal("9300")
        assert manager.slash_count == 1
        assert manager.total_slashed == Decimal("700")
        assert event.slash_amount == Decimal("700")
        assert event.banned is False

    def test_apply_spills_into_other_funds(self, engine, config):
        manager = FundManager("fm-1", per_fund_stake={"fund-1": Decimal(100), "fund-2": Decimal(1000)})
        computation = compute_slash(1000, 100, BIG, manager.total_stake, 1, config)

        engine.apply(manager, "fund-1", computation)

        assert manager.stake_in("fund-1") == 0
        assert manager.stake_in("fund-2") == Decimal("100")
        assert manager.total_stake == Decimal("100")

    def test_ban_is_permanent(self, engine, config):
        manager = FundManager("fm-1", per_fund_stake={"fund-1": Decimal(10000)})
        computation = engine.preview(manager, "fund-1", 90, BIG, Decimal(1), config)

        event = engine.apply(manager, "fund-1", computation)
        assert manager.banned is True
        assert event.banned is True

        later = engine.preview(manager, "fund-1", 35, BIG, Decimal(1), config)
        engine.apply(manager, "fund-1", later)
        assert manager.banned is True

    def test_hand_off_routes_burn_and_compensation(self, engine, config):
        manager = FundManager("fm-1", per_fund_stake={"fund-1": Decimal(10000)})
        event = engine.apply(manager, "fund-1", engine.preview(manager, "fund-1", 50, BIG, Decimal(1), config))

        engine.hand_off(event)

        assert engine.token_ledger.burned == [("fm-1", Decimal("140"))]
        assert engine.token_ledger.pool == [Decimal("560")]
        assert engine.fund_ledger.compensations == [("fund-1", Decimal("560"))]
        assert engine.fund_ledger.dirty == ["fund-1"]

    def test_hand_off_unwinds_on_rollback(self, engine, config):
        manager = FundManager("fm-1", per_fund_stake={"fund-1": Decimal(10000)})
        event = engine.apply(manager, "fund-1", engine.preview(manager, "fund-1", 50, BIG, Decimal(1), config))

        with pytest.raises(RuntimeError):
            with StateTransaction("slash") as tx:
                engine.hand_off(event, tx)
                raise RuntimeError("audit write failed")

        assert engine.token_ledger.burned == []
        assert engine.token_ledger.pool == []
        assert engine.fund_ledger.compensations == []

    def test_partial_hand_off_unwinds_completed_steps(self, engine, config):
        manager = FundManager("fm-1", per_fund_stake={"fund-1": Decimal(10000)})
        event = engine.apply(manager, "fund-1", engine.preview(manager, "fund-1", 50, BIG, Decimal(1), config))

        def broken(fund_id, amount):
            raise ConnectionError("fund ledger down")

        engine.fund_ledger.apply_compensation = broken
        with pytest.raises(ConnectionError):
            with StateTransaction("slash") as tx:
                engine.hand_off(event, tx)

        assert engine.token_ledger.burned == []
        assert engine.token_ledger.pool == []

    def test_zero_slash_skips_ledgers(self, engine, config):
        manager = FundManager("fm-1", per_fund_stake={"fund-1": Decimal(10000)})
        event = engine.apply(manager, "fund-1", engine.preview(manager, "fund-1", 50, 0, Decimal(1), config))

        engine.hand_off(event)

        assert manager.slash_count == 0
        assert engine.token_ledger.burned == []
        assert engine.fund_ledger.compensations == []

    def test_record_keeps_history(self, engine, config):
        manager = FundManager("fm-1", per_fund_stake={"fund-1": Decimal(10000)})
        event = engine.apply(manager, "fund-1", engine.preview(manager, "fund-1", 50, BIG, Decimal(1), config))

        assert engine.events == []
        engine.record(event)
        assert engine.events == [event]
