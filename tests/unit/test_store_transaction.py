"""
Unit tests for EntityStore locking and StateTransaction rollback
"""

import threading
from datetime import datetime
from decimal import Decimal

import pytest

from riskcore.models import Fund, FundManager, Investor
from riskcore.store import FUND, INVESTOR, MANAGER, EntityStore
from riskcore.transaction import StateTransaction


@pytest.fixture
def store():
    store = EntityStore()
    store.add_fund(Fund("fund-1", "fm-1", net_asset_value=Decimal(1000), total_shares=Decimal(1000)))
    store.add_manager(FundManager("fm-1", per_fund_stake={"fund-1": Decimal(500)}))
    store.add_investor(Investor("inv-1"))
    return store


class TestEntityStore:

    def test_lookup(self, store):
        assert store.funds.get("fund-1").manager_id == "fm-1"
        assert store.funds.get("missing") is None
        assert store.funds.get(None) is None
        assert "inv-1" in store.investors
        assert len(store.managers) == 1

    def test_ids_sorted(self, store):
        store.add_investor(Investor("inv-0"))
        assert store.investors.ids() == ["inv-0", "inv-1"]

    def test_lock_per_entity(self, store):
        assert store.lock_for(FUND, "fund-1") is store.lock_for(FUND, "fund-1")
        assert store.lock_for(FUND, "fund-1") is not store.lock_for(INVESTOR, "fund-1")

    def test_locked_skips_missing_ids(self, store):
        with store.locked((FUND, "fund-1"), (INVESTOR, None)):
            pass

    def test_locked_is_reentrant(self, store):
        with store.locked((FUND, "fund-1"), (MANAGER, "fm-1")):
            with store.locked((FUND, "fund-1")):
                pass

    def test_opposite_order_does_not_deadlock(self, store):
        done = []

        def worker(keys):
            for _ in range(200):
                with store.locked(*keys):
                    pass
            done.append(True)

        a = threading.Thread(target=worker, args=([(FUND, "fund-1"), (INVESTOR, "inv-1")],))
        b = threading.Thread(target=worker, args=([(INVESTOR, "inv-1"), (FUND, "fund-1")],))
        a.start()
        b.start()
        a.join(timeout=5)
        b.join(timeout=5)

        assert done == [True, True]


class TestStateTransaction:

    def test_commit(self, store):
        fund = store.funds.get("fund-1")
        with StateTransaction("deposit") as tx:
            tx.track(fund)
            fund.set_nav(Decimal(1500))

        assert tx.committed
        assert fund.net_asset_value == Decimal(1500)

    def test_rollback_restores_fields(self, store):
        fund = store.funds.get("fund-1")
        investor = store.investors.get("inv-1")

        with pytest.raises(RuntimeError):
            with StateTransaction("deposit") as tx:
                tx.track(fund, investor)
                fund.set_nav(Decimal(1500))
                investor.shares["fund-1"] = Decimal(500)
                investor.record_violation(datetime(2026, 1, 1))
                raise RuntimeError("ledger down")

        assert tx.rolled_back
        assert fund.net_asset_value == Decimal(1000)
        assert fund.high_water_mark == Decimal(1000)
        assert investor.shares == {}
        assert len(investor.violations) == 0

    def test_rollback_keeps_identity(self, store):
        manager = store.managers.get("fm-1")
        with pytest.raises(ValueError):
            with StateTransaction() as tx:
                tx.track(manager)
                manager.per_fund_stake["fund-1"] = Decimal(0)
                raise ValueError("boom")

        assert store.managers.get("fm-1") is manager
        assert manager.stake_in("fund-1") == Decimal(500)

    def test_undo_callbacks_run_in_reverse(self):
        order = []
        with pytest.raises(RuntimeError):
            with StateTransaction() as tx:
                tx.on_rollback(lambda: order.append("first"))
                tx.on_rollback(lambda: order.append("second"))
                raise RuntimeError("fail")

        assert order == ["second", "first"]

    def test_failing_undo_does_not_stop_rollback(self, store):
        fund = store.funds.get("fund-1")
        order = []

        def broken():
            raise OSError("undo failed")

        with pytest.raises(RuntimeError):
            with StateTransaction() as tx:
                tx.track(fund)
                tx.on_rollback(lambda: order.append("ran"))
                tx.on_rollback(broken)
                fund.set_nav(Decimal(1))
                raise RuntimeError("fail")

        assert order == ["ran"]
        assert fund.net_asset_value == Decimal(1000)

    def test_snapshot_wins_over_undo(self, store):
        fund = store.funds.get("fund-1")

        with pytest.raises(RuntimeError):
            with StateTransaction() as tx:
                tx.track(fund)
                fund.set_nav(Decimal(1500))
                tx.on_rollback(lambda: fund.set_nav(fund.net_asset_value - Decimal(500)))
                fund.set_nav(Decimal(1200))
                raise RuntimeError("fail")

        assert fund.net_asset_value == Decimal(1000)

    def test_commit_callbacks(self):
        calls = []
        with StateTransaction() as tx:
            tx.on_commit(lambda: calls.append("committed"))
            assert calls == []

        assert calls == ["committed"]
        assert tx.committed

    def test_commit_callbacks_skipped_on_rollback(self):
        calls = []
        with pytest.raises(RuntimeError):
            with StateTransaction() as tx:
                tx.on_commit(lambda: calls.append("committed"))
                raise RuntimeError("fail")

        assert calls == []
        assert tx.rolled_back
