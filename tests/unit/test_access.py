"""
Unit tests for AccessControl and the stage-3 authorizer
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from riskcore.models import Fund, FundManager, Operation, OperationKind
from riskcore.validation import ReasonCode
from riskops.access import AccessControl, Permission, Role


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 5, 1, 9, 0, 0)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def acl(clock):
    acl = AccessControl(session_ttl=timedelta(minutes=30), clock=clock)
    acl.assign_role("fm-1", Role.FUND_MANAGER, fund_id="fund-1")
    acl.assign_role("inv-1", Role.INVESTOR)
    return acl


@pytest.fixture
def fund():
    return Fund("fund-1", "fm-1", net_asset_value=Decimal(1000))


@pytest.fixture
def manager():
    return FundManager("fm-1")


class TestRoles:

    def test_fund_scoped_grant(self, acl):
        assert acl.check_permission("fm-1", Permission.FUND_TRADE, fund_id="fund-1")
        assert not acl.check_permission("fm-1", Permission.FUND_TRADE, fund_id="fund-2")

    def test_unscoped_grant_covers_every_fund(self, acl):
        assert acl.check_permission("inv-1", Permission.FUND_DEPOSIT, fund_id="fund-9")

    def test_role_without_permission(self, acl):
        assert not acl.check_permission("inv-1", Permission.FUND_TRADE, fund_id="fund-1")

    def test_duplicate_assignment_returns_existing(self, acl):
        grant = acl.assign_role("inv-1", Role.INVESTOR)
        assert len(acl.get_user_roles("inv-1")) == 1
        assert grant.role == Role.INVESTOR

    def test_revoke(self, acl):
        assert acl.revoke_role("inv-1", Role.INVESTOR)
        assert not acl.check_permission("inv-1", Permission.FUND_DEPOSIT)
        assert not acl.revoke_role("inv-1", Role.INVESTOR)

    def test_expired_grant(self, acl, clock):
        acl.assign_role("aud-1", Role.AUDITOR, expires_at=(clock.now + timedelta(hours=1)).isoformat())
        assert acl.check_permission("aud-1", Permission.AUDIT_READ)

        clock.now += timedelta(hours=2)
        assert not acl.check_permission("aud-1", Permission.AUDIT_READ)

    def test_require_permission_raises(self, acl):
        with pytest.raises(PermissionError):
            acl.require_permission("inv-1", Permission.CIRCUIT_RESET)

    def test_decisions_are_recorded(self, acl):
        acl.check_permission("inv-1", Permission.FUND_TRADE)
        records = acl.get_audit_log(user_id="inv-1")
        assert records[-1].result == "denied"

    def test_grants_persist(self, tmp_path):
        path = tmp_path / "acl.json"
        first = AccessControl(storage_path=path)
        first.assign_role("g-1", Role.GUARDIAN)

        second = AccessControl(storage_path=path)
        assert second.check_permission("g-1", Permission.CONFIG_PUBLISH)


class TestSessions:

    def test_valid_session(self, acl):
        session = acl.open_session("fm-1")
        assert acl.validate_session(session.session_id, "fm-1") is None

    def test_missing_and_unknown(self, acl):
        assert acl.validate_session(None, "fm-1") == "missing session"
        assert acl.validate_session("nope", "fm-1") == "unknown session"

    def test_session_of_other_user(self, acl):
        session = acl.open_session("inv-1")
        assert acl.validate_session(session.session_id, "fm-1") == "session belongs to another user"

    def test_expiry_and_purge(self, acl, clock):
        session = acl.open_session("fm-1")
        clock.now += timedelta(minutes=31)

        assert acl.validate_session(session.session_id, "fm-1") == "session expired or revoked"
        assert acl.purge_expired_sessions() == 1

    def test_close_session(self, acl):
        session = acl.open_session("fm-1")
        assert acl.close_session(session.session_id)
        assert acl.validate_session(session.session_id, "fm-1") is not None
        assert not acl.close_session("nope")


class TestAuthorize:

    def trade(self, caller="fm-1", session_id=None):
        return Operation(OperationKind.TRADE, "fund-1", caller, Decimal(10), asset="ETH", session_id=session_id)

    def test_manager_trade_approved(self, acl, fund, manager):
        session = acl.open_session("fm-1")
        result = acl.authorize(self.trade(session_id=session.session_id), fund, manager)
        assert result.approved

    def test_missing_session(self, acl, fund, manager):
        result = acl.authorize(self.trade(), fund, manager)
        assert not result.approved
        assert result.reason == ReasonCode.SESSION_INVALID

    def test_identity_checked_before_permission(self, acl, fund, manager):
        acl.assign_role("fm-2", Role.FUND_MANAGER)
        session = acl.open_session("fm-2")

        result = acl.authorize(self.trade("fm-2", session.session_id), fund, manager)
        assert result.reason == ReasonCode.PERMISSION_DENIED
        assert result.check_name == "identity"

    def test_investor_without_role(self, fund, manager):
        acl = AccessControl(require_sessions=False)
        deposit = Operation(OperationKind.DEPOSIT, "fund-1", "inv-2", Decimal(10))

        result = acl.authorize(deposit, fund, manager)
        assert result.reason == ReasonCode.PERMISSION_DENIED
        assert result.check_name == "permission"

    def test_sessions_optional(self, fund, manager):
        acl = AccessControl(require_sessions=False)
        acl.assign_role("inv-1", Role.INVESTOR, fund_id="fund-1")
        withdrawal = Operation(OperationKind.WITHDRAWAL, "fund-1", "inv-1", Decimal(10))

        assert acl.authorize(withdrawal, fund, manager).approved
