"""
Access Control for Fund Operations
==================================

Role/permission matrix with fund-scoped grants and expiring sessions.
AccessControl.authorize() is the stage-3 authorizer of the risk pipeline.

Usage:
    from riskops.access import AccessControl, Role, Permission

    acl = AccessControl()
    acl.assign_role("fm-1", Role.FUND_MANAGER, fund_id="fund-1")
    session = acl.open_session("fm-1")

    if acl.check_permission("fm-1", Permission.FUND_TRADE, fund_id="fund-1"):
        ...
"""

import json
import logging
import secrets
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from riskcore.models import Fund, FundManager, Operation, OperationKind
from riskcore.pipeline import default_authorizer
from riskcore.validation import ReasonCode, StageResult

logger = logging.getLogger(__name__)


class Role(Enum):
    FUND_MANAGER = "fund_manager"   # Trades for the funds it is granted
    INVESTOR = "investor"           # Deposits into and withdraws from funds
    GUARDIAN = "guardian"           # Manual review, circuit reset, config publish
    AUDITOR = "auditor"             # Read-only audit access


class Permission(Enum):
    FUND_TRADE = "fund.trade"
    FUND_DEPOSIT = "fund.deposit"
    FUND_WITHDRAW = "fund.withdraw"
    INVESTOR_REVIEW = "investor.review"
    CIRCUIT_RESET = "circuit.reset"
    CONFIG_PUBLISH = "config.publish"
    AUDIT_READ = "audit.read"


# Role-Permission Matrix
ROLE_PERMISSIONS: Dict[Role, Set[Permission]] = {
    Role.FUND_MANAGER: {
        Permission.FUND_TRADE,
    },
    Role.INVESTOR: {
        Permission.FUND_DEPOSIT,
        Permission.FUND_WITHDRAW,
    },
    Role.GUARDIAN: {
        Permission.INVESTOR_REVIEW,
        Permission.CIRCUIT_RESET,
        Permission.CONFIG_PUBLISH,
        Permission.AUDIT_READ,
    },
    Role.AUDITOR: {
        Permission.AUDIT_READ,
    },
}

OPERATION_PERMISSIONS: Dict[OperationKind, Permission] = {
    OperationKind.TRADE: Permission.FUND_TRADE,
    OperationKind.DEPOSIT: Permission.FUND_DEPOSIT,
    OperationKind.WITHDRAWAL: Permission.FUND_WITHDRAW,
}


@dataclass
class RoleGrant:
    """Role assignment, optionally scoped to one fund"""
    user_id: str
    role: Role
    fund_id: Optional[str] = None  # None = every fund
    assigned_at: str = field(default_factory=lambda: datetime.now().isoformat())
    assigned_by: Optional[str] = None
    expires_at: Optional[str] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at:
            return datetime.fromisoformat(self.expires_at) > (now or datetime.now())
        return True

    def covers(self, fund_id: Optional[str]) -> bool:
        return self.fund_id is None or self.fund_id == fund_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "fund_id": self.fund_id,
            "assigned_at": self.assigned_at,
            "assigned_by": self.assigned_by,
            "expires_at": self.expires_at,
        }


@dataclass
class Session:
    session_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False

    def is_valid(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "revoked": self.revoked,
        }


@dataclass
class AccessRecord:
    """Audit record for access decisions"""
    timestamp: str
    action: str
    user_id: str
    permission: Optional[Permission] = None
    fund_id: Optional[str] = None
    result: str = "allowed"  # allowed | denied
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "user_id": self.user_id,
            "permission": self.permission.value if self.permission else None,
            "fund_id": self.fund_id,
            "result": self.result,
            "reason": self.reason,
        }


class AccessControl:
    """
    Role-based access control for fund operations.

    Args:
        storage_path: JSON file for role grants; None keeps them in memory
        session_ttl: Lifetime of a new session
        require_sessions: Operations must carry a valid session id
        clock: Time source for expiry checks
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        session_ttl: timedelta = timedelta(minutes=60),
        require_sessions: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.storage_path = storage_path
        self.session_ttl = session_ttl
        self.require_sessions = require_sessions
        self._clock = clock
        self._lock = threading.Lock()

        self._grants: Dict[str, List[RoleGrant]] = defaultdict(list)
        self._sessions: Dict[str, Session] = {}
        self._audit_log: List[AccessRecord] = []

        if self.storage_path is not None:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load()

        logger.info("[RBAC] Access control initialized")

    # ========================================================================
    # Role Management
    # ========================================================================

    def assign_role(
        self,
        user_id: str,
        role: Role,
        fund_id: Optional[str] = None,
        assigned_by: Optional[str] = None,
        expires_at: Optional[str] = None
    ) -> RoleGrant:
        """Grant a role, optionally for one fund only."""
        with self._lock:
            for grant in self._grants[user_id]:
                if grant.role == role and grant.fund_id == fund_id:
                    logger.warning(f"[RBAC] {user_id} already has {role.value} for fund {fund_id}")
                    return grant

            grant = RoleGrant(
                user_id=user_id,
                role=role,
                fund_id=fund_id,
                assigned_by=assigned_by,
                expires_at=expires_at,
            )
            self._grants[user_id].append(grant)
            self._record("role.assign", user_id, fund_id=fund_id, reason=role.value)

        self._save()
        logger.info(f"[RBAC] Assigned {role.value} to {user_id} (fund={fund_id or '*'})")
        return grant

    def revoke_role(self, user_id: str, role: Role, fund_id: Optional[str] = None) -> bool:
        with self._lock:
            grants = self._grants.get(user_id, [])
            kept = [
                g for g in grants
                if not (g.role == role and (fund_id is None or g.fund_id == fund_id))
            ]
            removed = len(grants) - len(kept)
            self._grants[user_id] = kept
            if removed:
                self._record("role.revoke", user_id, fund_id=fund_id, reason=role.value)

        if removed:
            self._save()
            logger.info(f"[RBAC] Revoked {role.value} from {user_id}")
            return True

        logger.warning(f"[RBAC] Role {role.value} not found for {user_id}")
        return False

    def get_user_roles(self, user_id: str, fund_id: Optional[str] = None) -> List[RoleGrant]:
        """Valid grants of a user, optionally only those covering a fund."""
        now = self._clock()
        with self._lock:
            grants = list(self._grants.get(user_id, []))
        grants = [g for g in grants if g.is_valid(now)]
        if fund_id is not None:
            grants = [g for g in grants if g.covers(fund_id)]
        return grants

    # ========================================================================
    # Permission Checking
    # ========================================================================

    def check_permission(self, user_id: str, permission: Permission, fund_id: Optional[str] = None) -> bool:
        grants = self.get_user_roles(user_id, fund_id)

        for grant in grants:
            if permission in ROLE_PERMISSIONS.get(grant.role, set()):
                with self._lock:
                    self._record("permission.check", user_id, permission, fund_id, "allowed",
                                 f"granted_via_{grant.role.value}")
                return True

        with self._lock:
            self._record("permission.check", user_id, permission, fund_id, "denied",
                         "no_role" if not grants else "permission_not_in_roles")
        return False

    def require_permission(self, user_id: str, permission: Permission, fund_id: Optional[str] = None):
        """
        Raises:
            PermissionError: If user lacks permission
        """
        if not self.check_permission(user_id, permission, fund_id):
            raise PermissionError(
                f"User {user_id} lacks permission {permission.value} (fund: {fund_id or '*'})"
            )

    # ========================================================================
    # Sessions
    # ========================================================================

    def open_session(self, user_id: str, ttl: Optional[timedelta] = None) -> Session:
        now = self._clock()
        session = Session(
            session_id=secrets.token_hex(16),
            user_id=user_id,
            created_at=now,
            expires_at=now + (ttl or self.session_ttl),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.debug(f"[RBAC] Session opened for {user_id}, expires {session.expires_at.isoformat()}")
        return session

    def close_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.revoked = True
        return True

    def validate_session(self, session_id: Optional[str], user_id: str) -> Optional[str]:
        """None if the session is usable by user_id, otherwise the reason it is not."""
        if not session_id:
            return "missing session"
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return "unknown session"
        if session.user_id != user_id:
            return "session belongs to another user"
        if not session.is_valid(self._clock()):
            return "session expired or revoked"
        return None

    def purge_expired_sessions(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if not s.is_valid(now)]
            for sid in stale:
                del self._sessions[sid]
        return len(stale)

    # ========================================================================
    # Pipeline authorizer
    # ========================================================================

    def authorize(self, operation: Operation, fund: Fund, manager: FundManager) -> StageResult:
        """Stage-3 check: session, identity, then fund-scoped permission."""
        caller = operation.caller_id

        if self.require_sessions:
            problem = self.validate_session(operation.session_id, caller)
            if problem:
                with self._lock:
                    self._record("session.check", caller, fund_id=fund.fund_id, result="denied", reason=problem)
                logger.warning(f"[RBAC] Session rejected for {caller}: {problem}")
                return StageResult.deny(
                    ReasonCode.SESSION_INVALID,
                    f"Session rejected for {caller}: {problem}",
                    check_name="session",
                )

        identity = default_authorizer(operation, fund, manager)
        if not identity.approved:
            return identity

        permission = OPERATION_PERMISSIONS[operation.kind]
        if not self.check_permission(caller, permission, fund.fund_id):
            logger.warning(f"[RBAC] {caller} lacks {permission.value} on fund {fund.fund_id}")
            return StageResult.deny(
                ReasonCode.PERMISSION_DENIED,
                f"{caller} lacks {permission.value} on fund {fund.fund_id}",
                check_name="permission",
                permission=permission.value,
            )

        return StageResult.ok("access_control", permission=permission.value)

    # ========================================================================
    # Audit
    # ========================================================================

    def get_audit_log(self, user_id: Optional[str] = None, limit: int = 100) -> List[AccessRecord]:
        with self._lock:
            records = list(self._audit_log)
        if user_id:
            records = [r for r in records if r.user_id == user_id]
        return records[-limit:]

    def _record(
        self,
        action: str,
        user_id: str,
        permission: Optional[Permission] = None,
        fund_id: Optional[str] = None,
        result: str = "allowed",
        reason: Optional[str] = None,
    ):
        """Caller holds self._lock"""
        self._audit_log.append(AccessRecord(
            timestamp=datetime.now().isoformat(),
            action=action,
            user_id=user_id,
            permission=permission,
            fund_id=fund_id,
            result=result,
            reason=reason,
        ))
        if len(self._audit_log) > 10000:
            self._audit_log = self._audit_log[-10000:]

    # ========================================================================
    # Persistence
    # ========================================================================

    def _save(self):
        if self.storage_path is None:
            return

        with self._lock:
            data = {
                "grants": {
                    user_id: [g.to_dict() for g in grants]
                    for user_id, grants in self._grants.items()
                },
            }

        with open(self.storage_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    def _load(self):
        if not self.storage_path.exists():
            return

        try:
            with open(self.storage_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"[RBAC] Failed to load state: {e}")
            return

        for user_id, grants in data.get("grants", {}).items():
            for g in grants:
                self._grants[user_id].append(RoleGrant(
                    user_id=g["user_id"],
                    role=Role(g["role"]),
                    fund_id=g.get("fund_id"),
                    assigned_at=g.get("assigned_at", datetime.now().isoformat()),
                    assigned_by=g.get("assigned_by"),
                    expires_at=g.get("expires_at"),
                ))

        logger.info(f"[RBAC] Loaded grants for {len(self._grants)} users")
