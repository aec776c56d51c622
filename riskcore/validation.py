# riskcore/validation.py
"""
Type-safe results and errors for the risk pipeline.

Provides:
- StageResult: Standard result type for every pipeline check
- ReasonCode: Enum of all possible decision reasons
- Severity: Severity levels for failures
- OperationOutcome: Final answer handed back to the caller
- Error taxonomy: PreconditionError, StaleDataError, InvalidTransitionError,
  AuditWriteError, CircuitHaltedError
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(Enum):
    """Severity levels for check failures."""
    LOW = "low"           # Informational, operation may proceed
    MEDIUM = "medium"     # Operation blocked, no side effects
    HIGH = "high"         # Rule violation, punitive path
    CRITICAL = "critical" # Systemic failure, pipeline halts


class Stage(Enum):
    """The five ordered pipeline stages."""
    CRITICAL_SAFETY = 1
    RISK_VALIDATION = 2
    ACCESS_CONTROL = 3
    STATE_VALIDATION = 4
    EXECUTION = 5


class ReasonCode(Enum):
    """Structured reason codes returned with every decision."""

    # Positive outcomes
    APPROVED = "approved"
    PENDING = "pending"  # Intermediate, check continuing

    # Stage 1 - critical safety
    CIRCUIT_HALTED = "circuit_halted"
    SYSTEM_UNHEALTHY = "system_unhealthy"
    ENTITY_NOT_FOUND = "entity_not_found"
    NEGATIVE_BALANCE = "negative_balance"
    INVALID_AMOUNT = "invalid_amount"

    # Stage 2 - risk validation
    FAULT_INDEX_EXCEEDED = "fault_index_exceeded"
    STALE_PRICE = "stale_price"

    # Stage 3 - access control
    PERMISSION_DENIED = "permission_denied"
    SESSION_INVALID = "session_invalid"
    MANAGER_BANNED = "manager_banned"

    # Stage 4 - state validation
    FUND_NOT_ACTIVE = "fund_not_active"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    LIMIT_EXCEEDED = "limit_exceeded"
    TIER_NOT_ALLOWED = "tier_not_allowed"
    INVESTOR_RESTRICTED = "investor_restricted"
    DEGENERATE_CALCULATION = "degenerate_calculation"

    # Stage 5 - execution
    EXECUTION_FAILED = "execution_failed"
    AUDIT_FAILED = "audit_failed"


class OutcomeKind(Enum):
    """What the caller gets back from the pipeline."""
    APPROVED = "approved"
    REJECTED = "rejected"   # Stage 1-4 failure, no state change
    SLASHED = "slashed"     # Stage 2 failure with punitive side effects


@dataclass
class StageResult:
    """
    Result of a single pipeline check.

    Every check in every stage returns this type.
    """

    approved: bool
    reason: ReasonCode
    message: str = ""
    severity: Severity = Severity.LOW
    stage: Optional[Stage] = None
    check_name: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls, check_name: str = "", **details) -> "StageResult":
        return cls(approved=True, reason=ReasonCode.PENDING, check_name=check_name, details=details)

    @classmethod
    def deny(
        cls,
        reason: ReasonCode,
        message: str,
        severity: Severity = Severity.MEDIUM,
        check_name: str = "",
        **details
    ) -> "StageResult":
        return cls(
            approved=False,
            reason=reason,
            message=message,
            severity=severity,
            check_name=check_name,
            details=details,
        )

    def with_warning(self, warning: str) -> "StageResult":
        """Add a warning to this result."""
        self.warnings.append(warning)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "approved": self.approved,
            "reason": self.reason.value,
            "message": self.message,
            "severity": self.severity.value,
            "stage": self.stage.value if self.stage else None,
            "check_name": self.check_name,
            "details": _jsonable(self.details),
            "warnings": list(self.warnings),
        }


@dataclass
class OperationOutcome:
    """
    Final decision for a submitted operation.

    REJECTED and SLASHED are normal, expected outcomes; they are never
    raised. `stage` is the stage that decided the outcome.
    """

    kind: OutcomeKind
    reason: ReasonCode
    stage: Stage
    operation_id: str
    message: str = ""
    fault_index: Optional[int] = None
    config_version: Optional[int] = None
    results: List[StageResult] = field(default_factory=list)
    slashing_event: Optional[Any] = None  # riskcore.models.SlashingEvent
    transition: Optional[Any] = None      # riskcore.investor_state.Transition
    execution_output: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.kind == OutcomeKind.APPROVED

    @property
    def slashed(self) -> bool:
        return self.kind == OutcomeKind.SLASHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "reason": self.reason.value,
            "stage": self.stage.value,
            "operation_id": self.operation_id,
            "message": self.message,
            "fault_index": self.fault_index,
            "config_version": self.config_version,
            "results": [r.to_dict() for r in self.results],
            "slashing_event": self.slashing_event.to_dict() if self.slashing_event else None,
            "transition": self.transition.to_dict() if self.transition else None,
            "execution_output": _jsonable(self.execution_output),
            "warnings": list(self.warnings),
        }


def _jsonable(value: Any) -> Any:
    """Render Decimals, enums and nested containers as plain JSON values."""
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


# =============================================================================
# Errors
# =============================================================================

class PreconditionError(ValueError):
    """Malformed configuration or caller input. Never clamped, never recovered."""


class StaleDataError(Exception):
    """Cached oracle price is older than the maximum staleness bound."""

    def __init__(self, asset: str, age_seconds: float, max_age_seconds: float):
        self.asset = asset
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
        super().__init__(
            f"Price for {asset} is {age_seconds:.0f}s old (max {max_age_seconds:.0f}s)"
        )


class InvalidTransitionError(Exception):
    """Attempted investor-state edge outside the allowed matrix."""

    def __init__(self, from_state: Any, to_state: Any):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid investor transition: {getattr(from_state, 'value', from_state)} -> "
            f"{getattr(to_state, 'value', to_state)}"
        )


class CircuitHaltedError(Exception):
    """Raised by callers that require a running pipeline."""


class AuditWriteError(Exception):
    """The audit sink refused an event; the surrounding commit is rolled back."""
