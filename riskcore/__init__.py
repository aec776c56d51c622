# riskcore/__init__.py
"""
Risk Core - validation and economic-slashing logic of the fund protocol.

This package provides:
- ExecutionPriorityPipeline: five-stage validation + atomic execution
- Fault Index: weighted L/B/D/I scoring and worst-domain combination
- SlashingEngine: bounded stake slashing with exact burn/compensation split
- InvestorStateMachine: five-state lifecycle with time-gated recovery
- RiskConfig / ConfigProvider: bounded, versioned parameters
- PriceCache: last-valid price with time-decay discount, fail-closed
- SafetyBreaker: pipeline-wide halt on critical failures
"""

from .validation import (
    StageResult,
    ReasonCode,
    Severity,
    Stage,
    OutcomeKind,
    OperationOutcome,
    PreconditionError,
    StaleDataError,
    InvalidTransitionError,
    AuditWriteError,
    CircuitHaltedError,
)

from .config import (
    FaultWeights,
    RiskConfig,
    ConfigProvider,
)

from .fault_index import (
    FaultBand,
    ViolationScoreComponents,
    compute_fi,
    compute_fi_from,
    combine_domain_fi,
    classify,
)

from .models import (
    Fund,
    FundManager,
    FundStatus,
    Investor,
    InvestorState,
    BehaviorMetrics,
    Operation,
    OperationKind,
    SlashingEvent,
    ViolationLog,
)

from .interfaces import (
    PriceOracle,
    PriceReading,
    TokenLedger,
    FundLedger,
    InvestorRegistry,
    SystemHealth,
)

from .slashing import (
    SlashingEngine,
    SlashComputation,
    compute_slash,
    slash_ratio,
)

from .investor_state import (
    InvestorStateMachine,
    BehaviorThresholds,
    StateLimits,
    Transition,
    Trigger,
    STATE_LIMITS,
    TRANSITION_TABLE,
)

from .domains import (
    DomainVerdict,
    ProtocolRiskDomain,
    FundRiskDomain,
    InvestorRiskDomain,
    RiskTierLimits,
    RISK_TIERS,
)

from .oracle import PriceCache, PriceCacheConfig, CachedPrice
from .circuit_breaker import SafetyBreaker, BreakerConfig, CircuitState
from .behavior import InvestorScoreCalculator, ActivityLedger, ActivityRecord, ActivityKind
from .reputation import recompute_reputation
from .store import EntityStore
from .transaction import StateTransaction

from .pipeline import (
    ExecutionPriorityPipeline,
    PipelineConfig,
    default_authorizer,
    OPERATION_EVALUATED,
    SLASHING_EXECUTED,
    STATE_TRANSITIONED,
)

__all__ = [
    # Results and errors
    "StageResult",
    "ReasonCode",
    "Severity",
    "Stage",
    "OutcomeKind",
    "OperationOutcome",
    "PreconditionError",
    "StaleDataError",
    "InvalidTransitionError",
    "AuditWriteError",
    "CircuitHaltedError",
    # Config
    "FaultWeights",
    "RiskConfig",
    "ConfigProvider",
    # Fault Index
    "FaultBand",
    "ViolationScoreComponents",
    "compute_fi",
    "compute_fi_from",
    "combine_domain_fi",
    "classify",
    # Entities
    "Fund",
    "FundManager",
    "FundStatus",
    "Investor",
    "InvestorState",
    "BehaviorMetrics",
    "Operation",
    "OperationKind",
    "SlashingEvent",
    "ViolationLog",
    # Collaborators
    "PriceOracle",
    "PriceReading",
    "TokenLedger",
    "FundLedger",
    "InvestorRegistry",
    "SystemHealth",
    # Slashing
    "SlashingEngine",
    "SlashComputation",
    "compute_slash",
    "slash_ratio",
    # Investor state
    "InvestorStateMachine",
    "BehaviorThresholds",
    "StateLimits",
    "Transition",
    "Trigger",
    "STATE_LIMITS",
    "TRANSITION_TABLE",
    # Domains
    "DomainVerdict",
    "ProtocolRiskDomain",
    "FundRiskDomain",
    "InvestorRiskDomain",
    "RiskTierLimits",
    "RISK_TIERS",
    # Infrastructure
    "PriceCache",
    "PriceCacheConfig",
    "CachedPrice",
    "SafetyBreaker",
    "BreakerConfig",
    "CircuitState",
    "InvestorScoreCalculator",
    "ActivityLedger",
    "ActivityRecord",
    "ActivityKind",
    "recompute_reputation",
    "EntityStore",
    "StateTransaction",
    # Pipeline
    "ExecutionPriorityPipeline",
    "PipelineConfig",
    "default_authorizer",
    "OPERATION_EVALUATED",
    "SLASHING_EXECUTED",
    "STATE_TRANSITIONED",
]

__version__ = "0.1.0"
