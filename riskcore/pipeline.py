# riskcore/pipeline.py
"""
Execution Priority Pipeline - the only path through which operations mutate state.

Five ordered, short-circuiting stages:
1. Critical safety  - breaker, substrate health, entity references, non-negative balances
2. Risk validation  - domain validators + Fault Index; FI >= min_slashing_fi slashes
3. Access control   - caller identity against fund / investor / session
4. State validation - investor re-scoring, fund status, balances, state limits, share math
5. Execution        - atomic commit + audit, rolled back as a whole on failure

A later stage never runs after an earlier one failed. Only stage 2 slashes.
Critical stage-1 failures halt the whole pipeline through the SafetyBreaker.

Every operation is evaluated against one pinned config snapshot, and the
version is carried on the outcome and in every audit event.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Any, Callable, Dict, List, Optional, Tuple

from .circuit_breaker import SafetyBreaker
from .config import ConfigProvider, RiskConfig
from .domains import DomainVerdict, FundRiskDomain, InvestorRiskDomain, ProtocolRiskDomain
from .fault_index import FaultBand, classify, combine_domain_fi
from .interfaces import FundLedger, InvestorRegistry, SystemHealth, TokenLedger
from .investor_state import InvestorStateMachine, Transition
from .models import (
    BehaviorMetrics,
    Fund,
    FundManager,
    FundStatus,
    Investor,
    Operation,
    OperationKind,
    ZERO,
)
from .oracle import CachedPrice, PriceCache
from .reputation import record_outcome
from .slashing import SlashingEngine
from .store import FUND, INVESTOR, MANAGER, EntityStore
from .transaction import StateTransaction
from .validation import (
    AuditWriteError,
    OperationOutcome,
    OutcomeKind,
    ReasonCode,
    Severity,
    Stage,
    StageResult,
    StaleDataError,
)

logger = logging.getLogger(__name__)


# Audit / event types emitted by the pipeline
OPERATION_EVALUATED = "OPERATION_EVALUATED"
SLASHING_EXECUTED = "SLASHING_EXECUTED"
STATE_TRANSITIONED = "STATE_TRANSITIONED"

SHARE_QUANTUM = Decimal("0.000001")

# (event_type, payload)
AuditSink = Callable[[str, Dict[str, Any]], None]
EventSink = Callable[[str, Dict[str, Any]], None]
# (operation, fund, manager) -> StageResult
Authorizer = Callable[[Operation, Fund, FundManager], StageResult]


def default_authorizer(operation: Operation, fund: Fund, manager: FundManager) -> StageResult:
    """Trades come from the fund's manager; deposits and withdrawals from the investor."""
    if operation.kind == OperationKind.TRADE:
        if operation.caller_id != fund.manager_id:
            return StageResult.deny(
                ReasonCode.PERMISSION_DENIED,
                f"{operation.caller_id} is not the manager of fund {fund.fund_id}",
                check_name="identity",
            )
    elif operation.caller_id != operation.subject_investor_id:
        return StageResult.deny(
            ReasonCode.PERMISSION_DENIED,
            f"{operation.caller_id} cannot act for investor {operation.subject_investor_id}",
            check_name="identity",
        )
    return StageResult.ok("identity")


@dataclass
class PipelineConfig:
    """Runtime settings of the pipeline (not governance parameters)."""
    base_max_deposit_usd: Decimal = Decimal(1_000_000)
    toss_asset: str = "TOSS"
    audit_fail_closed: bool = True


@dataclass
class _Context:
    """Everything accumulated for one operation while it moves through the stages."""
    operation: Operation
    config: RiskConfig
    now: datetime
    fund: Optional[Fund] = None
    manager: Optional[FundManager] = None
    investor: Optional[Investor] = None
    metrics: Optional[BehaviorMetrics] = None
    health: Optional[SystemHealth] = None
    price: Optional[CachedPrice] = None
    fault_index: Optional[int] = None
    band: FaultBand = FaultBand.CLEAN
    verdicts: Tuple[DomainVerdict, ...] = ()
    share_delta: Decimal = ZERO
    stake_before: Decimal = ZERO


class ExecutionPriorityPipeline:
    """
    Five-stage validation and execution of fund operations.

    Usage:
        pipeline = ExecutionPriorityPipeline(store, provider, price_cache,
                                             token_ledger, fund_ledger, registry)
        outcome = pipeline.submit(Operation(OperationKind.DEPOSIT, "fund-1", "inv-1", 1000))
    """

    def __init__(
        self,
        store: EntityStore,
        config_provider: ConfigProvider,
        price_cache: PriceCache,
        token_ledger: TokenLedger,
        fund_ledger: FundLedger,
        investor_registry: InvestorRegistry,
        breaker: Optional[SafetyBreaker] = None,
        state_machine: Optional[InvestorStateMachine] = None,
        protocol_domain: Optional[ProtocolRiskDomain] = None,
        fund_domain: Optional[FundRiskDomain] = None,
        investor_domain: Optional[InvestorRiskDomain] = None,
        authorizer: Optional[Authorizer] = None,
        health_source: Optional[Callable[[], SystemHealth]] = None,
        audit_sink: Optional[AuditSink] = None,
        event_sink: Optional[EventSink] = None,
        config: Optional[PipelineConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.config_provider = config_provider
        self.price_cache = price_cache
        self.fund_ledger = fund_ledger
        self.investor_registry = investor_registry
        self.slashing = SlashingEngine(token_ledger, fund_ledger)
        self.breaker = breaker or SafetyBreaker()
        self.state_machine = state_machine or InvestorStateMachine()
        self.protocol_domain = protocol_domain or ProtocolRiskDomain()
        self.fund_domain = fund_domain or FundRiskDomain()
        self.investor_domain = investor_domain or InvestorRiskDomain(self.state_machine.thresholds)
        self.authorizer = authorizer or default_authorizer
        self.health_source = health_source or SystemHealth
        self.audit_sink = audit_sink
        self.event_sink = event_sink
        self.config = config or PipelineConfig()
        self._clock = clock

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, Any] = {
            "total": 0,
            "approved": 0,
            "rejected": 0,
            "slashed": 0,
            "by_reason": {},
            "by_stage": {},
        }

    # ========================================================================
    # Public API
    # ========================================================================

    def submit(self, operation: Operation) -> OperationOutcome:
        """
        Run one operation through all five stages.

        Rejections and slashes are returned, never raised.
        """
        config = self.config_provider.current()
        now = self._clock()

        fund = self.store.funds.get(operation.fund_id)
        manager_id = fund.manager_id if fund else None

        with self.store.locked(
            (FUND, operation.fund_id),
            (MANAGER, manager_id),
            (INVESTOR, operation.subject_investor_id),
        ):
            ctx = _Context(operation=operation, config=config, now=now)
            return self._run(ctx)

    def rescore_investor(
        self,
        investor_id: str,
        systemic_risk: bool = False,
        confirmed_fraud: bool = False,
    ) -> List[Transition]:
        """
        Behavioral re-scoring outside of any operation.

        Escalation or recovery transitions commit atomically with their
        STATE_TRANSITIONED audit events.
        """
        now = self._clock()
        config = self.config_provider.current()
        with self.store.locked((INVESTOR, investor_id)):
            investor = self.store.investors.get(investor_id)
            if investor is None:
                return []

            metrics = self._metrics_for(investor, now)
            transitions = self._commit_rescore(
                investor, metrics, now, config, None, systemic_risk, confirmed_fraud,
            )

        for transition in transitions:
            self._emit(STATE_TRANSITIONED, self._transition_payload(transition, config, None))
        return transitions

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            total = self._stats["total"]
            return {
                **self._stats,
                "by_reason": dict(self._stats["by_reason"]),
                "by_stage": dict(self._stats["by_stage"]),
                "approval_rate": self._stats["approved"] / total if total > 0 else 0.0,
                "breaker": self.breaker.state.value,
                "config_version": self.config_provider.current().version,
            }

    # ========================================================================
    # Stage driver
    # ========================================================================

    def _run(self, ctx: _Context) -> OperationOutcome:
        results: List[StageResult] = []
        warnings: List[str] = []

        result = self._stage_critical_safety(ctx)
        results.append(result)
        if not result.approved:
            if result.severity == Severity.CRITICAL and result.reason != ReasonCode.CIRCUIT_HALTED:
                self.breaker.trip(f"{result.check_name}: {result.message}")
            return self._reject(ctx, result, results)

        result = self._stage_risk_validation(ctx)
        results.append(result)
        if not result.approved:
            if result.reason == ReasonCode.FAULT_INDEX_EXCEEDED:
                return self._slash(ctx, result, results)
            return self._reject(ctx, result, results)
        warnings.extend(result.warnings)

        result = self._stage_access_control(ctx)
        results.append(result)
        if not result.approved:
            if result.reason == ReasonCode.MANAGER_BANNED:
                self._record_manager_rejection(ctx)
            return self._reject(ctx, result, results, warnings)

        result = self._stage_state_validation(ctx)
        results.append(result)
        if not result.approved:
            self._record_manager_rejection(ctx)
            return self._reject(ctx, result, results, warnings)

        return self._execute(ctx, results, warnings)

    @staticmethod
    def _record_manager_rejection(ctx: _Context) -> None:
        """A rejected trade counts against the fund manager's reputation."""
        if ctx.operation.kind == OperationKind.TRADE:
            record_outcome(ctx.manager, approved=False, clean=False)

    # ========================================================================
    # Stage 1 - Critical safety
    # ========================================================================

    def _stage_critical_safety(self, ctx: _Context) -> StageResult:
        op = ctx.operation

        if self.breaker.halted:
            return self._staged(Stage.CRITICAL_SAFETY, StageResult.deny(
                ReasonCode.CIRCUIT_HALTED,
                f"Pipeline halted: {self.breaker.halt_reason}",
                severity=Severity.CRITICAL,
                check_name="circuit_breaker",
            ))

        health = self.health_source()
        if not health.healthy:
            return self._staged(Stage.CRITICAL_SAFETY, StageResult.deny(
                ReasonCode.SYSTEM_UNHEALTHY,
                f"Substrate unhealthy: sequencer_up={health.sequencer_up}, "
                f"oracle_up={health.oracle_up}, emergency_halt={health.emergency_halt}",
                severity=Severity.CRITICAL,
                check_name="system_health",
            ))
        ctx.health = health

        if not op.amount.is_finite() or op.amount <= 0:
            return self._staged(Stage.CRITICAL_SAFETY, StageResult.deny(
                ReasonCode.INVALID_AMOUNT,
                f"Amount must be a positive finite number, got {op.amount}",
                check_name="amount",
            ))

        ctx.fund = self.store.funds.get(op.fund_id)
        if ctx.fund is None:
            return self._staged(Stage.CRITICAL_SAFETY, StageResult.deny(
                ReasonCode.ENTITY_NOT_FOUND, f"Unknown fund {op.fund_id}", check_name="references",
            ))

        ctx.manager = self.store.managers.get(ctx.fund.manager_id)
        if ctx.manager is None:
            # The store references a manager that does not exist
            return self._staged(Stage.CRITICAL_SAFETY, StageResult.deny(
                ReasonCode.ENTITY_NOT_FOUND,
                f"Fund {op.fund_id} references missing manager {ctx.fund.manager_id}",
                severity=Severity.CRITICAL,
                check_name="references",
            ))

        if op.kind != OperationKind.TRADE:
            ctx.investor = self.store.investors.get(op.subject_investor_id)
            if ctx.investor is None:
                return self._staged(Stage.CRITICAL_SAFETY, StageResult.deny(
                    ReasonCode.ENTITY_NOT_FOUND,
                    f"Unknown investor {op.subject_investor_id}",
                    check_name="references",
                ))

        negatives = self._negative_balances(ctx)
        if negatives:
            return self._staged(Stage.CRITICAL_SAFETY, StageResult.deny(
                ReasonCode.NEGATIVE_BALANCE,
                "Negative balance detected: " + ", ".join(negatives),
                severity=Severity.CRITICAL,
                check_name="balances",
            ))

        return self._staged(Stage.CRITICAL_SAFETY, StageResult.ok("critical_safety"))

    def _negative_balances(self, ctx: _Context) -> List[str]:
        found = []
        fund, manager, investor = ctx.fund, ctx.manager, ctx.investor
        if fund.net_asset_value < 0:
            found.append(f"fund {fund.fund_id} NAV {fund.net_asset_value}")
        if fund.total_shares < 0:
            found.append(f"fund {fund.fund_id} shares {fund.total_shares}")
        ledger_nav = self.fund_ledger.get_nav(fund.fund_id)
        if ledger_nav < 0:
            found.append(f"ledger NAV for {fund.fund_id} {ledger_nav}")
        found.extend(
            f"stake {manager.manager_id}/{fid} {stake}"
            for fid, stake in manager.per_fund_stake.items() if stake < 0
        )
        if investor is not None:
            found.extend(
                f"shares {investor.investor_id}/{fid} {shares}"
                for fid, shares in investor.shares.items() if shares < 0
            )
        return found

    # ========================================================================
    # Stage 2 - Risk validation
    # ========================================================================

    def _stage_risk_validation(self, ctx: _Context) -> StageResult:
        op, config = ctx.operation, ctx.config

        if op.kind == OperationKind.TRADE and op.asset:
            try:
                ctx.price = self.price_cache.get(op.asset)
            except StaleDataError as e:
                return self._staged(Stage.RISK_VALIDATION, StageResult.deny(
                    ReasonCode.STALE_PRICE, str(e), check_name="oracle",
                    asset=e.asset, max_age_seconds=e.max_age_seconds,
                ))

        if ctx.investor is not None:
            ctx.metrics = self._metrics_for(ctx.investor, ctx.now)

        verdicts = [
            self.protocol_domain.evaluate(op, ctx.health, config, ctx.price),
            self.fund_domain.evaluate(op, ctx.fund, config),
        ]
        if ctx.investor is not None:
            verdicts.append(
                self.investor_domain.evaluate(op, ctx.investor, ctx.metrics, ctx.fund, config)
            )
        ctx.verdicts = tuple(verdicts)
        ctx.fault_index = combine_domain_fi(v.local_fi for v in verdicts)
        ctx.band = classify(ctx.fault_index, config)

        self.breaker.record_evaluation(ctx.band != FaultBand.CLEAN)

        details = {
            "fault_index": ctx.fault_index,
            "band": ctx.band.value,
            "config_version": config.version,
            "domains": [v.to_dict() for v in verdicts],
        }

        if ctx.band in (FaultBand.SLASHING, FaultBand.BAN):
            worst = max(verdicts, key=lambda v: v.local_fi)
            return self._staged(Stage.RISK_VALIDATION, StageResult.deny(
                ReasonCode.FAULT_INDEX_EXCEEDED,
                f"FI {ctx.fault_index} >= {config.min_slashing_fi} "
                f"({worst.domain}: {'; '.join(worst.reasons)})",
                severity=Severity.HIGH,
                check_name="fault_index",
                **details,
            ))

        result = StageResult.ok("fault_index", **details)
        if ctx.band == FaultBand.WARNING:
            message = f"FI {ctx.fault_index} in warning band (>= {config.warning_fi})"
            logger.warning(f"[PIPELINE] {op.operation_id}: {message}")
            result.with_warning(message)
        return self._staged(Stage.RISK_VALIDATION, result)

    def _metrics_for(self, investor: Investor, now: datetime) -> BehaviorMetrics:
        metrics = self.investor_registry.get_metrics(investor.investor_id, now)
        # The violation log on the investor record is authoritative
        return replace(
            metrics,
            violations_7d=max(metrics.violations_7d, investor.violations.count_7d(now)),
            violations_30d=max(metrics.violations_30d, investor.violations.count_30d(now)),
        )

    def _commit_rescore(
        self,
        investor: Investor,
        metrics: BehaviorMetrics,
        now: datetime,
        config: RiskConfig,
        operation: Optional[Operation],
        systemic_risk: bool = False,
        confirmed_fraud: bool = False,
    ) -> List[Transition]:
        """Apply a behavioral re-scoring together with its audit events. Caller holds the investor lock."""
        transitions = self.state_machine.plan(investor, metrics, now, systemic_risk, confirmed_fraud)
        with StateTransaction(f"rescore:{investor.investor_id}") as tx:
            tx.track(investor)
            self.state_machine.apply(investor, transitions, tx=tx)
            investor.metrics = metrics
            for transition in transitions:
                self._audit(STATE_TRANSITIONED, self._transition_payload(transition, config, operation))
        return transitions

    # ========================================================================
    # Stage 3 - Access control
    # ========================================================================

    def _stage_access_control(self, ctx: _Context) -> StageResult:
        op = ctx.operation

        if ctx.manager.banned and op.kind != OperationKind.WITHDRAWAL:
            return self._staged(Stage.ACCESS_CONTROL, StageResult.deny(
                ReasonCode.MANAGER_BANNED,
                f"Manager {ctx.manager.manager_id} is banned",
                severity=Severity.HIGH,
                check_name="manager_ban",
            ))

        result = self.authorizer(op, ctx.fund, ctx.manager)
        return self._staged(Stage.ACCESS_CONTROL, result)

    # ========================================================================
    # Stage 4 - State validation
    # ========================================================================

    def _stage_state_validation(self, ctx: _Context) -> StageResult:
        op, fund = ctx.operation, ctx.fund

        if ctx.investor is not None:
            # Limits below are read from the state this re-scoring commits
            try:
                transitions = self._commit_rescore(ctx.investor, ctx.metrics, ctx.now, ctx.config, op)
            except AuditWriteError as e:
                return self._staged(Stage.STATE_VALIDATION, StageResult.deny(
                    ReasonCode.AUDIT_FAILED, f"Re-scoring rolled back: {e}", severity=Severity.HIGH,
                    check_name="rescore",
                ))
            for transition in transitions:
                self._emit(STATE_TRANSITIONED, self._transition_payload(transition, ctx.config, op))

        if fund.status != FundStatus.ACTIVE:
            return self._staged(Stage.STATE_VALIDATION, StageResult.deny(
                ReasonCode.FUND_NOT_ACTIVE,
                f"Fund {fund.fund_id} is {fund.status.value}",
                check_name="fund_status",
            ))

        if op.kind == OperationKind.TRADE:
            result = self._validate_trade(ctx)
        elif op.kind == OperationKind.DEPOSIT:
            result = self._validate_deposit(ctx)
        else:
            result = self._validate_withdrawal(ctx)
        return self._staged(Stage.STATE_VALIDATION, result)

    def _validate_trade(self, ctx: _Context) -> StageResult:
        op, fund = ctx.operation, ctx.fund
        if fund.net_asset_value <= 0:
            return StageResult.deny(
                ReasonCode.DEGENERATE_CALCULATION,
                f"Fund {fund.fund_id} has no NAV to trade against",
                check_name="trade_nav",
            )
        new_nav = fund.net_asset_value + op.realized_pnl_usd
        if new_nav < 0:
            return StageResult.deny(
                ReasonCode.INSUFFICIENT_BALANCE,
                f"Realized PnL {op.realized_pnl_usd} exceeds NAV {fund.net_asset_value}",
                check_name="trade_nav",
            )
        return StageResult.ok("trade_nav", new_nav=new_nav)

    def _validate_deposit(self, ctx: _Context) -> StageResult:
        op, fund, investor = ctx.operation, ctx.fund, ctx.investor
        limits = self.state_machine.limits_for(investor.state)

        if not limits.can_deposit:
            return StageResult.deny(
                ReasonCode.INVESTOR_RESTRICTED,
                f"Investor {investor.investor_id} is {investor.state.value}: deposits blocked",
                check_name="state_limits",
            )
        if not limits.allows_tier(fund.risk_tier):
            return StageResult.deny(
                ReasonCode.TIER_NOT_ALLOWED,
                f"State {investor.state.value} allows tiers <= {limits.max_fund_tier}, "
                f"fund is tier {fund.risk_tier}",
                check_name="state_limits",
            )

        max_deposit = self.config.base_max_deposit_usd * limits.deposit_pct / 100
        if op.amount > max_deposit:
            return StageResult.deny(
                ReasonCode.LIMIT_EXCEEDED,
                f"Deposit {op.amount} exceeds {investor.state.value} limit {max_deposit}",
                check_name="state_limits",
                limit=max_deposit,
            )

        if fund.total_shares == 0:
            minted = op.amount.quantize(SHARE_QUANTUM, rounding=ROUND_DOWN)
        elif fund.net_asset_value <= 0:
            return StageResult.deny(
                ReasonCode.DEGENERATE_CALCULATION,
                f"Fund {fund.fund_id} has shares outstanding but zero NAV",
                check_name="share_math",
            )
        else:
            minted = (op.amount * fund.total_shares / fund.net_asset_value).quantize(
                SHARE_QUANTUM, rounding=ROUND_DOWN
            )

        if minted <= 0:
            return StageResult.deny(
                ReasonCode.DEGENERATE_CALCULATION,
                f"Deposit {op.amount} would mint zero shares",
                check_name="share_math",
            )

        ctx.share_delta = minted
        return StageResult.ok("state_validation", shares_minted=minted)

    def _validate_withdrawal(self, ctx: _Context) -> StageResult:
        op, fund, investor = ctx.operation, ctx.fund, ctx.investor
        limits = self.state_machine.limits_for(investor.state)

        if not limits.can_withdraw:
            return StageResult.deny(
                ReasonCode.INVESTOR_RESTRICTED,
                f"Investor {investor.investor_id} is {investor.state.value}: withdrawals blocked",
                check_name="state_limits",
            )
        if limits.one_time_withdrawal and investor.high_risk_withdrawal_used:
            return StageResult.deny(
                ReasonCode.INVESTOR_RESTRICTED,
                f"Investor {investor.investor_id} already used the one-time "
                f"{investor.state.value} withdrawal",
                check_name="state_limits",
            )

        share_price = fund.share_price
        if share_price is None or share_price <= 0:
            return StageResult.deny(
                ReasonCode.DEGENERATE_CALCULATION,
                f"Fund {fund.fund_id} has no valid share price",
                check_name="share_math",
            )

        holdings = investor.shares_in(fund.fund_id)
        balance = holdings * share_price
        if op.amount > balance or op.amount > fund.net_asset_value:
            return StageResult.deny(
                ReasonCode.INSUFFICIENT_BALANCE,
                f"Withdrawal {op.amount} exceeds balance {balance.quantize(SHARE_QUANTUM)}",
                check_name="balance",
            )

        max_withdrawal = balance * limits.withdrawal_pct / 100
        if op.amount > max_withdrawal:
            return StageResult.deny(
                ReasonCode.LIMIT_EXCEEDED,
                f"Withdrawal {op.amount} exceeds {investor.state.value} limit "
                f"{max_withdrawal.quantize(SHARE_QUANTUM)}",
                check_name="state_limits",
                limit=max_withdrawal,
            )

        burned = min(holdings, (op.amount / share_price).quantize(SHARE_QUANTUM, rounding=ROUND_UP))
        if burned <= 0:
            return StageResult.deny(
                ReasonCode.DEGENERATE_CALCULATION,
                f"Withdrawal {op.amount} would burn zero shares",
                check_name="share_math",
            )

        ctx.share_delta = -burned
        return StageResult.ok("state_validation", shares_burned=burned)

    # ========================================================================
    # Stage 5 - Execution
    # ========================================================================

    def _execute(self, ctx: _Context, results: List[StageResult], warnings: List[str]) -> OperationOutcome:
        op, fund, investor = ctx.operation, ctx.fund, ctx.investor
        output: Dict[str, Any] = {}

        try:
            with StateTransaction(f"{op.kind.value}:{op.operation_id}") as tx:
                tx.track(fund, ctx.manager, investor)

                if op.kind == OperationKind.TRADE:
                    fund.set_nav(fund.net_asset_value + op.realized_pnl_usd)
                    if op.asset:
                        fund.exposures[op.asset] = fund.exposures.get(op.asset, ZERO) + op.amount
                    record_outcome(ctx.manager, approved=True, clean=ctx.band == FaultBand.CLEAN)
                elif op.kind == OperationKind.DEPOSIT:
                    fund.set_nav(fund.net_asset_value + op.amount)
                    fund.total_shares += ctx.share_delta
                    investor.shares[fund.fund_id] = investor.shares_in(fund.fund_id) + ctx.share_delta
                else:
                    fund.set_nav(fund.net_asset_value - op.amount)
                    fund.total_shares += ctx.share_delta
                    investor.shares[fund.fund_id] = investor.shares_in(fund.fund_id) + ctx.share_delta
                    if self.state_machine.limits_for(investor.state).one_time_withdrawal:
                        investor.high_risk_withdrawal_used = True

                self.fund_ledger.mark_dirty(fund.fund_id)

                output = {
                    "nav": fund.net_asset_value,
                    "high_water_mark": fund.high_water_mark,
                    "share_delta": ctx.share_delta,
                }
                executed = self._staged(Stage.EXECUTION, StageResult.ok("execution", **output))
                outcome = self._outcome(
                    ctx, OutcomeKind.APPROVED, ReasonCode.APPROVED, Stage.EXECUTION,
                    "Operation executed", results + [executed], warnings, execution_output=output,
                )
                self._audit(OPERATION_EVALUATED, self._evaluation_payload(ctx, outcome))

        except AuditWriteError as e:
            return self._execution_failed(ctx, results, warnings, ReasonCode.AUDIT_FAILED, str(e))
        except Exception as e:
            logger.error(f"[PIPELINE] Execution of {op.operation_id} failed and was rolled back: {e}")
            return self._execution_failed(ctx, results, warnings, ReasonCode.EXECUTION_FAILED, str(e))

        results.append(executed)
        logger.info(
            f"[PIPELINE] EXECUTED {op.kind.value} {op.operation_id} on {fund.fund_id} "
            f"(FI={ctx.fault_index}, config v{ctx.config.version})"
        )
        self._count(outcome)
        self._emit(OPERATION_EVALUATED, self._evaluation_payload(ctx, outcome))
        return outcome

    def _execution_failed(
        self,
        ctx: _Context,
        results: List[StageResult],
        warnings: List[str],
        reason: ReasonCode,
        message: str,
    ) -> OperationOutcome:
        result = self._staged(Stage.EXECUTION, StageResult.deny(
            reason, f"Rolled back: {message}", severity=Severity.HIGH, check_name="execution",
        ))
        results.append(result)
        return self._reject(ctx, result, results, warnings, audit=reason != ReasonCode.AUDIT_FAILED)

    # ========================================================================
    # Slashing path (stage-2 failure)
    # ========================================================================

    def _slash(self, ctx: _Context, result: StageResult, results: List[StageResult]) -> OperationOutcome:
        op, config = ctx.operation, ctx.config
        event = None
        transitions: List[Transition] = []

        try:
            with StateTransaction(f"slash:{op.operation_id}") as tx:
                tx.track(ctx.fund, ctx.manager, ctx.investor)

                if op.kind == OperationKind.TRADE:
                    toss_price = self.price_cache.get(self.config.toss_asset).price
                    ctx.stake_before = ctx.manager.stake_in(op.fund_id)
                    computation = self.slashing.preview(
                        ctx.manager, op.fund_id, ctx.fault_index, op.fund_loss_usd, toss_price, config,
                    )
                    event = self.slashing.apply(ctx.manager, op.fund_id, computation, ctx.now)
                    record_outcome(ctx.manager, approved=False, clean=False)
                else:
                    investor = ctx.investor
                    investor.record_violation(ctx.now)
                    metrics = replace(
                        ctx.metrics,
                        intent_probability=max(ctx.metrics.intent_probability, op.intent_probability),
                        violations_7d=investor.violations.count_7d(ctx.now),
                        violations_30d=investor.violations.count_30d(ctx.now),
                    )
                    transitions = self.state_machine.evaluate(
                        investor, metrics, ctx.now,
                        systemic_risk=op.systemic_risk,
                        confirmed_fraud=op.confirmed_fraud,
                        tx=tx,
                    )

                outcome = self._outcome(
                    ctx, OutcomeKind.SLASHED, ReasonCode.FAULT_INDEX_EXCEEDED, Stage.RISK_VALIDATION,
                    result.message, results, [], slashing_event=event,
                    transition=transitions[-1] if transitions else None,
                )

                if event is not None:
                    # Ledger steps are undone through tx if anything below raises
                    self.slashing.hand_off(event, tx)

                self._audit(OPERATION_EVALUATED, self._evaluation_payload(ctx, outcome))
                if event is not None:
                    self._audit(SLASHING_EXECUTED, self._slashing_payload(ctx, event, computation))
                for transition in transitions:
                    self._audit(STATE_TRANSITIONED, self._transition_payload(transition, config, op))

        except StaleDataError as e:
            stale = StageResult.deny(ReasonCode.STALE_PRICE, str(e), check_name="oracle")
            results[-1] = self._staged(Stage.RISK_VALIDATION, stale)
            return self._reject(ctx, results[-1], results)
        except AuditWriteError as e:
            failed = self._staged(Stage.RISK_VALIDATION, StageResult.deny(
                ReasonCode.AUDIT_FAILED, f"Slash rolled back: {e}", severity=Severity.HIGH,
                check_name="audit",
            ))
            results.append(failed)
            return self._reject(ctx, failed, results, audit=False)
        except Exception as e:
            logger.error(f"[PIPELINE] Slash for {op.operation_id} failed and was rolled back: {e}")
            failed = self._staged(Stage.RISK_VALIDATION, StageResult.deny(
                ReasonCode.EXECUTION_FAILED, f"Slash rolled back: {e}", severity=Severity.HIGH,
                check_name="slashing",
            ))
            results.append(failed)
            return self._reject(ctx, failed, results)

        if event is not None:
            self.slashing.record(event)

        logger.warning(
            f"[PIPELINE] SLASHED {op.kind.value} {op.operation_id}: FI={ctx.fault_index} "
            f"(config v{config.version})"
        )
        self._count(outcome)
        self._emit(OPERATION_EVALUATED, self._evaluation_payload(ctx, outcome))
        if event is not None:
            self._emit(SLASHING_EXECUTED, self._slashing_payload(ctx, event, computation))
        for transition in transitions:
            self._emit(STATE_TRANSITIONED, self._transition_payload(transition, config, op))
        return outcome

    # ========================================================================
    # Outcomes, audit, stats
    # ========================================================================

    def _reject(
        self,
        ctx: _Context,
        result: StageResult,
        results: List[StageResult],
        warnings: Optional[List[str]] = None,
        audit: bool = True,
    ) -> OperationOutcome:
        outcome = self._outcome(
            ctx, OutcomeKind.REJECTED, result.reason, result.stage, result.message, results, warnings or [],
        )
        logger.warning(
            f"[PIPELINE] REJECTED {ctx.operation.kind.value} {ctx.operation.operation_id} "
            f"at stage {result.stage.value} ({result.check_name}): {result.reason.value} - {result.message}"
        )
        payload = self._evaluation_payload(ctx, outcome)
        if audit:
            try:
                self._audit(OPERATION_EVALUATED, payload)
            except AuditWriteError as e:
                # Nothing was mutated; the rejection stands without a record
                logger.error(f"[PIPELINE] Could not audit rejection of {ctx.operation.operation_id}: {e}")
        self._count(outcome)
        self._emit(OPERATION_EVALUATED, payload)
        return outcome

    def _outcome(
        self,
        ctx: _Context,
        kind: OutcomeKind,
        reason: ReasonCode,
        stage: Stage,
        message: str,
        results: List[StageResult],
        warnings: List[str],
        **extra,
    ) -> OperationOutcome:
        return OperationOutcome(
            kind=kind,
            reason=reason,
            stage=stage,
            operation_id=ctx.operation.operation_id,
            message=message,
            fault_index=ctx.fault_index,
            config_version=ctx.config.version,
            results=list(results),
            warnings=list(warnings),
            **extra,
        )

    @staticmethod
    def _staged(stage: Stage, result: StageResult) -> StageResult:
        result.stage = stage
        return result

    def _audit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink(event_type, payload)
        except Exception as e:
            logger.error(f"[PIPELINE] Audit write failed for {event_type}: {e}")
            if self.config.audit_fail_closed:
                raise AuditWriteError(str(e)) from e

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.event_sink is None:
            return
        try:
            self.event_sink(event_type, payload)
        except Exception as e:
            logger.error(f"[PIPELINE] Event sink failed for {event_type}: {e}")

    def _count(self, outcome: OperationOutcome) -> None:
        with self._stats_lock:
            self._stats["total"] += 1
            self._stats[outcome.kind.value] += 1
            if not outcome.approved:
                reason = outcome.reason.value
                stage = str(outcome.stage.value)
                self._stats["by_reason"][reason] = self._stats["by_reason"].get(reason, 0) + 1
                self._stats["by_stage"][stage] = self._stats["by_stage"].get(stage, 0) + 1

    # Payloads carry full input and output so every decision can be replayed

    def _evaluation_payload(self, ctx: _Context, outcome: OperationOutcome) -> Dict[str, Any]:
        return {
            "entity_id": ctx.operation.fund_id,
            "operation": ctx.operation.to_dict(),
            "config": ctx.config.to_dict(),
            "metrics": ctx.metrics.to_dict() if ctx.metrics else None,
            "price": ctx.price.to_dict() if ctx.price else None,
            "outcome": outcome.to_dict(),
        }

    @staticmethod
    def _slashing_payload(ctx: _Context, event, computation) -> Dict[str, Any]:
        return {
            "entity_id": event.manager_id,
            "operation_id": ctx.operation.operation_id,
            "input": {
                "stake": str(ctx.stake_before),
                "fund_loss_usd": str(ctx.operation.fund_loss_usd),
                "config": ctx.config.to_dict(),
            },
            "computation": computation.to_dict(),
            "event": event.to_dict(),
        }

    @staticmethod
    def _transition_payload(
        transition: Transition,
        config: RiskConfig,
        operation: Optional[Operation],
    ) -> Dict[str, Any]:
        return {
            "entity_id": transition.investor_id,
            "operation_id": operation.operation_id if operation else None,
            "config_version": config.version,
            "transition": transition.to_dict(),
        }
