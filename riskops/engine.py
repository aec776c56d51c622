"""
Risk Engine - wires the risk core to its collaborators.

The engine owns the entity store, the versioned config, the price cache,
the in-memory ledgers, the audit logger and the event bus, and exposes the
operations a host (HTTP API, CLI, simulator) needs.
"""

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set

from riskcore.behavior import ActivityKind
from riskcore.circuit_breaker import CircuitState, SafetyBreaker
from riskcore.config import ConfigProvider, RiskConfig
from riskcore.domains import FundRiskDomain, InvestorRiskDomain, ProtocolRiskDomain
from riskcore.fault_index import ViolationScoreComponents, classify, compute_fi_from
from riskcore.interfaces import PriceOracle, SystemHealth
from riskcore.investor_state import InvestorStateMachine, Transition
from riskcore.models import (
    Fund,
    FundManager,
    Investor,
    InvestorState,
    Operation,
    OperationKind,
    ZERO,
)
from riskcore.oracle import PriceCache
from riskcore.pipeline import ExecutionPriorityPipeline, PipelineConfig
from riskcore.slashing import SlashComputation, compute_slash
from riskcore.store import EntityStore
from riskcore.validation import CircuitHaltedError, OperationOutcome, PreconditionError

from riskops.access import AccessControl
from riskops.audit_logger import AuditLogger, EventType as AuditEventType, Severity as AuditSeverity
from riskops.config import Settings, settings as default_settings
from riskops.event_bus import Event, EventBus, EventType as BusEventType
from riskops.memory import (
    InMemoryFundLedger,
    InMemoryInvestorRegistry,
    InMemoryTokenLedger,
    StaticPriceOracle,
)

logger = logging.getLogger(__name__)


class RiskEngine:
    """
    Host-facing façade over the execution pipeline.

    Args:
        settings: Application settings (genesis config, oracle cache, limits)
        oracle: Price feed; defaults to a StaticPriceOracle quoting TOSS at 1.0
        audit: Audit logger; None with audit_enabled builds one from settings
        bus: Event bus for external indexers
        access: Access control used as the stage-3 authorizer; None checks identity only
        clock: Wall clock for windows and clean periods
        price_clock: Epoch clock for the price cache
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        oracle: Optional[PriceOracle] = None,
        audit: Optional[AuditLogger] = None,
        bus: Optional[EventBus] = None,
        access: Optional[AccessControl] = None,
        clock: Callable[[], datetime] = datetime.now,
        price_clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or default_settings
        self._clock = clock

        self.store = EntityStore()
        self.config_provider = ConfigProvider(self.settings.to_risk_config())

        self.oracle = oracle or StaticPriceOracle({self.settings.toss_asset: Decimal(1)})
        self.price_cache = PriceCache(self.oracle, self.settings.to_price_cache_config(), clock=price_clock)

        self.token_ledger = InMemoryTokenLedger()
        self.fund_ledger = InMemoryFundLedger(self.store, toss_price=self._toss_price)
        self.registry = InMemoryInvestorRegistry(self.store)

        if audit is None and self.settings.audit_enabled:
            audit = AuditLogger(storage_dir=self.settings.audit_dir)
        self.audit = audit
        self.bus = bus or EventBus(persist_events=True)
        if access is None and self.settings.require_sessions:
            access = AccessControl(session_ttl=timedelta(minutes=self.settings.session_ttl_minutes))
        self.access = access

        self.health = SystemHealth()
        self._approved_reviews: Set[str] = set()
        self._reviews_lock = threading.Lock()

        self.breaker = SafetyBreaker()
        self.breaker.on_state_change = self._on_breaker_change
        self.state_machine = InvestorStateMachine(review_hook=self._review_hook)

        self.pipeline = ExecutionPriorityPipeline(
            store=self.store,
            config_provider=self.config_provider,
            price_cache=self.price_cache,
            token_ledger=self.token_ledger,
            fund_ledger=self.fund_ledger,
            investor_registry=self.registry,
            breaker=self.breaker,
            state_machine=self.state_machine,
            protocol_domain=ProtocolRiskDomain(
                asset_whitelist=self.settings.asset_whitelist,
                max_price_deviation_bps=self.settings.max_price_deviation_bps,
            ),
            fund_domain=FundRiskDomain(),
            investor_domain=InvestorRiskDomain(self.state_machine.thresholds),
            authorizer=self.access.authorize if self.access else None,
            health_source=lambda: self.health,
            audit_sink=self._audit_sink if self.audit else None,
            event_sink=self._event_sink,
            config=PipelineConfig(
                base_max_deposit_usd=self.settings.base_max_deposit_usd,
                toss_asset=self.settings.toss_asset,
                audit_fail_closed=self.settings.audit_fail_closed,
            ),
            clock=clock,
        )

        logger.info(
            f"[ENGINE] {self.settings.app_name} ready "
            f"(config v{self.config_provider.current().version}, env={self.settings.environment})"
        )

    # ========================================================================
    # Entities
    # ========================================================================

    def register_fund(
        self,
        fund_id: str,
        manager_id: str,
        nav: Decimal = ZERO,
        risk_tier: int = 1,
        stake: Decimal = ZERO,
    ) -> Fund:
        """Add a fund and credit the manager's stake in it."""
        if fund_id in self.store.funds:
            raise PreconditionError(f"Fund {fund_id} already registered")

        manager = self.store.managers.get(manager_id) or self.store.add_manager(FundManager(manager_id))
        manager.per_fund_stake[fund_id] = manager.stake_in(fund_id) + Decimal(str(stake))

        nav = Decimal(str(nav))
        fund = Fund(fund_id=fund_id, manager_id=manager_id, net_asset_value=nav,
                    risk_tier=risk_tier, total_shares=nav)
        self.store.add_fund(fund)
        logger.info(f"[ENGINE] Registered fund {fund_id} (tier {risk_tier}) managed by {manager_id}")
        return fund

    def register_investor(self, investor_id: str) -> Investor:
        existing = self.store.investors.get(investor_id)
        if existing is not None:
            return existing
        return self.store.add_investor(Investor(investor_id, state_changed_at=self._clock()))

    # ========================================================================
    # Operations
    # ========================================================================

    def submit(self, operation: Operation, raise_on_halt: bool = False) -> OperationOutcome:
        """
        Run the operation through the pipeline. Investor re-scoring happens in
        stage 4, after the caller passed access control.

        Raises:
            CircuitHaltedError: raise_on_halt is set and the pipeline is halted
        """
        if raise_on_halt and self.breaker.halted:
            raise CircuitHaltedError(f"Pipeline halted: {self.breaker.halt_reason}")

        outcome = self.pipeline.submit(operation)

        if outcome.approved:
            self._record_activity(operation)
        return outcome

    def rescore_investor(
        self,
        investor_id: str,
        systemic_risk: bool = False,
        confirmed_fraud: bool = False,
    ) -> List[Transition]:
        return self.pipeline.rescore_investor(investor_id, systemic_risk, confirmed_fraud)

    def approve_review(self, investor_id: str, reviewer: str) -> List[Transition]:
        """Manual-review approval for a FROZEN investor; takes effect on the next re-scoring."""
        investor = self.store.investors.get(investor_id)
        if investor is None:
            raise KeyError(f"Unknown investor {investor_id}")

        with self._reviews_lock:
            self._approved_reviews.add(investor_id)
        self._audit_event(AuditEventType.REVIEW_APPROVED, {"investor_id": investor_id}, investor_id, reviewer)
        self.bus.emit(Event.create(BusEventType.REVIEW_APPROVED, {"reviewer": reviewer}, entity_id=investor_id))
        logger.warning(f"[ENGINE] Manual review approved for {investor_id} by {reviewer}")

        transitions = self.pipeline.rescore_investor(investor_id)
        if investor.state != InvestorState.FROZEN:
            with self._reviews_lock:
                self._approved_reviews.discard(investor_id)
        return transitions

    def publish_config(self, config: RiskConfig, actor: str = "governance") -> RiskConfig:
        published = self.config_provider.publish(config)
        self._audit_event(
            AuditEventType.CONFIG_PUBLISHED, published.to_dict(), None, actor,
            config_version=published.version, severity=AuditSeverity.WARNING,
        )
        self.bus.emit(Event.create(BusEventType.CONFIG_PUBLISHED, published.to_dict()))
        return published

    def reset_breaker(self, actor: str = "operator") -> bool:
        return self.breaker.reset(by=actor)

    def set_health(self, **flags: bool) -> SystemHealth:
        """Update substrate health flags (sequencer_up, bridge_up, oracle_up, emergency_halt)."""
        self.health = replace(self.health, **flags)
        return self.health

    # ========================================================================
    # Previews (pure, no state change)
    # ========================================================================

    def preview_fault_index(self, limit, behavior, damage, intent, version: Optional[int] = None) -> Dict[str, Any]:
        config = self._config(version)
        components = ViolationScoreComponents.of(limit, behavior, damage, intent)
        fi = compute_fi_from(components, config.weights)
        return {
            "fault_index": fi,
            "band": classify(fi, config).value,
            "components": components.to_dict(),
            "config_version": config.version,
        }

    def preview_slash(
        self,
        stake,
        fault_index: int,
        fund_loss_usd,
        manager_total_stake,
        toss_price=None,
        version: Optional[int] = None,
    ) -> SlashComputation:
        if toss_price is None:
            toss_price = self._toss_price()
        return compute_slash(stake, fault_index, fund_loss_usd, manager_total_stake, toss_price, self._config(version))

    # ========================================================================
    # Status
    # ========================================================================

    def get_status(self) -> Dict[str, Any]:
        return {
            "app": self.settings.app_name,
            "version": self.settings.app_version,
            "config_version": self.config_provider.current().version,
            "health": {
                "sequencer_up": self.health.sequencer_up,
                "bridge_up": self.health.bridge_up,
                "oracle_up": self.health.oracle_up,
                "emergency_halt": self.health.emergency_halt,
            },
            "breaker": self.breaker.get_status(),
            "pipeline": self.pipeline.get_stats(),
            "entities": {
                "funds": len(self.store.funds),
                "managers": len(self.store.managers),
                "investors": len(self.store.investors),
            },
            "ledger": {
                "burned": str(self.token_ledger.total_burned),
                "compensation_pool": str(self.token_ledger.compensation_pool),
            },
        }

    # ========================================================================
    # Internal Methods
    # ========================================================================

    def _config(self, version: Optional[int]) -> RiskConfig:
        return self.config_provider.current() if version is None else self.config_provider.get(version)

    def _toss_price(self) -> Decimal:
        return self.price_cache.get(self.settings.toss_asset).price

    def _review_hook(self, investor_id: str, state: InvestorState) -> bool:
        with self._reviews_lock:
            return investor_id in self._approved_reviews

    def _record_activity(self, operation: Operation) -> None:
        now = self._clock()
        if operation.kind == OperationKind.DEPOSIT:
            self.registry.record_activity(operation.subject_investor_id, operation.fund_id,
                                          ActivityKind.DEPOSIT, operation.amount, now)
        elif operation.kind == OperationKind.WITHDRAWAL:
            self.registry.record_activity(operation.subject_investor_id, operation.fund_id,
                                          ActivityKind.WITHDRAWAL, operation.amount, now)
        elif operation.fund_loss_usd > 0:
            self.registry.record_fund_loss(operation.fund_id, now)

    def _audit_sink(self, event_type: str, payload: Dict[str, Any]) -> None:
        audit_type = AuditEventType[event_type]
        severity = AuditSeverity.INFO
        if audit_type in (AuditEventType.SLASHING_EXECUTED, AuditEventType.STATE_TRANSITIONED):
            severity = AuditSeverity.WARNING
        elif payload.get("outcome", {}).get("kind") != "approved" and "outcome" in payload:
            severity = AuditSeverity.WARNING

        config_version = (
            payload.get("config_version")
            or payload.get("config", {}).get("version")
            or payload.get("event", {}).get("config_version")
        )
        self.audit.log(
            event_type=audit_type,
            data=payload,
            entity_id=payload.get("entity_id"),
            actor_id=payload.get("operation", {}).get("caller_id"),
            config_version=config_version,
            severity=severity,
        )

    def _event_sink(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.bus.emit(Event.create(
            BusEventType[event_type],
            payload,
            entity_id=payload.get("entity_id"),
            correlation_id=payload.get("operation", {}).get("operation_id") or payload.get("operation_id"),
        ))

    def _audit_event(
        self,
        event_type: AuditEventType,
        data: Dict[str, Any],
        entity_id: Optional[str],
        actor_id: Optional[str],
        config_version: Optional[int] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type=event_type,
            data=data,
            entity_id=entity_id,
            actor_id=actor_id,
            config_version=config_version or self.config_provider.current().version,
            severity=severity,
        )

    def _on_breaker_change(self, old: CircuitState, new: CircuitState, reason: str) -> None:
        data = {"from": old.value, "to": new.value, "reason": reason}
        if new == CircuitState.BLACK:
            audit_type, bus_type, severity = AuditEventType.CIRCUIT_HALTED, BusEventType.CIRCUIT_HALTED, AuditSeverity.CRITICAL
        elif new == CircuitState.AMBER:
            audit_type, bus_type, severity = None, BusEventType.CIRCUIT_ELEVATED, AuditSeverity.WARNING
        else:
            audit_type, bus_type, severity = AuditEventType.CIRCUIT_RESET, BusEventType.CIRCUIT_RESET, AuditSeverity.WARNING

        if audit_type is not None:
            try:
                self._audit_event(audit_type, data, None, None, severity=severity)
            except OSError as e:
                # The halt itself must stand even if it cannot be recorded
                logger.critical(f"[ENGINE] Could not audit breaker change {old.value} -> {new.value}: {e}")
        self.bus.emit(Event.create(bus_type, data))


# =============================================================================
# Global Instance
# =============================================================================

_global_engine: Optional[RiskEngine] = None


def get_engine(reload: bool = False) -> RiskEngine:
    """Get or create the global RiskEngine instance."""
    global _global_engine
    if _global_engine is None or reload:
        _global_engine = RiskEngine()
    return _global_engine


def set_engine(engine: Optional[RiskEngine]) -> None:
    global _global_engine
    _global_engine = engine
