# riskcore/domains.py
"""
Domain validators for stage-2 risk validation.

Three independent domains score a proposed operation:
- ProtocolRiskDomain: protocol rules (asset whitelist, oracle agreement, bridge use)
- FundRiskDomain: PSL / PCL / AEL, volatility and drawdown against the fund's risk tier
- InvestorRiskDomain: WBR / DVR / LRI, violation history and intent

Each domain builds its own L/B/D/I sub-scores and combines them with the
configured weights (compute_fi). The pipeline then takes the worst domain
(combine_domain_fi). A domain passes when its local FI is below
min_slashing_fi.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .config import RiskConfig
from .fault_index import (
    ViolationScoreComponents,
    clamp_score,
    compute_fi_from,
    ratio_score,
)
from .interfaces import SystemHealth
from .investor_state import BehaviorThresholds
from .models import BehaviorMetrics, Fund, Investor, Operation, OperationKind, ZERO
from .oracle import CachedPrice

logger = logging.getLogger(__name__)


PROTOCOL = "protocol"
FUND = "fund"
INVESTOR = "investor"


@dataclass
class DomainVerdict:
    """Outcome of one domain: pass/fail plus the domain-local FI."""
    domain: str
    passed: bool
    local_fi: int
    components: ViolationScoreComponents = field(default_factory=ViolationScoreComponents)
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "passed": self.passed,
            "local_fi": self.local_fi,
            "components": self.components.to_dict(),
            "reasons": list(self.reasons),
        }


def _verdict(domain: str, components: ViolationScoreComponents, reasons: List[str], config: RiskConfig) -> DomainVerdict:
    local_fi = compute_fi_from(components, config.weights)
    passed = local_fi < config.min_slashing_fi
    if not passed:
        logger.warning(f"[DOMAIN] {domain} FI={local_fi} ({'; '.join(reasons) or 'no detail'})")
    elif local_fi > 0:
        logger.debug(f"[DOMAIN] {domain} FI={local_fi} components={components.to_dict()}")
    return DomainVerdict(domain, passed, local_fi, components, reasons)


# =============================================================================
# Risk tiers
# =============================================================================

@dataclass(frozen=True)
class RiskTierLimits:
    """
    Fund-level risk bounds, all in percent of NAV (volatility is annualized %).

    PSL: single position size, PCL: post-trade concentration in one asset,
    AEL: total asset exposure.
    """
    tier: int
    max_position_pct: Decimal       # PSL
    max_concentration_pct: Decimal  # PCL
    max_exposure_pct: Decimal       # AEL
    max_volatility_pct: Decimal
    max_drawdown_pct: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "psl": str(self.max_position_pct),
            "pcl": str(self.max_concentration_pct),
            "ael": str(self.max_exposure_pct),
            "max_volatility": str(self.max_volatility_pct),
            "max_drawdown": str(self.max_drawdown_pct),
        }


RISK_TIERS: Dict[int, RiskTierLimits] = {
    1: RiskTierLimits(1, Decimal(5), Decimal(20), Decimal(60), Decimal(20), Decimal(10)),
    2: RiskTierLimits(2, Decimal(10), Decimal(30), Decimal(80), Decimal(40), Decimal(20)),
    3: RiskTierLimits(3, Decimal(20), Decimal(50), Decimal(100), Decimal(80), Decimal(35)),
}


def tier_limits(tier: int) -> RiskTierLimits:
    """Limits for a tier; unknown tiers get the strictest."""
    return RISK_TIERS.get(tier, RISK_TIERS[1])


# =============================================================================
# Protocol domain
# =============================================================================

class ProtocolRiskDomain:
    """
    Protocol-rule violations of a single operation.

    Substrate outages (sequencer, oracle, emergency halt) are stage-1 safety
    failures and are not scored here.

    Args:
        asset_whitelist: Tradable assets; None allows any asset
        max_price_deviation_bps: Allowed gap between execution and oracle price
    """

    def __init__(
        self,
        asset_whitelist: Optional[Iterable[str]] = None,
        max_price_deviation_bps: Decimal = Decimal(200),
    ):
        self.asset_whitelist: Optional[FrozenSet[str]] = (
            frozenset(asset_whitelist) if asset_whitelist is not None else None
        )
        self.max_price_deviation_bps = Decimal(max_price_deviation_bps)

    def evaluate(
        self,
        operation: Operation,
        health: SystemHealth,
        config: RiskConfig,
        price: Optional[CachedPrice] = None,
    ) -> DomainVerdict:
        limit = behavior = damage = ZERO
        reasons: List[str] = []

        if operation.kind == OperationKind.TRADE:
            if self.asset_whitelist is not None and operation.asset not in self.asset_whitelist:
                limit = Decimal(100)
                reasons.append(f"Asset {operation.asset} not whitelisted")

            if price is not None and operation.execution_price is not None and price.price > 0:
                deviation_bps = abs(operation.execution_price - price.price) / price.price * 10000
                damage = ratio_score(deviation_bps, self.max_price_deviation_bps)
                if damage > 0:
                    reasons.append(
                        f"Execution price {operation.execution_price} deviates "
                        f"{deviation_bps:.0f}bps from oracle {price.price}"
                    )

        if operation.requires_bridge and not health.bridge_up:
            behavior = Decimal(100)
            reasons.append("Bridge operation while bridge is paused")

        components = ViolationScoreComponents.of(limit, behavior, damage, 0)
        return _verdict(PROTOCOL, components, reasons, config)


# =============================================================================
# Fund domain
# =============================================================================

class FundRiskDomain:
    """Trade limits of a fund against its risk tier."""

    def __init__(self, tiers: Optional[Dict[int, RiskTierLimits]] = None):
        self.tiers = tiers or RISK_TIERS

    def limits_for(self, fund: Fund) -> RiskTierLimits:
        return self.tiers.get(fund.risk_tier, tier_limits(fund.risk_tier))

    def evaluate(self, operation: Operation, fund: Fund, config: RiskConfig) -> DomainVerdict:
        if operation.kind != OperationKind.TRADE:
            return _verdict(FUND, ViolationScoreComponents(), [], config)

        limits = self.limits_for(fund)
        nav = fund.net_asset_value
        reasons: List[str] = []

        # L - worst of PSL, PCL, AEL
        if nav <= 0:
            limit = Decimal(100) if operation.amount > 0 else ZERO
            if limit:
                reasons.append(f"Trade of {operation.amount} on a fund with zero NAV")
        else:
            position_pct = operation.amount / nav * 100
            asset_exposure = fund.exposures.get(operation.asset or "", ZERO) + operation.amount
            concentration_pct = asset_exposure / nav * 100
            exposure_pct = (sum(fund.exposures.values(), ZERO) + operation.amount) / nav * 100

            checks = (
                ("PSL", position_pct, limits.max_position_pct),
                ("PCL", concentration_pct, limits.max_concentration_pct),
                ("AEL", exposure_pct, limits.max_exposure_pct),
            )
            limit = ZERO
            for name, value, bound in checks:
                score = ratio_score(value, bound)
                if score > 0:
                    reasons.append(f"{name} {value:.2f}% > {bound}% (tier {limits.tier})")
                limit = max(limit, score)

        # B - realized volatility above the tier bound
        behavior = ratio_score(fund.realized_volatility_pct, limits.max_volatility_pct)
        if behavior > 0:
            reasons.append(
                f"Volatility {fund.realized_volatility_pct}% > {limits.max_volatility_pct}%"
            )

        # D - drawdown after booking the realized loss
        damage = ZERO
        if fund.high_water_mark > 0:
            post_nav = max(ZERO, nav - operation.fund_loss_usd)
            drawdown_pct = (fund.high_water_mark - post_nav) / fund.high_water_mark * 100
            damage = ratio_score(drawdown_pct, limits.max_drawdown_pct)
            if damage > 0:
                reasons.append(f"Drawdown {drawdown_pct:.2f}% > {limits.max_drawdown_pct}%")

        intent = clamp_score(operation.intent_probability)
        if intent > 0:
            reasons.append(f"Intent probability {intent}")

        components = ViolationScoreComponents.of(limit, behavior, damage, intent)
        return _verdict(FUND, components, reasons, config)


# =============================================================================
# Investor domain
# =============================================================================

class InvestorRiskDomain:
    """
    Behavioral risk of a deposit or withdrawal.

    Args:
        thresholds: Trigger bounds shared with the investor state machine
        violations_for_full_score: 30-day violation count that scores L=100
        damage_full_pct: Withdrawal size (% of NAV) that scores D=100
    """

    def __init__(
        self,
        thresholds: Optional[BehaviorThresholds] = None,
        violations_for_full_score: int = 5,
        damage_full_pct: Decimal = Decimal(50),
    ):
        self.thresholds = thresholds or BehaviorThresholds()
        self.violations_for_full_score = violations_for_full_score
        self.damage_full_pct = Decimal(damage_full_pct)

    def evaluate(
        self,
        operation: Operation,
        investor: Investor,
        metrics: BehaviorMetrics,
        fund: Fund,
        config: RiskConfig,
    ) -> DomainVerdict:
        if operation.kind == OperationKind.TRADE:
            return _verdict(INVESTOR, ViolationScoreComponents(), [], config)

        t = self.thresholds
        reasons: List[str] = []

        limit = clamp_score(
            Decimal(metrics.violations_30d) * 100 / Decimal(self.violations_for_full_score)
        )
        if metrics.violations_30d:
            reasons.append(f"{metrics.violations_30d} violation(s) in 30d")

        behavior = max(
            ratio_score(metrics.wbr, t.wbr_trigger),
            ratio_score(metrics.dvr, t.dvr_trigger),
            ratio_score(metrics.lri, t.lri_trigger),
        )
        if behavior > 0:
            reasons.append(f"Behavior WBR={metrics.wbr} DVR={metrics.dvr} LRI={metrics.lri}")

        damage = ZERO
        if operation.kind == OperationKind.WITHDRAWAL and fund.net_asset_value > 0:
            share_pct = operation.amount / fund.net_asset_value * 100
            damage = clamp_score(share_pct * 100 / self.damage_full_pct)
            if damage > 0:
                reasons.append(f"Withdrawal is {share_pct:.2f}% of NAV")

        intent = clamp_score(max(metrics.intent_probability, operation.intent_probability))
        if operation.confirmed_fraud:
            limit = intent = Decimal(100)
            reasons.append("Confirmed fraud")
        elif intent > 0:
            reasons.append(f"Intent probability {intent}")

        components = ViolationScoreComponents.of(limit, behavior, damage, intent)
        return _verdict(INVESTOR, components, reasons, config)
