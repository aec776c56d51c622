# riskcore/fault_index.py
"""
Fault Index calculation.

FI = (wL*L + wB*B + wD*D + wI*I) / 100, floored to an integer.

Two distinct combinations exist and must not be conflated:
- compute_fi(): weighted sum of the four sub-scores inside one domain
- combine_domain_fi(): maximum across the protocol/fund/investor domains
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Union

from .config import FaultWeights, RiskConfig
from .validation import PreconditionError

Score = Union[int, float, Decimal]

FI_MIN = 0
FI_MAX = 100


class FaultBand(Enum):
    """Where a fault index sits relative to the configured thresholds."""
    CLEAN = "clean"
    WARNING = "warning"    # Approved but logged
    SLASHING = "slashing"  # Rejected, stake slashed
    BAN = "ban"            # Rejected, stake slashed, manager banned


@dataclass(frozen=True)
class ViolationScoreComponents:
    """L/B/D/I sub-scores for one operation. Logged, never persisted."""
    limit: Decimal = Decimal(0)
    behavior: Decimal = Decimal(0)
    damage: Decimal = Decimal(0)
    intent: Decimal = Decimal(0)

    @classmethod
    def of(cls, limit: Score = 0, behavior: Score = 0, damage: Score = 0, intent: Score = 0) -> "ViolationScoreComponents":
        return cls(
            limit=to_score(limit, "L"),
            behavior=to_score(behavior, "B"),
            damage=to_score(damage, "D"),
            intent=to_score(intent, "I"),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "L": str(self.limit),
            "B": str(self.behavior),
            "D": str(self.damage),
            "I": str(self.intent),
        }


def to_score(value: Score, name: str = "score") -> Decimal:
    """Convert a sub-score to Decimal and enforce the [0, 100] range."""
    if isinstance(value, bool):
        raise PreconditionError(f"Sub-score {name} must be numeric, got {value!r}")
    score = value if isinstance(value, Decimal) else Decimal(str(value))
    if not score.is_finite() or score < FI_MIN or score > FI_MAX:
        raise PreconditionError(f"Sub-score {name}={value} outside [0, 100]")
    return score


def compute_fi(
    limit: Score,
    behavior: Score,
    damage: Score,
    intent: Score,
    weights: FaultWeights,
) -> int:
    """
    Combine four 0-100 sub-scores into a 0-100 Fault Index.

    Pure: the same inputs and weights always produce the same output.
    FaultWeights enforces sum == 100 at construction.
    """
    if not isinstance(weights, FaultWeights):
        raise PreconditionError("weights must be a FaultWeights instance")

    scores = (
        to_score(limit, "L"),
        to_score(behavior, "B"),
        to_score(damage, "D"),
        to_score(intent, "I"),
    )
    weighted = sum(w * s for w, s in zip(weights.as_tuple(), scores))
    return int(weighted // 100)


def compute_fi_from(components: ViolationScoreComponents, weights: FaultWeights) -> int:
    return compute_fi(
        components.limit,
        components.behavior,
        components.damage,
        components.intent,
        weights,
    )


def combine_domain_fi(domain_fis: Iterable[int]) -> int:
    """Worst domain wins: max, never an average."""
    values = list(domain_fis)
    if not values:
        return FI_MIN
    for fi in values:
        if not FI_MIN <= fi <= FI_MAX:
            raise PreconditionError(f"Domain FI {fi} outside [0, 100]")
    return max(values)


def classify(fi: int, config: RiskConfig) -> FaultBand:
    if fi >= config.ban_threshold_fi:
        return FaultBand.BAN
    if fi >= config.min_slashing_fi:
        return FaultBand.SLASHING
    if fi >= config.warning_fi:
        return FaultBand.WARNING
    return FaultBand.CLEAN


def ratio_score(value: Score, limit: Score, full_breach: Score = 1) -> Decimal:
    """
    Map how far `value` exceeds `limit` onto 0-100.

    Zero at or below the limit, 100 once the excess reaches `full_breach`
    times the limit (default: double the limit).
    """
    value_d = Decimal(str(value))
    limit_d = Decimal(str(limit))
    if limit_d <= 0:
        return Decimal(FI_MAX) if value_d > 0 else Decimal(FI_MIN)
    excess = (value_d - limit_d) / limit_d
    if excess <= 0:
        return Decimal(FI_MIN)
    score = excess / Decimal(str(full_breach)) * FI_MAX
    return min(Decimal(FI_MAX), score)


def clamp_score(value: Score) -> Decimal:
    """Clamp a derived measurement (not a config value) into [0, 100]."""
    value_d = Decimal(str(value))
    return max(Decimal(FI_MIN), min(Decimal(FI_MAX), value_d))
