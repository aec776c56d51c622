# riskcore/config.py
"""
Versioned risk configuration.

RiskConfig is an immutable snapshot. Its field bounds are checked once,
at construction; the formulas never re-validate or clamp. ConfigProvider
holds every published snapshot by version so that any past calculation can
be replayed against the exact parameters it used.
"""

import logging
import threading
from dataclasses import dataclass, asdict, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .validation import PreconditionError

logger = logging.getLogger(__name__)


# Governance-enforced bounds
GAMMA_BOUNDS = (50, 90)
ALPHA_BOUNDS = (Decimal("0.5"), Decimal("2.0"))
MIN_SLASHING_FI_BOUNDS = (20, 50)
BAN_THRESHOLD_FI_BOUNDS = (75, 95)


@dataclass(frozen=True)
class FaultWeights:
    """Weights for the L/B/D/I sub-scores. Must sum to exactly 100."""
    limit: int = 30      # L - limit-breach severity
    behavior: int = 20   # B - behavior anomaly
    damage: int = 30     # D - damage ratio
    intent: int = 20     # I - intent probability

    def __post_init__(self):
        values = self.as_tuple()
        if any(not isinstance(w, int) or isinstance(w, bool) for w in values):
            raise PreconditionError(f"Fault weights must be integers, got {values}")
        if any(w < 0 for w in values):
            raise PreconditionError(f"Fault weights must be non-negative, got {values}")
        if sum(values) != 100:
            raise PreconditionError(f"Fault weights must sum to 100, got {sum(values)}")

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.limit, self.behavior, self.damage, self.intent)


@dataclass(frozen=True)
class RiskConfig:
    """
    Immutable, versioned snapshot of every tunable risk parameter.

    gamma is the percentage of a slash routed to NAV compensation; the rest
    is burned. alpha bounds a slash relative to the realized USD loss.
    """
    version: int = 1
    weights: FaultWeights = field(default_factory=FaultWeights)
    gamma: int = 80
    alpha: Decimal = Decimal("1.0")
    min_slashing_fi: int = 30
    ban_threshold_fi: int = 85
    warning_fi: int = 10

    def __post_init__(self):
        if not isinstance(self.version, int) or self.version < 1:
            raise PreconditionError(f"Config version must be a positive integer, got {self.version!r}")
        if not isinstance(self.weights, FaultWeights):
            raise PreconditionError("weights must be a FaultWeights instance")

        if not isinstance(self.alpha, Decimal):
            # Normalize floats/ints through str so 1.5 stays 1.5
            object.__setattr__(self, "alpha", Decimal(str(self.alpha)))

        _check_bounds("gamma", self.gamma, *GAMMA_BOUNDS)
        _check_bounds("alpha", self.alpha, *ALPHA_BOUNDS)
        _check_bounds("min_slashing_fi", self.min_slashing_fi, *MIN_SLASHING_FI_BOUNDS)
        _check_bounds("ban_threshold_fi", self.ban_threshold_fi, *BAN_THRESHOLD_FI_BOUNDS)

        if not 0 <= self.warning_fi < self.min_slashing_fi:
            raise PreconditionError(
                f"warning_fi must be in [0, min_slashing_fi), got {self.warning_fi}"
            )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["alpha"] = str(self.alpha)
        return data


def _check_bounds(name: str, value: Any, low: Any, high: Any) -> None:
    if isinstance(value, bool) or value is None:
        raise PreconditionError(f"{name} must be numeric, got {value!r}")
    if not low <= value <= high:
        raise PreconditionError(f"{name}={value} outside governance bounds [{low}, {high}]")


class ConfigProvider:
    """
    Read-only, versioned view of the risk configuration.

    The external governance collaborator calls publish(); everything in this
    package only reads. Published versions must strictly increase.
    """

    def __init__(self, initial: Optional[RiskConfig] = None):
        self._lock = threading.Lock()
        first = initial or RiskConfig()
        self._snapshots: Dict[int, RiskConfig] = {first.version: first}
        self._current_version = first.version
        logger.info(f"[CONFIG] Initialized at version {first.version}")

    def publish(self, config: RiskConfig) -> RiskConfig:
        """Install a new snapshot produced by governance."""
        with self._lock:
            if config.version <= self._current_version:
                raise PreconditionError(
                    f"Config version {config.version} must exceed current {self._current_version}"
                )
            self._snapshots[config.version] = config
            self._current_version = config.version
        logger.warning(f"[CONFIG] Published version {config.version}: {config.to_dict()}")
        return config

    def current(self) -> RiskConfig:
        return self._snapshots[self._current_version]

    def get(self, version: int) -> RiskConfig:
        try:
            return self._snapshots[version]
        except KeyError:
            raise PreconditionError(f"Unknown config version {version}") from None

    def versions(self) -> List[int]:
        return sorted(self._snapshots)

    # Collaborator-facing getters

    def get_weights(self) -> FaultWeights:
        return self.current().weights

    def get_gamma(self) -> int:
        return self.current().gamma

    def get_alpha(self) -> Decimal:
        return self.current().alpha

    def get_min_slashing_fi(self) -> int:
        return self.current().min_slashing_fi

    def get_ban_threshold_fi(self) -> int:
        return self.current().ban_threshold_fi
