# riskcore/circuit_breaker.py
"""
Systemic circuit breaker for the execution pipeline.

- GREEN: normal operation
- AMBER: elevated share of warning-band or slashed evaluations; still running
- BLACK: halted after a stage-1 (critical safety) failure

Only stage-1 failures halt. A halt lasts until reset() is called by an
operator; nothing un-halts automatically.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    GREEN = "green"    # Full operations
    AMBER = "amber"    # Elevated risk, operations continue
    BLACK = "black"    # Halted - every operation rejected at stage 1


@dataclass
class BreakerConfig:
    window_size: int = 50             # Evaluations kept in the rolling window
    min_samples: int = 10             # Below this, never leave GREEN
    amber_threshold: float = 0.3      # Share of flagged evaluations that raises AMBER
    recovery_threshold: float = 0.1   # Share under which AMBER drops back to GREEN


class SafetyBreaker:
    """Pipeline-wide halt switch with a rolling risk window."""

    def __init__(self, config: Optional[BreakerConfig] = None):
        self.config = config or BreakerConfig()
        self._lock = threading.Lock()

        self.state = CircuitState.GREEN
        self.halt_reason: Optional[str] = None
        self.halted_at: Optional[datetime] = None
        self._window: Deque[bool] = deque(maxlen=self.config.window_size)
        self._history: Deque[Dict[str, Any]] = deque(maxlen=200)
        self._trips = 0

        # Callbacks
        self.on_state_change: Optional[Callable[[CircuitState, CircuitState, str], None]] = None

    # ========================================================================
    # Public API
    # ========================================================================

    @property
    def halted(self) -> bool:
        return self.state == CircuitState.BLACK

    def trip(self, reason: str) -> None:
        """Halt the whole pipeline."""
        with self._lock:
            if self.state == CircuitState.BLACK:
                return
            self._trips += 1
            self.halt_reason = reason
            self.halted_at = datetime.now()
            old = self._set_state(CircuitState.BLACK, reason)

        logger.critical(f"[BREAKER] HALTED: {reason}")
        self._notify(old, CircuitState.BLACK, reason)

    def reset(self, by: str = "operator") -> bool:
        """Manual un-halt. Returns False if there was nothing to reset."""
        with self._lock:
            if self.state == CircuitState.GREEN:
                return False
            reason = f"Reset by {by}"
            old = self._set_state(CircuitState.GREEN, reason)
            self.halt_reason = None
            self.halted_at = None
            self._window.clear()

        logger.warning(f"[BREAKER] {old.value.upper()} -> GREEN ({reason})")
        self._notify(old, CircuitState.GREEN, reason)
        return True

    def record_evaluation(self, flagged: bool) -> None:
        """
        Count one stage-2 evaluation.

        flagged: the combined FI landed in the warning band or above.
        """
        transition = None
        with self._lock:
            self._window.append(flagged)
            if self.state == CircuitState.BLACK or len(self._window) < self.config.min_samples:
                return

            rate = self._flagged_rate()
            if self.state == CircuitState.GREEN and rate >= self.config.amber_threshold:
                reason = f"Flagged rate {rate:.0%} >= {self.config.amber_threshold:.0%}"
                transition = (self._set_state(CircuitState.AMBER, reason), CircuitState.AMBER, reason)
            elif self.state == CircuitState.AMBER and rate <= self.config.recovery_threshold:
                reason = f"Flagged rate {rate:.0%} <= {self.config.recovery_threshold:.0%}"
                transition = (self._set_state(CircuitState.GREEN, reason), CircuitState.GREEN, reason)

        if transition:
            old, new, reason = transition
            logger.warning(f"[BREAKER] {old.value.upper()} -> {new.value.upper()} ({reason})")
            self._notify(old, new, reason)

    def get_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self._history)[-limit:]

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state.value,
                "halted": self.state == CircuitState.BLACK,
                "halt_reason": self.halt_reason,
                "halted_at": self.halted_at.isoformat() if self.halted_at else None,
                "trips": self._trips,
                "window": {
                    "samples": len(self._window),
                    "flagged_rate": self._flagged_rate(),
                },
            }

    # ========================================================================
    # Internal Methods
    # ========================================================================

    def _flagged_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(self._window) / len(self._window)

    def _set_state(self, new: CircuitState, reason: str) -> CircuitState:
        old = self.state
        self.state = new
        self._history.append({
            "timestamp": datetime.now().isoformat(),
            "from": old.value,
            "to": new.value,
            "reason": reason,
        })
        return old

    def _notify(self, old: CircuitState, new: CircuitState, reason: str) -> None:
        if self.on_state_change:
            self.on_state_change(old, new, reason)
