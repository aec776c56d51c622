# riskcore/transaction.py
"""
All-or-nothing commit of entity mutations.

Entities are deep-copied when they join the transaction. If the body raises,
the registered undo callbacks run in reverse order, then every joined entity
is restored field by field from its snapshot; the exception is re-raised.
Snapshots win over anything an undo callback wrote to a tracked entity.

on_commit callbacks run once the body finished without raising.
"""

import copy
import logging
from dataclasses import fields
from typing import Any, Callable, List, Tuple

logger = logging.getLogger(__name__)


class StateTransaction:
    """
    Usage:
        with StateTransaction("deposit:abc") as tx:
            tx.track(fund, investor)
            fund.set_nav(...)
            ledger.credit(...)
            tx.on_rollback(lambda: ledger.revert(...))
    """

    def __init__(self, label: str = ""):
        self.label = label
        self._snapshots: List[Tuple[Any, Any]] = []
        self._undo: List[Callable[[], None]] = []
        self._on_commit: List[Callable[[], None]] = []
        self.committed = False
        self.rolled_back = False

    def track(self, *entities: Any) -> None:
        for entity in entities:
            if entity is None or any(entity is tracked for tracked, _ in self._snapshots):
                continue
            self._snapshots.append((entity, copy.deepcopy(entity)))

    def on_rollback(self, undo: Callable[[], None]) -> None:
        self._undo.append(undo)

    def on_commit(self, callback: Callable[[], None]) -> None:
        self._on_commit.append(callback)

    def __enter__(self) -> "StateTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.committed = True
            for callback in self._on_commit:
                callback()
            return False

        logger.error(f"[TX] Rolling back {self.label or 'transaction'}: {exc}")
        self._rollback()
        return False

    def _rollback(self) -> None:
        for undo in reversed(self._undo):
            try:
                undo()
            except Exception as e:
                # Keep restoring the rest; the original error is re-raised by __exit__
                logger.critical(f"[TX] Undo step failed during rollback of {self.label}: {e}")

        for entity, snapshot in reversed(self._snapshots):
            for f in fields(entity):
                setattr(entity, f.name, getattr(snapshot, f.name))

        self.rolled_back = True
