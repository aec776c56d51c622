# riskcore/store.py
"""
Arena-style entity storage with one lock per entity id.

Two operations touching the same fund, manager or investor are serialized;
operations on different entities proceed in parallel. Locks are always taken
in a fixed global order so multi-entity operations cannot deadlock.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from .models import Fund, FundManager, Investor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Kind prefixes define the lock ordering: funds, then managers, then investors
FUND = "fund"
MANAGER = "manager"
INVESTOR = "investor"
_KIND_ORDER = {FUND: 0, MANAGER: 1, INVESTOR: 2}


class Arena(Generic[T]):
    """Entities of one kind keyed by id."""

    def __init__(self, kind: str):
        self.kind = kind
        self._items: Dict[str, T] = {}
        self._guard = threading.Lock()

    def put(self, entity_id: str, entity: T) -> T:
        with self._guard:
            self._items[entity_id] = entity
        return entity

    def get(self, entity_id: Optional[str]) -> Optional[T]:
        if entity_id is None:
            return None
        with self._guard:
            return self._items.get(entity_id)

    def ids(self) -> List[str]:
        with self._guard:
            return sorted(self._items)

    def __contains__(self, entity_id: str) -> bool:
        with self._guard:
            return entity_id in self._items

    def __len__(self) -> int:
        with self._guard:
            return len(self._items)


class EntityStore:
    """Funds, managers and investors plus the per-entity lock table."""

    def __init__(self):
        self.funds: Arena[Fund] = Arena(FUND)
        self.managers: Arena[FundManager] = Arena(MANAGER)
        self.investors: Arena[Investor] = Arena(INVESTOR)
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def add_fund(self, fund: Fund) -> Fund:
        return self.funds.put(fund.fund_id, fund)

    def add_manager(self, manager: FundManager) -> FundManager:
        return self.managers.put(manager.manager_id, manager)

    def add_investor(self, investor: Investor) -> Investor:
        return self.investors.put(investor.investor_id, investor)

    def lock_for(self, kind: str, entity_id: str) -> threading.RLock:
        key = (kind, entity_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def locked(self, *keys: Tuple[str, Optional[str]]) -> Iterator[None]:
        """
        Hold the locks for every (kind, id) given, acquired in global order.

        Keys with a None id are skipped.
        """
        wanted = sorted(
            {(kind, eid) for kind, eid in keys if eid is not None},
            key=lambda k: (_KIND_ORDER[k[0]], k[1]),
        )
        acquired: List[threading.RLock] = []
        try:
            for kind, eid in wanted:
                lock = self.lock_for(kind, eid)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
