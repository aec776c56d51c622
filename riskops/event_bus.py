"""
Risk Event Bus

Async pub/sub for external indexers and notifiers.

The risk pipeline is synchronous and may run on worker threads, so it
publishes with emit(). Events emitted before start() are buffered and
flushed into the queue when the processing loop comes up.
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types published by the risk engine."""

    # Decisions
    OPERATION_EVALUATED = "operation_evaluated"
    SLASHING_EXECUTED = "slashing_executed"
    STATE_TRANSITIONED = "state_transitioned"

    # Systemic
    CIRCUIT_HALTED = "circuit_halted"
    CIRCUIT_RESET = "circuit_reset"
    CIRCUIT_ELEVATED = "circuit_elevated"

    # Governance
    CONFIG_PUBLISHED = "config_published"
    REVIEW_APPROVED = "review_approved"


@dataclass
class Event:
    """One published fact. data is the same payload the audit log receives."""

    type: EventType
    data: Dict[str, Any]
    timestamp: float
    entity_id: Optional[str] = None
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, event_type: EventType, data: Dict[str, Any], **kwargs) -> "Event":
        return cls(type=event_type, data=data, timestamp=datetime.now().timestamp(), **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "entity_id": self.entity_id,
            "correlation_id": self.correlation_id,
            "metadata": self.metadata,
        }


Handler = Callable[[Event], Awaitable[Any]]


@dataclass
class Subscription:
    handler: Handler
    filter_func: Optional[Callable[[Event], bool]] = None

    def accepts(self, event: Event) -> bool:
        if self.filter_func is None:
            return True
        try:
            return bool(self.filter_func(event))
        except Exception as e:
            logger.error(f"[EventBus] Filter of {_name(self.handler)} failed on {event.type.value}: {e}")
            return False


class EventBus:
    """
    Async event bus.

    Features:
    - Pub/sub with a filter per subscription
    - Handler errors isolated and logged
    - Thread-safe emit() for the synchronous pipeline
    - Bounded event history
    """

    def __init__(self, persist_events: bool = False, max_history: int = 10000):
        self._subscriptions: Dict[EventType, List[Subscription]] = {}
        self._persist_events = persist_events
        self._history: Deque[Event] = deque(maxlen=max_history)
        self._lock = threading.Lock()

        # Created in start() so the queue belongs to the running loop
        self._queue: Optional[asyncio.Queue] = None
        self._pending: Deque[Event] = deque()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._dispatched = 0

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> None:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to
            handler: Async callback
            filter_func: Return False to skip this handler for an event
        """
        self._subscriptions.setdefault(event_type, []).append(Subscription(handler, filter_func))
        logger.debug(f"[EventBus] {_name(handler)} subscribed to {event_type.value}")

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        subs = self._subscriptions.get(event_type, [])
        self._subscriptions[event_type] = [s for s in subs if s.handler != handler]

    # ========================================================================
    # Publishing
    # ========================================================================

    def emit(self, event: Event) -> None:
        """Publish from synchronous code on any thread."""
        self._remember(event)

        with self._lock:
            loop, queue = self._loop, self._queue
            if loop is None or queue is None or loop.is_closed():
                self._pending.append(event)
                return

        try:
            on_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            on_loop = False

        if on_loop:
            queue.put_nowait(event)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, event)

    async def publish(self, event: Event) -> None:
        self.emit(event)

    async def publish_and_wait(self, event: Event) -> List[Any]:
        """Run the matching handlers directly and return their non-error results."""
        self._remember(event)
        subs = [s for s in self._subscriptions.get(event.type, []) if s.accepts(event)]
        results = await asyncio.gather(*(s.handler(event) for s in subs), return_exceptions=True)
        return [r for r in results if not isinstance(r, Exception)]

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        if self._running:
            logger.warning("[EventBus] Already running")
            return

        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            while self._pending:
                queue.put_nowait(self._pending.popleft())
            self._queue = queue
            self._loop = asyncio.get_running_loop()

        self._running = True
        self._task = asyncio.create_task(self._process_loop())
        logger.info(f"[EventBus] Started ({queue.qsize()} buffered event(s))")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        with self._lock:
            # Undelivered events wait for the next start()
            while self._queue is not None and not self._queue.empty():
                self._pending.append(self._queue.get_nowait())
            self._queue = None
            self._loop = None
        logger.info("[EventBus] Stopped")

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait until every queued event has been dispatched."""
        if self._queue is not None:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def _process_loop(self) -> None:
        queue = self._queue
        while self._running:
            event = await queue.get()
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.error(f"[EventBus] Dispatch of {event.type.value} failed: {e}")
            finally:
                queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        subs = [s for s in self._subscriptions.get(event.type, []) if s.accepts(event)]
        if subs:
            await asyncio.gather(*(self._safe_call(s.handler, event) for s in subs))
        self._dispatched += 1

    @staticmethod
    async def _safe_call(handler: Handler, event: Event) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error(f"[EventBus] Handler {_name(handler)} failed for {event.type.value}: {e}")

    # ========================================================================
    # History & stats
    # ========================================================================

    def _remember(self, event: Event) -> None:
        if self._persist_events:
            with self._lock:
                self._history.append(event)

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        with self._lock:
            events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            queued = self._queue.qsize() if self._queue is not None else len(self._pending)
            history_size = len(self._history)
        return {
            "running": self._running,
            "subscribers": {t.value: len(subs) for t, subs in self._subscriptions.items()},
            "queue_size": queued,
            "dispatched": self._dispatched,
            "history_size": history_size,
            "persist_events": self._persist_events,
        }


def _name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))
