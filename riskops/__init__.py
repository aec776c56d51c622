"""
Risk Ops - service layer around the risk core.

This package provides the operational features the core leaves to its host:

- Settings (pydantic-settings, TOSS_ environment prefix)
- RiskEngine façade wiring the pipeline to its collaborators
- Audit Logger (hash-chained, append-only JSONL)
- Event Bus (async pub/sub for indexers)
- Access control (roles, fund-scoped grants, sessions)
- FastAPI server and rich CLI
"""

__version__ = "0.1.0"

from riskops.config import settings
from riskops.event_bus import EventBus, EventType, Event
from riskops.engine import RiskEngine, get_engine, set_engine

__all__ = [
    "settings",
    "EventBus",
    "EventType",
    "Event",
    "RiskEngine",
    "get_engine",
    "set_engine",
]
