"""
TOSS Risk Engine FastAPI Server
===============================

REST API over the risk engine: operation submission, previews, investor
state, breaker control and audit verification.

Usage:
    uvicorn riskops.api:app --host 0.0.0.0 --port 8000
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from riskcore.models import Operation, OperationKind
from riskcore.validation import CircuitHaltedError, PreconditionError
from riskops.audit_logger import AuditQuery, EventType as AuditEventType
from riskops.config import settings
from riskops.engine import RiskEngine, get_engine

logger = logging.getLogger(__name__)


# =============================================================================
# Lifecycle
# =============================================================================

_engine: Optional[RiskEngine] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global _engine

    logger.info("[RiskAPI] Starting API server...")
    _engine = get_engine()
    await _engine.bus.start()
    logger.info(f"[RiskAPI] Engine ready at config v{_engine.config_provider.current().version}")

    yield

    logger.info("[RiskAPI] Shutting down API server...")
    await _engine.bus.stop()
    _engine.price_cache.close()
    _engine = None


def engine() -> RiskEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Risk engine not initialized")
    return _engine


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="TOSS Risk Engine API",
    description="""
    ## Deterministic risk validation for managed funds

    Every fund operation passes five ordered stages: critical safety, risk
    validation (Fault Index), permissions, operation validation and execution.
    Only the risk-validation stage can slash a fund manager's stake.
    """,
    version=settings.app_version,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check and system status"},
        {"name": "config", "description": "Versioned risk configuration"},
        {"name": "preview", "description": "Pure Fault Index and slash calculations"},
        {"name": "operations", "description": "Fund operation submission"},
        {"name": "entities", "description": "Funds, managers and investors"},
        {"name": "circuit_breaker", "description": "Pipeline halt status and reset"},
        {"name": "audit", "description": "Audit log querying and verification"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Pydantic Models
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    timestamp: str
    config_version: int
    breaker_state: str
    substrate: Dict[str, bool]


class FaultIndexRequest(BaseModel):
    """Violation score components, each 0-100"""
    limit: Decimal = Field(Decimal(0), ge=0, le=100)
    behavior: Decimal = Field(Decimal(0), ge=0, le=100)
    damage: Decimal = Field(Decimal(0), ge=0, le=100)
    intent: Decimal = Field(Decimal(0), ge=0, le=100)
    config_version: Optional[int] = None


class SlashPreviewRequest(BaseModel):
    """Inputs of one slash calculation"""
    stake: Decimal = Field(..., ge=0)
    fault_index: int = Field(..., ge=0, le=100)
    fund_loss_usd: Decimal = Field(..., ge=0)
    manager_total_stake: Decimal = Field(..., ge=0)
    toss_price: Optional[Decimal] = Field(None, gt=0)
    config_version: Optional[int] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"stake": "10000", "fault_index": 50, "fund_loss_usd": "5000", "manager_total_stake": "10000"},
            ]
        }
    }


class OperationRequest(BaseModel):
    """A proposed fund operation"""
    kind: OperationKind
    fund_id: str
    caller_id: str
    amount: Decimal
    investor_id: Optional[str] = None
    asset: Optional[str] = None
    session_id: Optional[str] = None
    execution_price: Optional[Decimal] = None
    realized_pnl_usd: Decimal = Decimal(0)
    fund_loss_usd: Decimal = Decimal(0)
    intent_probability: Decimal = Field(Decimal(0), ge=0, le=100)
    confirmed_fraud: bool = False
    systemic_risk: bool = False
    requires_bridge: bool = False

    def to_operation(self) -> Operation:
        return Operation(**self.model_dump())


class FundRequest(BaseModel):
    """Register a fund and its manager's stake"""
    fund_id: str
    manager_id: str
    nav: Decimal = Field(Decimal(0), ge=0)
    risk_tier: int = Field(1, ge=1, le=3)
    stake: Decimal = Field(Decimal(0), ge=0)


class InvestorRequest(BaseModel):
    investor_id: str


class ReviewRequest(BaseModel):
    """Manual review approval for a FROZEN investor"""
    reviewer: str


class ResetRequest(BaseModel):
    actor: str = "operator"


# =============================================================================
# Health & Status Routes
# =============================================================================

@app.get("/", tags=["health"])
async def root():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check():
    """Health of the substrate and the pipeline breaker"""
    eng = engine()
    breaker = eng.breaker.get_status()
    healthy = eng.health.healthy and not breaker["halted"]

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=settings.app_version,
        timestamp=datetime.now().isoformat(),
        config_version=eng.config_provider.current().version,
        breaker_state=breaker["state"],
        substrate={
            "sequencer_up": eng.health.sequencer_up,
            "bridge_up": eng.health.bridge_up,
            "oracle_up": eng.health.oracle_up,
            "emergency_halt": eng.health.emergency_halt,
        },
    )


@app.get("/api/v1/stats", tags=["health"])
async def get_stats():
    return engine().get_status()


# =============================================================================
# Config Routes
# =============================================================================

@app.get("/api/v1/config", tags=["config"])
async def get_config():
    provider = engine().config_provider
    return {"current": provider.current().to_dict(), "versions": provider.versions()}


@app.get("/api/v1/config/{version}", tags=["config"])
async def get_config_version(version: int):
    return engine().config_provider.get(version).to_dict()


# =============================================================================
# Preview Routes
# =============================================================================

@app.post("/api/v1/fault_index/preview", tags=["preview"])
async def preview_fault_index(request: FaultIndexRequest):
    """Weighted Fault Index and band for the given components"""
    return engine().preview_fault_index(
        request.limit, request.behavior, request.damage, request.intent, request.config_version,
    )


@app.post("/api/v1/slashing/preview", tags=["preview"])
async def preview_slash(request: SlashPreviewRequest):
    """Slash, burn and compensation amounts; nothing is applied"""
    computation = engine().preview_slash(
        stake=request.stake,
        fault_index=request.fault_index,
        fund_loss_usd=request.fund_loss_usd,
        manager_total_stake=request.manager_total_stake,
        toss_price=request.toss_price,
        version=request.config_version,
    )
    return computation.to_dict()


# =============================================================================
# Operation Routes
# =============================================================================

@app.post("/api/v1/operations", tags=["operations"])
async def submit_operation(request: OperationRequest, strict: bool = False):
    """
    Run an operation through the pipeline.

    Rejections and slashes are returned with 200; the outcome kind tells them apart.
    With strict=true a halted pipeline answers 503 instead.
    """
    outcome = engine().submit(request.to_operation(), raise_on_halt=strict)
    return outcome.to_dict()


# =============================================================================
# Entity Routes
# =============================================================================

@app.post("/api/v1/funds", tags=["entities"], status_code=201)
async def register_fund(request: FundRequest):
    fund = engine().register_fund(
        request.fund_id, request.manager_id, request.nav, request.risk_tier, request.stake,
    )
    return fund.to_dict()


@app.get("/api/v1/funds/{fund_id}", tags=["entities"])
async def get_fund(fund_id: str):
    fund = engine().store.funds.get(fund_id)
    if fund is None:
        raise HTTPException(status_code=404, detail=f"Fund {fund_id} not found")
    return fund.to_dict()


@app.get("/api/v1/managers/{manager_id}", tags=["entities"])
async def get_manager(manager_id: str):
    manager = engine().store.managers.get(manager_id)
    if manager is None:
        raise HTTPException(status_code=404, detail=f"Manager {manager_id} not found")
    return manager.to_dict()


@app.post("/api/v1/investors", tags=["entities"], status_code=201)
async def register_investor(request: InvestorRequest):
    return engine().register_investor(request.investor_id).to_dict()


@app.get("/api/v1/investors/{investor_id}", tags=["entities"])
async def get_investor(investor_id: str):
    eng = engine()
    investor = eng.store.investors.get(investor_id)
    if investor is None:
        raise HTTPException(status_code=404, detail=f"Investor {investor_id} not found")
    data = investor.to_dict()
    data["limits"] = eng.state_machine.limits_for(investor.state).to_dict()
    return data


@app.post("/api/v1/investors/{investor_id}/review", tags=["entities"])
async def approve_review(investor_id: str, request: ReviewRequest):
    eng = engine()
    if investor_id not in eng.store.investors:
        raise HTTPException(status_code=404, detail=f"Investor {investor_id} not found")
    transitions = eng.approve_review(investor_id, request.reviewer)
    return {
        "investor_id": investor_id,
        "state": eng.store.investors.get(investor_id).state.value,
        "transitions": [t.to_dict() for t in transitions],
    }


# =============================================================================
# Circuit Breaker Routes
# =============================================================================

@app.get("/api/v1/circuit_breaker/status", tags=["circuit_breaker"])
async def get_breaker_status():
    return engine().breaker.get_status()


@app.get("/api/v1/circuit_breaker/history", tags=["circuit_breaker"])
async def get_breaker_history(limit: int = 50):
    return {"history": engine().breaker.get_history(limit)}


@app.post("/api/v1/circuit_breaker/reset", tags=["circuit_breaker"])
async def reset_breaker(request: ResetRequest):
    reset = engine().reset_breaker(request.actor)
    return {"reset": reset, "state": engine().breaker.state.value}


# =============================================================================
# Audit Routes
# =============================================================================

@app.get("/api/v1/audit/events", tags=["audit"])
async def get_audit_events(
    entity_id: Optional[str] = None,
    event_type: Optional[str] = None,
    config_version: Optional[int] = None,
    limit: int = 100,
):
    """Query audit log"""
    audit = engine().audit
    if audit is None:
        raise HTTPException(status_code=503, detail="Audit logging disabled")

    event_types: Optional[List[AuditEventType]] = None
    if event_type:
        try:
            event_types = [AuditEventType(event_type)]
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown event type {event_type}")

    query = AuditQuery(event_types=event_types, entity_id=entity_id, config_version=config_version, limit=limit)
    events = audit.query(query)

    return {"events": [e.to_dict() for e in events], "count": len(events)}


@app.get("/api/v1/audit/verify", tags=["audit"])
async def verify_audit_chain():
    """Verify audit log chain integrity"""
    audit = engine().audit
    if audit is None:
        raise HTTPException(status_code=503, detail="Audit logging disabled")
    return audit.verify_chain()


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(PreconditionError)
async def precondition_handler(request, exc: PreconditionError):
    return JSONResponse(status_code=422, content={"error": "Precondition failed", "detail": str(exc)})


@app.exception_handler(CircuitHaltedError)
async def halted_handler(request, exc: CircuitHaltedError):
    return JSONResponse(status_code=503, content={"error": "Pipeline halted", "detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"[RiskAPI] Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)},
    )


__all__ = ["app", "lifespan"]
