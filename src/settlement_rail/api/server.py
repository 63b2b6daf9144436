"""
SETTLEMENT RAIL - FastAPI Server

Endpoints:
- POST /usage - Record a usage rollup (reporter)
- POST /usage/batch - Record a batch of rollups atomically (reporter)
- GET /usage/{entity_id} - Read an entity's ledger record
- POST /settle/{category} - Settle a category for a list of entities (anyone)
- POST /terminate - Terminate an entity's primary rail (reporter)
- PUT /rates/{category} - Change a rate (administrator)
- PUT /roles/reporter, PUT /roles/administrator - Reassign roles (administrator)
- POST /rails - Register a payment rail (administrator)
- POST /rails/{rail_id}/top-up - Raise a rail's lockup limit (administrator)
- GET /facts - Query the fact journal
- GET /facts/verify - Verify the fact chain
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import APIRouter, FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import RailConfig
from ..core.collaborator import RailError, RailRegistration
from ..core.errors import AuthorizationError, LedgerError, StateError, ValidationError
from ..core.facts import FactType
from ..core.rates import BillingCategory
from ..operator import LedgerOperator

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class UsageReportRequest(BaseModel):
    """A single usage rollup."""
    entity_id: str = Field(..., description="Billed entity identifier")
    epoch: int = Field(..., description="Rollup epoch, strictly increasing per entity")
    primary_units: int = Field(..., description="Primary usage units (e.g. bytes)")
    secondary_units: int = Field(..., description="Secondary usage units (e.g. bytes)")


class UsageBatchRequest(BaseModel):
    """Parallel columns of usage rollups, applied all-or-nothing."""
    entity_ids: List[str]
    epochs: List[int]
    primary_units: List[int]
    secondary_units: List[int]


class SettleRequest(BaseModel):
    entity_ids: List[str] = Field(..., description="Entities to settle, processed in order")


class TerminateRequest(BaseModel):
    entity_id: str


class RateRequest(BaseModel):
    rate: int = Field(..., description="Amount per unit")


class RoleRequest(BaseModel):
    identity: str


class RailRequest(BaseModel):
    entity_id: str
    category: str = Field(..., description="PRIMARY or SECONDARY")
    rail_id: str = Field(..., description="Collaborator rail identifier (Stripe customer id)")
    lockup_limit: int = Field(default=0, description="Initial lockup (in-memory rails)")
    subscription_id: Optional[str] = None


class TopUpRequest(BaseModel):
    amount: int = Field(..., description="Amount added to the lockup limit")


class UsageRecordResponse(BaseModel):
    entity_id: str
    primary_accumulated: int
    secondary_accumulated: int
    max_reported_epoch: int
    last_primary_settled_epoch: int
    last_secondary_settled_epoch: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    primary_rate: int
    secondary_rate: int
    facts: int
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, config: Optional[RailConfig] = None):
        self.config = config or RailConfig.from_env()
        self.operator = LedgerOperator.from_config(self.config)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("settlement_rail_starting", version=VERSION)
    app_state = AppState(app.state.config)
    yield
    logger.info("settlement_rail_stopping")


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if isinstance(exc, AuthorizationError):
        status_code = 403
    elif isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, StateError):
        status_code = 409
    else:
        status_code = 500
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


async def rail_error_handler(request: Request, exc: RailError) -> JSONResponse:
    logger.error("payment_collaborator_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=502,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def create_app(config: Optional[RailConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or RailConfig.from_env()
    application = FastAPI(
        title="Settlement Rail",
        description="""
# Usage Accounting and Settlement Ledger

Usage rollups are converted to billable amounts at report time and
accumulated per entity. Settlement draws them down against the lockup limit
of each entity's payment rail, partially if needed, and can be repeated
until the remainder is drained.
        """,
        version=VERSION,
        lifespan=lifespan,
    )
    application.state.config = config

    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(LedgerError, ledger_error_handler)
    application.add_exception_handler(RailError, rail_error_handler)
    application.include_router(router)

    return application


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_caller(x_caller_id: str = Header(..., alias="X-Caller-Id")) -> str:
    """Identity the caller acts as; checked against the role an endpoint needs."""
    return x_caller_id


def parse_category(category: str) -> BillingCategory:
    try:
        return BillingCategory.parse(category)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid category: {category}")


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        primary_rate=state.operator.rates.primary_rate,
        secondary_rate=state.operator.rates.secondary_rate,
        facts=len(state.operator.journal),
        uptime_seconds=uptime,
    )


@router.get("/usage/{entity_id}", response_model=UsageRecordResponse, tags=["Ledger"])
async def get_usage(entity_id: str, state: AppState = Depends(get_state)):
    """Ledger record for an entity (all zeros if never reported)."""
    return UsageRecordResponse(**state.operator.get_usage(entity_id).to_dict())


@router.post("/usage", response_model=UsageRecordResponse, tags=["Ledger"])
def record_usage(
    request: UsageReportRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
    caller: str = Depends(get_caller),
):
    """Record one usage rollup. Reporter only."""
    record = state.operator.record_usage(
        caller,
        request.entity_id,
        request.epoch,
        request.primary_units,
        request.secondary_units,
    )
    return UsageRecordResponse(**record.to_dict())


@router.post("/usage/batch", tags=["Ledger"])
def record_usage_batch(
    request: UsageBatchRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
    caller: str = Depends(get_caller),
):
    """
    Record a batch of rollups. Reporter only.

    If any rollup is invalid nothing in the batch is recorded.
    """
    records = state.operator.record_usage_batch(
        caller,
        request.entity_ids,
        request.epochs,
        request.primary_units,
        request.secondary_units,
    )
    return {
        "recorded": len(records),
        "records": [r.to_dict() for r in records],
    }


@router.post("/settle/{category}", tags=["Settlement"])
def settle(
    category: str,
    request: SettleRequest,
    state: AppState = Depends(get_state),
):
    """
    Settle a billing category for the given entities.

    Open to any caller. Entities with nothing settleable are skipped, so
    inspect each result to see which ones actually moved funds.
    """
    results = state.operator.settle(parse_category(category), request.entity_ids)
    return {
        "category": category.upper(),
        "total_settled": sum(r.settled_amount for r in results),
        "results": [r.to_dict() for r in results],
    }


@router.post("/terminate", tags=["Settlement"])
def terminate(
    request: TerminateRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
    caller: str = Depends(get_caller),
):
    """Terminate an entity's primary rail. Reporter only."""
    state.operator.terminate(caller, request.entity_id)
    return {
        "entity_id": request.entity_id,
        "terminated": True,
        "terminated_at": datetime.now(timezone.utc).isoformat(),
    }


@router.put("/rates/{category}", tags=["Administration"])
def set_rate(
    category: str,
    request: RateRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
    caller: str = Depends(get_caller),
):
    """Change a conversion rate. Applies to usage reported afterwards."""
    change = state.operator.set_rate(caller, parse_category(category), request.rate)
    return change.to_dict()


@router.put("/roles/reporter", tags=["Administration"])
def set_reporter(
    request: RoleRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
    caller: str = Depends(get_caller),
):
    old, new = state.operator.set_reporter(caller, request.identity)
    return {"role": "REPORTER", "old": old, "new": new}


@router.put("/roles/administrator", tags=["Administration"])
def transfer_administration(
    request: RoleRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
    caller: str = Depends(get_caller),
):
    old, new = state.operator.transfer_administration(caller, request.identity)
    return {"role": "ADMINISTRATOR", "old": old, "new": new}


@router.post("/rails", tags=["Administration"])
def register_rail(
    request: RailRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
    caller: str = Depends(get_caller),
):
    """Bind a payment rail to an (entity, category) pair."""
    registration = RailRegistration(
        entity_id=request.entity_id,
        category=parse_category(request.category),
        rail_id=request.rail_id,
        lockup_limit=request.lockup_limit,
        subscription_id=request.subscription_id,
    )
    state.operator.register_rail(caller, registration)
    return {
        "entity_id": registration.entity_id,
        "category": registration.category.value,
        "rail_id": registration.rail_id,
    }


@router.post("/rails/{rail_id}/top-up", tags=["Administration"])
def top_up_rail(
    rail_id: str,
    request: TopUpRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
    caller: str = Depends(get_caller),
):
    """Raise a rail's lockup limit so remaining amounts can settle."""
    lockup = state.operator.top_up(caller, rail_id, request.amount)
    return {"rail_id": rail_id, "lockup_limit": lockup}


@router.get("/facts", tags=["Audit"])
async def get_facts(
    entity_id: Optional[str] = None,
    fact_type: Optional[str] = None,
    limit: int = 100,
    state: AppState = Depends(get_state),
):
    """Query the fact journal, oldest first."""
    kind: Optional[FactType] = None
    if fact_type:
        try:
            kind = FactType[fact_type.upper()]
        except KeyError:
            raise HTTPException(status_code=400, detail=f"Invalid fact type: {fact_type}")

    facts = state.operator.journal.query(fact_type=kind, entity_id=entity_id, limit=limit)
    return {
        "total": len(facts),
        "facts": [f.to_dict() for f in facts],
    }


@router.get("/facts/verify", tags=["Audit"])
async def verify_facts(state: AppState = Depends(get_state)):
    """Verify sequence, hash links and signatures of the fact journal."""
    is_valid, error = state.operator.journal.verify_chain_integrity()
    return {
        "valid": is_valid,
        "error": error,
        "chain_length": len(state.operator.journal),
    }


@router.get("/public-key", tags=["Audit"])
async def get_public_key(state: AppState = Depends(get_state)) -> Dict[str, Any]:
    """Public key for verifying fact signatures."""
    signer = state.operator.journal.signer
    if signer is None:
        raise HTTPException(status_code=404, detail="Fact signing is disabled")
    return {
        "key_id": signer.key_id,
        "algorithm": signer.algorithm,
        "public_key_pem": signer.get_public_key_pem(),
    }


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "settlement_rail.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
