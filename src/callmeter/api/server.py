"""
CALL METER - FastAPI Server

Health signal for the billing worker plus the small surface the call-setup
and top-up collaborators use.

Endpoints:
- GET /health - Store readiness (no auth)
- POST /calls - Create a ringing call
- POST /calls/{call_id}/connect - Both parties joined; billing starts
- POST /calls/{call_id}/hangup - End a call normally
- GET /calls/{call_id} - Call state, /ledger, /audit, /events
- POST /wallets/{user_id}/credit - Top up a wallet
- GET /wallets/{user_id} - Balance and recent transactions
- GET /reconciliation - Debits flagged for follow-up
- GET /metrics - Metering metrics

Billing is per unit of the scheduler's poll interval; fields named
"seconds" count those units.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..billing.metering import MeteringEngine
from ..billing.reconciliation import Reconciler
from ..billing.scheduler import BillingScheduler
from ..config import BillingConfig
from ..notify.sink import BestEffortNotifier, InMemoryNotificationSink, LoggingNotificationSink
from ..persistence.database import Database
from ..persistence.models import EndReason
from ..persistence.repository import CallLedger, ReconciliationRepository, WalletStore

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class CreateCallRequest(BaseModel):
    """Request to create a call."""
    caller_id: str = Field(..., min_length=1, description="Paying party")
    callee_id: str = Field(..., min_length=1)
    rate_micros_per_second: Optional[int] = Field(
        None, gt=0, description="Charge per billing unit; defaults to the configured rate"
    )
    call_id: Optional[str] = Field(None, description="Client-supplied call ID")


class CreditRequest(BaseModel):
    """Top-up request."""
    amount_micros: int = Field(..., gt=0)
    reference: Optional[str] = Field(None, description="Payment reference from the gateway")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    store_ready: bool
    scheduler_running: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, config: BillingConfig):
        self.config = config
        self.db = Database(config.database_url)
        self.db.initialize()

        self.wallets = WalletStore(self.db)
        self.calls = CallLedger(self.db)
        self.flags = ReconciliationRepository(self.db)
        self.events = InMemoryNotificationSink()
        self.notifier = BestEffortNotifier([LoggingNotificationSink(), self.events])
        self.engine = MeteringEngine(self.wallets, self.calls, self.notifier, self.flags)
        self.scheduler = BillingScheduler(self.engine, self.calls, config)
        self.reconciler = Reconciler(self.calls, self.wallets, self.flags)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    config = BillingConfig.from_env()
    logger.info("callmeter_starting", version=VERSION, run_scheduler=config.run_scheduler)
    app_state = AppState(config)
    if config.run_scheduler:
        app_state.scheduler.start()
    yield
    logger.info("callmeter_stopping")
    app_state.scheduler.stop()
    app_state.db.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Call Meter",
        description="""
# Prepaid call metering

Charges the caller's wallet once per billing unit while a call is connected
and ends the call with `insufficient_funds` as soon as the next unit cannot
be covered. A billing unit is one scheduler poll interval.
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return application


app = create_app()


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


def _require_call(state: AppState, call_id: str):
    call = state.calls.get(call_id)
    if call is None:
        raise HTTPException(status_code=404, detail=f"Call not found: {call_id}")
    return call


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint; 503 while the store is unreachable."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    store_ready = state.db.ping()
    body = HealthResponse(
        status="healthy" if store_ready else "degraded",
        version=VERSION,
        store_ready=store_ready,
        scheduler_running=state.scheduler.running,
        uptime_seconds=uptime,
    )
    if not store_ready:
        return JSONResponse(status_code=503, content=body.model_dump())
    return body


@app.post("/calls", tags=["Calls"])
def create_call(
    request: CreateCallRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Create a ringing call.

    Refused with 402 when the caller cannot pay for even one unit, so calls
    that would be ended on their first billing step are never set up.
    """
    rate = request.rate_micros_per_second or state.config.rate_micros_per_second
    balance = state.wallets.get_balance(request.caller_id)
    if balance < rate:
        raise HTTPException(
            status_code=402,
            detail=f"Insufficient balance. Required: {rate}, available: {balance}.",
        )

    if request.call_id and state.calls.get(request.call_id):
        raise HTTPException(status_code=409, detail=f"Call already exists: {request.call_id}")

    call = state.calls.create_call(
        caller_id=request.caller_id,
        callee_id=request.callee_id,
        rate_micros_per_second=rate,
        call_id=request.call_id,
    )
    return call.to_dict()


@app.post("/calls/{call_id}/connect", tags=["Calls"])
def connect_call(
    call_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Mark a ringing call connected and open its free window."""
    _require_call(state, call_id)
    if not state.calls.mark_connected(call_id, free_seconds=state.config.free_window_seconds):
        raise HTTPException(status_code=409, detail="Call is not ringing")
    return state.calls.get(call_id).to_dict()


@app.post("/calls/{call_id}/hangup", tags=["Calls"])
def hangup_call(
    call_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """End a call normally."""
    _require_call(state, call_id)
    if not state.calls.terminate(call_id, EndReason.NORMAL):
        raise HTTPException(status_code=409, detail="Call already ended")
    state.notifier.call_ended(call_id, EndReason.NORMAL)
    return state.calls.get(call_id).to_dict()


@app.get("/calls/{call_id}", tags=["Calls"])
def get_call(
    call_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return _require_call(state, call_id).to_dict()


@app.get("/calls/{call_id}/ledger", tags=["Audit"])
def get_call_ledger(
    call_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Ledger entries for a call, oldest first."""
    _require_call(state, call_id)
    entries = state.calls.ledger_entries(call_id)
    return {
        "call_id": call_id,
        "total": len(entries),
        "total_micros": sum(e.amount_micros for e in entries),
        "entries": [e.to_dict() for e in entries],
    }


@app.get("/calls/{call_id}/audit", tags=["Audit"])
def audit_call(
    call_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    audit = state.reconciler.audit_call(call_id)
    if audit is None:
        raise HTTPException(status_code=404, detail=f"Call not found: {call_id}")
    return audit.to_dict()


@app.get("/calls/{call_id}/events", tags=["Calls"])
def get_call_events(
    call_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Billing-state events seen by this process for a call."""
    events = state.events.events(call_id)
    return {"call_id": call_id, "events": [dict(kind=e.kind, **e.to_dict()) for e in events]}


@app.post("/wallets/{user_id}/credit", tags=["Wallets"])
def credit_wallet(
    user_id: str,
    request: CreditRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Apply a top-up."""
    balance = state.wallets.credit(user_id, request.amount_micros, reference=request.reference)
    return {"user_id": user_id, "balance_micros": balance}


@app.get("/wallets/{user_id}", tags=["Wallets"])
def get_wallet(
    user_id: str,
    limit: int = 20,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {
        "user_id": user_id,
        "balance_micros": state.wallets.get_balance(user_id),
        "transactions": [t.to_dict() for t in state.wallets.transactions(user_id, limit=limit)],
    }


@app.get("/reconciliation", tags=["Audit"])
def get_reconciliation(
    limit: int = 100,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Debits whose ledger commit failed, with current call audits."""
    report: List[Dict[str, Any]] = state.reconciler.report(limit=limit)
    return {"open": len(report), "flags": report}


@app.post("/reconciliation/{flag_id}/resolve", tags=["Audit"])
def resolve_flag(
    flag_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    if not state.reconciler.resolve(flag_id):
        raise HTTPException(status_code=404, detail=f"Open flag not found: {flag_id}")
    return {"flag_id": flag_id, "resolved": True}


@app.get("/metrics", tags=["Monitoring"])
def get_metrics(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Get metering metrics."""
    last_cycle = state.scheduler.last_cycle
    return {
        "calls": state.calls.count_by_status(),
        "metering": state.engine.get_metrics(),
        "scheduler": {
            "running": state.scheduler.running,
            "cycles_run": state.scheduler.cycles_run,
            "last_cycle": last_cycle.to_dict() if last_cycle else None,
            "poll_interval_ms": state.config.poll_interval_ms,
            "batch_size": state.config.batch_size,
        },
    }


# ============================================================================
# Run
# ============================================================================

def run(host: str = "0.0.0.0", port: Optional[int] = None, reload: bool = False):
    """Run the server."""
    import uvicorn
    config = BillingConfig.from_env()
    uvicorn.run(
        "callmeter.api.server:app",
        host=host,
        port=port or config.port,
        reload=reload,
    )


if __name__ == "__main__":
    run()
