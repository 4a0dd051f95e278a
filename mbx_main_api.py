"""
Marbles Exchange - FastAPI Application
HTTP host for the marble chaincode entry points with enforcement and observability
"""

from fastapi import FastAPI, HTTPException, status, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
import logging
import threading
from contextlib import asynccontextmanager

from mbx_config_v1 import MarblesConfig
from mbx_enforcement_v1 import DecisionLedger, ErrorKind
from mbx_state_v1 import InMemoryLedger, LedgerStub
from mbx_payment_verifier_v1 import PaymentVerifier
from mbx_marble_service_v1 import MarbleService
from mbx_metrics import metrics_registry, update_system_health

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("mbx.api")

VERSION = "1.0.0"

# Failure kind -> HTTP status of /api/v1/invoke
ERROR_STATUS_CODES = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    ErrorKind.BUSINESS_RULE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.VERIFICATION_FAILURE: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.LEDGER_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.INVARIANT: status.HTTP_500_INTERNAL_SERVER_ERROR
}

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class InvokeRequest(BaseModel):
    function: str = Field(..., min_length=1, max_length=64)
    args: List[str] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "function": "init_marble",
                "args": ["m1", "blue", "10", "o1", "Acme"]
            }
        }

class InvokeResponse(BaseModel):
    status: int
    message: str
    payload: Optional[str] = None
    error_kind: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "status": 500,
                "message": "The company 'Globex' cannot authorize creation for 'Acme'.",
                "payload": None,
                "error_kind": "authorization_mismatch"
            }
        }

class HealthResponse(BaseModel):
    status: str
    version: str
    health_score: float
    total_checks: int
    ledger_keys: int
    ledger_integrity: bool
    horizon_base_url: str

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""
    def __init__(
        self,
        config: Optional[MarblesConfig] = None,
        ledger: Optional[LedgerStub] = None,
        payment_verifier=None
    ):
        self.config = config or MarblesConfig.from_env()
        self.ledger = ledger if ledger is not None else InMemoryLedger()
        self.decision_ledger = DecisionLedger(
            self.config.decision_secret_bytes,
            self.config.decision_ledger_size
        )
        self.payment_verifier = payment_verifier or PaymentVerifier(self.config)

        self.marble_service = MarbleService(
            self.ledger,
            self.payment_verifier,
            self.decision_ledger,
            self.config
        )

        # Endpoints run in the threadpool; ledger access goes through one operation at a time
        self.lock = threading.Lock()

app_state = AppState()

def get_app_state() -> AppState:
    return app_state

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logging.getLogger().setLevel(app_state.config.log_level)
    logger.info("Marbles Exchange starting...")
    logger.info(f"Payment network: {app_state.config.horizon_base_url}")
    yield
    if isinstance(app_state.payment_verifier, PaymentVerifier):
        app_state.payment_verifier.close()
    logger.info("Marbles Exchange shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="Marbles Exchange",
    description="Marble ownership ledger with payment-settled offers",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "Marbles Exchange",
        "version": VERSION,
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check(state: AppState = Depends(get_app_state)):
    """System health check."""
    decision_ledger = state.decision_ledger
    with state.lock:
        health_score = decision_ledger.health_score()
        integrity = decision_ledger.verify_chain_integrity()
        total_checks = decision_ledger.total_recorded
        ledger_keys = len(state.ledger.keys()) if isinstance(state.ledger, InMemoryLedger) else 0

    update_system_health(health_score, integrity)

    return HealthResponse(
        status="healthy" if health_score >= 0.95 and integrity else "degraded",
        version=VERSION,
        health_score=health_score,
        total_checks=total_checks,
        ledger_keys=ledger_keys,
        ledger_integrity=integrity,
        horizon_base_url=state.config.horizon_base_url
    )

@app.post("/api/v1/invoke", response_model=InvokeResponse, tags=["Chaincode"])
def invoke(request: InvokeRequest, state: AppState = Depends(get_app_state)):
    """
    Invoke a chaincode entry point by name.

    Failures answer with the status mapped from their kind:
    400 validation, 403 authorization, 404 not found, 409 already exists,
    422 payment conditions unmet, 502 payment network failure.
    """
    with state.lock:
        result = state.marble_service.invoke(request.function, request.args)

    if result.ok:
        return InvokeResponse(**result.to_dict())

    code = ERROR_STATUS_CODES.get(result.error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.info(f"{request.function} -> {code}: {result.message}")
    return JSONResponse(status_code=code, content=result.to_dict())

@app.get("/api/v1/marbles/{marble_id}", tags=["Marbles"])
def get_marble(marble_id: str, state: AppState = Depends(get_app_state)) -> Dict:
    """Read-only view of a marble."""
    with state.lock:
        marble = state.marble_service.state.lookup_marble(marble_id)
    if marble is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Marble does not exist - {marble_id}"
        )
    return marble.to_dict()

@app.get("/api/v1/owners/{owner_id}", tags=["Owners"])
def get_owner(owner_id: str, state: AppState = Depends(get_app_state)) -> Dict:
    """Read-only view of an owner."""
    with state.lock:
        owner = state.marble_service.state.lookup_owner(owner_id)
    if owner is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Owner does not exist - {owner_id}"
        )
    return owner.to_dict()

@app.get("/api/v1/offers/{offer_id}", tags=["Offers"])
def get_offer(offer_id: str, state: AppState = Depends(get_app_state)) -> Dict:
    """Read-only view of an offer."""
    with state.lock:
        offer = state.marble_service.state.lookup_offer(offer_id)
    if offer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"This offer does not exist - {offer_id}"
        )
    return offer.to_dict()

@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
    from fastapi.responses import Response

    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mbx_main_api:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
