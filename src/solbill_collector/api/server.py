"""
SolBill Collector - FastAPI Server

Exposes subscription gate decisions and collector health to the HTTP layer.

Endpoints:
- GET /health - Liveness and collector state
- GET /access/{subscriber}/{plan} - Gate decision for a subscriber and plan
- GET /premium - Example gated route (402 challenge without a subscription)
- GET /metrics - Collector and gate metrics (API key)
- POST /refresh - Re-read cached plan data (API key)
"""

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..collector.config import CollectorConfig
from ..collector.scheduler import Collector
from ..collector.stats import CollectorMetrics
from ..core.addresses import AddressDeriver
from ..crypto.keys import load_identity
from ..enforcement.gate import GateDecision, SubscriptionGate
from ..ledger.client import LedgerClient
from ..ledger.rpc import JsonRpcLedgerClient

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    collector: Optional[str] = Field(None, description="Collector loop state, if running")
    uptime_seconds: float


class AccessResponse(BaseModel):
    """Gate decision for a subscriber and plan."""
    decision: str
    allowed: bool
    subscription: Optional[str]
    status: Optional[str]
    reason: Optional[str]


class RefreshResponse(BaseModel):
    """Result of a plan cache refresh."""
    plans: int
    refreshed_at: str


# ============================================================================
# Application State
# ============================================================================

@dataclass
class PaywallConfig:
    """Pay-per-use fallback terms for the gated example route."""
    plan: Optional[str] = None
    pay_to: Optional[str] = None
    price: str = "0.01"
    currency: str = "USDC"
    network: str = "solana"

    @classmethod
    def from_env(cls) -> "PaywallConfig":
        return cls(
            plan=os.environ.get("SOLBILL_PREMIUM_PLAN") or None,
            pay_to=os.environ.get("SOLBILL_PREMIUM_PAY_TO") or None,
            price=os.environ.get("SOLBILL_PREMIUM_PRICE", "0.01"),
        )


class AppState:
    """
    Application state container.

    Built once per application lifespan and attached to app.state.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        gate: SubscriptionGate,
        metrics: Optional[CollectorMetrics] = None,
        collector: Optional[Collector] = None,
        paywall: Optional[PaywallConfig] = None,
    ):
        self.ledger = ledger
        self.gate = gate
        self.metrics = metrics or (collector.metrics if collector else CollectorMetrics())
        self.collector = collector
        self.paywall = paywall or PaywallConfig()
        self.start_time = datetime.now(timezone.utc)
        self.collector_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: CollectorConfig, run_collector: bool = False) -> "AppState":
        ledger = JsonRpcLedgerClient(
            config.rpc_url,
            commitment=config.commitment,
            timeout=config.rpc_timeout,
        )
        deriver = AddressDeriver(
            program_id=config.program_id,
            token_program_id=config.token_program_id,
            associated_token_program_id=config.associated_token_program_id,
        )
        collector = None
        if run_collector:
            signer = load_identity(
                keypair_path=config.keypair_path,
                secret=config.keypair_secret,
                keystore_path=config.keystore_path,
                keystore_passphrase=config.keystore_passphrase,
            )
            collector = Collector.from_config(config, ledger, signer)

        return cls(
            ledger=ledger,
            gate=SubscriptionGate(ledger, deriver),
            collector=collector,
            paywall=PaywallConfig.from_env(),
        )


def default_state_factory() -> AppState:
    config = CollectorConfig.from_env()
    run_collector = os.environ.get("SOLBILL_SERVE_COLLECTOR", "false").lower() == "true"
    config.validate(require_identity=run_collector)
    return AppState.from_config(config, run_collector=run_collector)


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "solbill", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        collector=state.collector.state.value if state.collector else None,
        uptime_seconds=uptime,
    )


@router.get("/access/{subscriber}/{plan}", response_model=AccessResponse, tags=["Gate"])
async def check_access(subscriber: str, plan: str, state: AppState = Depends(get_state)):
    """
    Decide whether `subscriber` may bypass pay-per-use for `plan`.

    Read failures resolve to PAY_PER_USE rather than an error.
    """
    result = await state.gate.check(subscriber, plan)
    return AccessResponse(**result.to_dict())


@router.get("/premium", tags=["Gate"])
async def premium(
    state: AppState = Depends(get_state),
    x_wallet_address: Optional[str] = Header(None, alias="X-Wallet-Address"),
):
    """
    Example monetized resource.

    Subscribers with a live subscription to the configured plan get the
    content; everyone else receives a 402 pay-per-use challenge.
    """
    paywall = state.paywall
    if paywall.plan is None or paywall.pay_to is None:
        raise HTTPException(status_code=503, detail="Paywall is not configured")

    if x_wallet_address:
        result = await state.gate.check(x_wallet_address, paywall.plan)
        if result.decision != GateDecision.PAY_PER_USE:
            return {
                "message": "Welcome to the premium service",
                "access": result.decision.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    return JSONResponse(
        status_code=402,
        content={
            "error": "Payment Required",
            "message": "No active subscription found. Pay per use to continue.",
            "challenge": {
                "amount": paywall.price,
                "currency": paywall.currency,
                "network": paywall.network,
                "payTo": paywall.pay_to,
            },
        },
        headers={
            "X-X402-Required": "true",
            "X-X402-Pay-To": paywall.pay_to,
            "X-X402-Amount": paywall.price,
            "X-X402-Currency": paywall.currency,
            "X-X402-Network": paywall.network,
        },
    )


@router.get("/metrics", tags=["Monitoring"])
async def get_metrics(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Collector and gate metrics."""
    return {
        "collector": state.metrics.snapshot(),
        "gate": state.gate.get_metrics(),
        "uptime_seconds": (datetime.now(timezone.utc) - state.start_time).total_seconds(),
    }


@router.post("/refresh", response_model=RefreshResponse, tags=["Gate"])
async def refresh(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Re-read plan data cached by the gate."""
    plans = await state.gate.refresh()
    return RefreshResponse(plans=plans, refreshed_at=datetime.now(timezone.utc).isoformat())


# ============================================================================
# Application Factory
# ============================================================================

def create_app(state_factory: Optional[Callable[[], AppState]] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    factory = state_factory or default_state_factory

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info("solbill_api_starting", version=__version__)
        state = factory()
        application.state.solbill = state
        if state.collector is not None:
            state.collector_task = asyncio.create_task(state.collector.run())
        try:
            yield
        finally:
            try:
                if state.collector_task is not None:
                    state.collector.stop()
                    await state.collector_task
            finally:
                await state.ledger.close()
            application.state.solbill = None
            logger.info("solbill_api_stopping")

    application = FastAPI(
        title="SolBill Collector",
        description="Subscription gate and settlement collector for recurring on-ledger billing.",
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(router)

    return application


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run(host: str = "0.0.0.0", port: Optional[int] = None):
    """Run the server."""
    import uvicorn
    uvicorn.run(
        "solbill_collector.api.server:app",
        host=host,
        port=port or int(os.environ.get("PORT", 8000)),
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
