"""
FastAPI server: fee routing API over one FeeRoutingEngine.

Routes: route a fee, read the aggregate, poll a transaction, vendor summary,
trigger a retirement cycle, read/update config, health with conservation audit.
The engine is built in the lifespan from environment settings (SQLite snapshot
store, threaded scheduler) unless one is injected via create_app().

ASGI entrypoint: backend_feerouter.api_server.app:app
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field, create_model

from backend_feerouter import __version__
from backend_feerouter.config import MixingConfig, get_settings
from backend_feerouter.core.exceptions import ConfigError, EngineStopped, InvalidAmount, TransactionNotFound
from backend_feerouter.database import get_store
from backend_feerouter.logging import get_logger
from backend_feerouter.routing import FeeRoutingEngine

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------


class RouteFeeRequest(BaseModel):
    """POST /route-fee body."""

    source_transaction_id: str = Field(..., min_length=1, max_length=256, description="Opaque escrow/source reference")
    amount: Decimal = Field(..., description="Already-computed platform fee")


class RouteFeeResponse(BaseModel):
    transaction_id: str = Field(..., description="Fee transaction id for polling")
    status: str = Field(..., description="Initial status (pending)")


# PUT /config body: any subset of MixingConfig fields, all optional
ConfigUpdateRequest = create_model(
    "ConfigUpdateRequest",
    __config__=ConfigDict(extra="forbid"),
    **{name: (Optional[f.annotation], None) for name, f in MixingConfig.model_fields.items()},
)


# -----------------------------------------------------------------------------
# App factory and lifespan
# -----------------------------------------------------------------------------


def _build_engine() -> FeeRoutingEngine:
    settings = get_settings()
    return FeeRoutingEngine(config=settings.mixing, store=get_store(settings.db_path))


def create_app(engine: FeeRoutingEngine | None = None) -> FastAPI:
    """
    Build the API. With an injected engine (tests) the lifespan starts and stops
    that engine; otherwise it builds one from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "engine", None) is None:
            app.state.engine = _build_engine()
        eng: FeeRoutingEngine = app.state.engine
        eng.start()
        logger.info("api_engine_started")
        yield
        eng.stop()
        logger.info("api_engine_stopped")

    app = FastAPI(
        title="Backend FeeRouter API",
        description="Route platform fees through the shell wallet pool and poll their status.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine
    _register_routes(app)
    return app


def get_engine(request: Request) -> FeeRoutingEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="engine not initialised")
    return engine


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:
    @app.post("/route-fee", response_model=RouteFeeResponse)
    def route_fee(body: RouteFeeRequest, engine: FeeRoutingEngine = Depends(get_engine)) -> RouteFeeResponse:
        """Accept an already-computed fee for routing. 400 on a non-positive amount."""
        try:
            tx_id = engine.route_fee(body.source_transaction_id.strip(), body.amount)
        except InvalidAmount as e:
            raise HTTPException(status_code=400, detail=str(e))
        except EngineStopped as e:
            raise HTTPException(status_code=503, detail=str(e))
        return RouteFeeResponse(transaction_id=tx_id, status="pending")

    @app.get("/status")
    def get_status(engine: FeeRoutingEngine = Depends(get_engine)) -> dict[str, Any]:
        return engine.get_routing_status().to_dict()

    @app.get("/transaction-status/{transaction_id}")
    def get_transaction_status(
        transaction_id: str,
        engine: FeeRoutingEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        try:
            return engine.require_fee_transaction(transaction_id.strip()).to_dict()
        except TransactionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/vendor-summary")
    def get_vendor_summary(
        vendor_id: str | None = Query(None, description="Fragment matched against source references"),
        engine: FeeRoutingEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        fragment = (vendor_id or "").strip()
        if not fragment:
            raise HTTPException(status_code=400, detail="vendor_id is required")
        return engine.get_vendor_fee_summary(fragment).to_dict()

    @app.post("/execute-cycle")
    def execute_cycle(engine: FeeRoutingEngine = Depends(get_engine)) -> dict[str, Any]:
        try:
            report = engine.execute_cycle()
        except EngineStopped as e:
            raise HTTPException(status_code=503, detail=str(e))
        return report.to_dict()

    @app.get("/config")
    def get_config(engine: FeeRoutingEngine = Depends(get_engine)) -> dict[str, Any]:
        return engine.get_config().to_dict()

    @app.put("/config")
    def update_config(
        body: ConfigUpdateRequest,
        engine: FeeRoutingEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        changes = body.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=400, detail="no config fields supplied")
        try:
            return engine.update_config(changes).to_dict()
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except EngineStopped as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/health")
    def health(engine: FeeRoutingEngine = Depends(get_engine)) -> dict[str, Any]:
        """Liveness plus conservation audit."""
        report = engine.reconcile()
        return {"status": "ok", "conservation_ok": report.ok, "stopped": engine.stopped}


app = create_app()
