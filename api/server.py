"""
Compliance Engine API Server - REST API for status, risk and lazy tree views.
"""
# ruff: noqa: S104
# S104: Development server binding (guarded by __name__ check)

import logging
import os
from datetime import datetime

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from api.aggregate_router import aggregate_router
from api.response_models import HealthResponse
from api.tree_router import tree_router
from compliance_engine import config, paths
from compliance_engine.config import load_settings
from compliance_engine.engine import ComplianceEngine
from compliance_engine.errors import (
    ComputationTimeout,
    InvalidHierarchy,
    NotFound,
    StoreUnavailable,
)
from compliance_engine.observability import CorrelationIdMiddleware, configure_logging
from compliance_engine.observability.metrics import get_registry

logger = logging.getLogger(__name__)

# FastAPI app initialization
app = FastAPI(
    title="Compliance Engine API",
    description="Hierarchical compliance aggregation and risk scoring for the asset register",
    version="0.1.0",
)

# CORS middleware - configurable via CORS_ORIGINS env var
# Dev default: allow all origins; Production: set CORS_ORIGINS to comma-separated list
cors_origins_env = os.getenv("CORS_ORIGINS", "*")
cors_origins = (
    ["*"] if cors_origins_env == "*" else [o.strip() for o in cors_origins_env.split(",")]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Tree-Session", "X-Request-ID"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(aggregate_router, prefix="/api")
app.include_router(tree_router, prefix="/api")


# ==== Engine Lifecycle ====


@app.on_event("startup")
async def start_engine():
    """Build the engine over the asset register unless one was injected."""
    if getattr(app.state, "engine", None) is not None:
        app.state.owns_engine = False
        return

    configure_logging(config.LOG_LEVEL)
    db_path = paths.db_path()
    logger.info("=== Compliance Engine Startup ===")
    logger.info(f"DB path: {db_path}")
    logger.info(f"DB exists: {db_path.exists()}")

    app.state.engine = ComplianceEngine.from_db(db_path, settings=load_settings())
    app.state.engine.start()
    app.state.owns_engine = True


@app.on_event("shutdown")
async def stop_engine():
    engine = getattr(app.state, "engine", None)
    if engine is not None and getattr(app.state, "owns_engine", False):
        engine.shutdown(wait=False)
        app.state.engine = None


# ==== Error Mapping ====


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidHierarchy)
async def invalid_hierarchy_handler(request: Request, exc: InvalidHierarchy):
    logger.error(f"Invalid hierarchy at {exc.node_id}: {exc}")
    return JSONResponse(
        status_code=409, content={"detail": str(exc), "node_id": exc.node_id}
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ComputationTimeout)
async def computation_timeout_handler(request: Request, exc: ComputationTimeout):
    return JSONResponse(status_code=504, content={"detail": str(exc)})


# ==== Health & Metrics ====


@app.get("/api/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint. Degraded when the entity store is unreachable."""
    engine = getattr(app.state, "engine", None)
    store_state = "unavailable"
    if engine is not None:
        try:
            engine.store.ping()
            store_state = "ok"
        except StoreUnavailable as e:
            logger.warning(f"Health check: {e}")
    return HealthResponse(
        status="healthy" if store_state == "ok" else "degraded",
        timestamp=datetime.now().isoformat(),
        store=store_state,
    )


@app.get("/api/metrics")
async def metrics():
    """
    Prometheus-format metrics endpoint.

    Exports application metrics in text format for scraping.
    """
    return PlainTextResponse(get_registry().to_prometheus(), media_type="text/plain")


def main(host: str = "0.0.0.0", port: int | None = None) -> None:
    port = port or int(os.getenv("PORT", "8420"))
    logger.info(f"Starting Compliance Engine API on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
