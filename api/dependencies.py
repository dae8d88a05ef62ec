"""FastAPI dependencies shared by the routers."""

from fastapi import HTTPException, Request

from compliance_engine.engine import ComplianceEngine


def get_engine(request: Request) -> ComplianceEngine:
    """The engine built at startup (or injected by tests)."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Compliance engine not started")
    return engine
