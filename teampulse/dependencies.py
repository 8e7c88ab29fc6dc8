"""
FastAPI dependencies shared by the routers.
"""

from fastapi import HTTPException, Request

from teampulse.engine import AggregationEngine


def get_engine(request: Request) -> AggregationEngine:
    """Return the engine the application lifespan attached to app.state."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Aggregation engine not initialized")
    return engine
