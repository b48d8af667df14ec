"""Health, readiness and liveness endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(request: Request, detailed: bool = False) -> JSONResponse:
    """Dependency rollup. 200 when healthy, 503 otherwise.

    Args:
        detailed: Include process, environment and connection details
    """
    snapshot = await request.app.state.services.health.snapshot(detailed=detailed)
    return JSONResponse(status_code=200 if snapshot.is_healthy else 503, content=snapshot.to_dict())


@router.get("/ready")
async def ready(request: Request) -> JSONResponse:
    if await request.app.state.services.health.readiness():
        return JSONResponse(status_code=200, content={"status": "ready"})
    return JSONResponse(status_code=503, content={"status": "not ready"})


@router.get("/live")
def live(request: Request) -> dict:
    return request.app.state.services.health.liveness()
