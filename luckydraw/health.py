from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST


def create_health_router(
    check_ready: Optional[Callable[[], Awaitable[bool]]] = None,
    service_name: str = "service",
    describe: Optional[Callable[[], Awaitable[dict]]] = None,
) -> APIRouter:
    """Liveness, readiness and metrics endpoints.

    ``describe`` adds service specific detail (role, current phase) to the
    readiness body.
    """

    router = APIRouter(tags=["health"])

    @router.get("/health/live")
    async def liveness():
        return {"status": "ok", "service": service_name}

    @router.get("/health/ready")
    async def readiness():
        body = {"status": "ready", "service": service_name}
        if check_ready and not await check_ready():
            body["status"] = "not_ready"
            return JSONResponse(body, status_code=503)
        if describe:
            body.update(await describe())
        return body

    @router.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return router
