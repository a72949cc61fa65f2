from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from taskcoda.services.health import build_health_report


router = APIRouter(tags=["health"])

_NO_CACHE = {"Cache-Control": "no-cache, no-store, must-revalidate"}


@router.get("/health")
async def health() -> JSONResponse:
    # Liveness and readiness in one probe: 200 when every dependency answers, 503 otherwise.
    status_code, payload = await build_health_report()
    return JSONResponse(content=payload, status_code=status_code, headers=_NO_CACHE)
