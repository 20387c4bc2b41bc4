"""Liveness endpoint."""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    state = request.app.state
    return {
        "success": True,
        "data": {
            "status": "healthy",
            "service": state.settings.app_name,
            "version": state.settings.app_version,
            "database": getattr(state, "db_pool", None) is not None,
        },
        "requestId": request.state.request_id,
    }
