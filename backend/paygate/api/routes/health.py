"""
Health check route. Bypasses authentication.
"""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request):
    registry = getattr(request.app.state, "plan_registry", None)
    return {
        "status": "ok",
        "plans_loaded": registry is not None and len(registry) > 0,
    }
