"""Health check endpoint."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    store = getattr(request.app.state, "store", None)
    return {
        "success": True,
        "data": {
            "status": "healthy",
            "version": request.app.state.settings.app_version,
            "store": "connected" if store is not None else "unavailable",
        },
        "requestId": request.state.request_id,
    }
