"""Health check endpoints."""

from fastapi import APIRouter, Request

from swapresolver import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "swapresolver"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration info."""
    coordinator = request.app.state.coordinator
    return {
        "status": "healthy" if coordinator.is_running else "idle",
        "service": "swapresolver",
        "version": __version__,
        "config": request.app.state.settings.get_safe_dict(),
    }
