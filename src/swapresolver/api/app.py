"""FastAPI application factory."""

from typing import Optional

from fastapi import FastAPI

from swapresolver import __version__
from swapresolver.config import Settings, get_settings
from swapresolver.coordinator import Coordinator


def create_app(coordinator: Coordinator, settings: Optional[Settings] = None) -> FastAPI:
    """Create the status API around a running coordinator.

    The coordinator's lifecycle belongs to the caller; the API only reads.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Swap Resolver API",
        description="Cross-chain swap resolver status",
        version=__version__,
        debug=settings.debug,
    )
    app.state.coordinator = coordinator
    app.state.settings = settings

    # Register routes
    from swapresolver.api.routes import health, swaps

    app.include_router(health.router, tags=["Health"])
    app.include_router(swaps.router, tags=["Swaps"])

    return app
