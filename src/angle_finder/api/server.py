"""Uvicorn runner for the angle-finder API."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from angle_finder.config import Settings


def run_server(settings: Settings) -> None:
    """Serve the API on the configured host and port."""
    import uvicorn

    from angle_finder.api.app import create_app

    uvicorn.run(
        create_app(settings),
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.logging.level.lower(),
    )
