"""
FastAPI application entrypoint for the credential custody service.
"""

from __future__ import annotations

from fastapi import FastAPI

from app.api.routes import credential_error_handler, router as api_router
from app.core.config import get_settings
from app.core.errors import CredentialError
from app.core.logging import configure_logging


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Ad Platform Credential Custody",
        version="0.1.0",
        description="Encrypted storage, verification, and renewal of provider access tokens.",
    )
    app.include_router(api_router, prefix="/api")
    app.add_exception_handler(CredentialError, credential_error_handler)
    return app


app = create_app()

__all__ = ["app", "create_app"]
