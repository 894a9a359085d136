"""
FastAPI routes for integration token custody.

Plaintext tokens flow in (on store/renew) but never out: responses only carry
status, expiry, and scopes.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from app.core.errors import (
    CredentialError,
    EncryptionFailure,
    IntegrityError,
    ProviderUnavailable,
)
from app.dependencies import get_token_lifecycle_manager
from app.models.token import TokenMetadata
from app.schemas import (
    ErrorResponse,
    TokenRenewRequest,
    TokenStateResponse,
    TokenStoreRequest,
)
from app.services import TokenLifecycleManager

router = APIRouter()
logger = logging.getLogger(__name__)

ManagerDependency = Annotated[TokenLifecycleManager, Depends(get_token_lifecycle_manager)]

_RETRY_AFTER_SECONDS = "30"


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.put(
    "/integrations/{integration_id}/token",
    response_model=TokenStateResponse,
    status_code=HTTPStatus.OK,
)
async def store_integration_token(
    integration_id: str,
    payload: TokenStoreRequest,
    manager: ManagerDependency,
) -> TokenStateResponse:
    """Verify and store the access token for an integration."""
    metadata = TokenMetadata(
        subject_id=payload.subject_id,
        scopes=set(payload.scopes),
        token_kind=payload.token_kind,
    )
    result = await manager.store(integration_id, payload.access_token, metadata)
    return TokenStateResponse(
        integration_id=integration_id,
        status=result.status,
        expires_at=result.expires_at,
        scopes=sorted(result.scopes),
        is_new=result.is_new,
    )


@router.get(
    "/integrations/{integration_id}/token/status",
    response_model=TokenStateResponse,
)
async def verify_integration_token(
    integration_id: str,
    manager: ManagerDependency,
) -> TokenStateResponse:
    """Check the stored token with the provider."""
    result = await manager.verify(integration_id)
    return TokenStateResponse(
        integration_id=integration_id,
        status=result.status,
        expires_at=result.expires_at,
        scopes=sorted(result.scopes),
        last_verified_at=result.last_verified_at,
        note=result.note,
    )


@router.post(
    "/integrations/{integration_id}/token/renew",
    response_model=TokenStateResponse,
)
async def renew_integration_token(
    integration_id: str,
    manager: ManagerDependency,
    payload: Optional[TokenRenewRequest] = None,
) -> TokenStateResponse:
    """Replace the stored token with a renewed one."""
    new_token = payload.access_token if payload else None
    result = await manager.renew(integration_id, new_token)
    return TokenStateResponse(
        integration_id=integration_id,
        status=result.status,
        expires_at=result.expires_at,
        scopes=sorted(result.scopes),
    )


@router.delete(
    "/integrations/{integration_id}/token",
    status_code=HTTPStatus.NO_CONTENT,
)
async def revoke_integration_token(
    integration_id: str,
    manager: ManagerDependency,
) -> Response:
    await manager.revoke(integration_id)
    return Response(status_code=HTTPStatus.NO_CONTENT)


async def credential_error_handler(request: Request, exc: CredentialError) -> JSONResponse:
    """Translate credential errors into transport responses."""
    if isinstance(exc, (IntegrityError, EncryptionFailure)):
        logger.error(
            "Credential integrity incident on %s", request.url.path, extra=exc.to_log_extra()
        )
    else:
        logger.info("Credential request failed", extra=exc.to_log_extra())

    retryable = isinstance(exc, ProviderUnavailable)
    body = ErrorResponse(
        error=exc.error_code,
        message=str(exc),
        integration_id=exc.integration_id,
        retryable=retryable,
    )
    headers = {"Retry-After": _RETRY_AFTER_SECONDS} if retryable else None
    return JSONResponse(
        status_code=exc.http_status,
        content=body.model_dump(),
        headers=headers,
    )


__all__ = ["credential_error_handler", "router"]
