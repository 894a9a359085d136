"""
Meta Graph API clients for token introspection and long-lived token exchange.

Tokens travel only in query parameters of outbound requests; they are never
logged and never copied into exception messages.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from app.core.config import MetaSettings
from app.core.errors import ProviderRejected, ProviderUnavailable, RenewalFailed
from app.models.token import TokenIntrospection, TokenKind, TokenMetadata

logger = logging.getLogger(__name__)

# Meta issues short-lived user tokens for about two hours and long-lived ones
# for about sixty days.
_LONG_LIVED_THRESHOLD = timedelta(days=1)


class MetaGraphError(Exception):
    """OAuth error payload returned by the Graph API."""

    def __init__(self, status_code: int, error: Dict[str, Any]) -> None:
        self.status_code = status_code
        self.code = error.get("code")
        self.subcode = error.get("error_subcode")
        self.error_type = error.get("type")
        super().__init__(f"Graph API error {self.code} (HTTP {status_code})")

    @property
    def cause(self) -> str:
        if self.subcode:
            return f"graph_error_{self.code}_{self.subcode}"
        return f"graph_error_{self.code}"


class MetaGraphClient:
    """Minimal asynchronous Graph API transport shared by the token helpers."""

    def __init__(
        self,
        settings: MetaSettings,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._transport = transport
        base_url = str(settings.graph_base_url).rstrip("/")
        self._base_url = f"{base_url}/{settings.graph_api_version}"

    @property
    def settings(self) -> MetaSettings:
        return self._settings

    async def get(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        """Issue a GET and return the JSON body, mapping failures to typed errors."""
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(path, params=params)
        except httpx.TimeoutException:
            logger.warning("Graph API request timed out", extra={"path": path})
            raise ProviderUnavailable("Meta Graph API timed out.", cause="timeout") from None
        except httpx.HTTPError as exc:
            logger.warning(
                "Graph API transport failure",
                extra={"path": path, "error_type": type(exc).__name__},
            )
            raise ProviderUnavailable(
                "Meta Graph API is unreachable.", cause=type(exc).__name__
            ) from None

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderUnavailable(
                "Meta Graph API is temporarily unavailable.",
                cause=f"http_{response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError:
            raise ProviderUnavailable(
                "Meta Graph API returned a non-JSON response.", cause="bad_payload"
            ) from None

        if response.status_code >= 400:
            raise MetaGraphError(response.status_code, payload.get("error") or {})
        return payload


def _from_epoch(value: Any) -> Optional[datetime]:
    """Graph API timestamps are epoch seconds; 0 means no expiry."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class MetaTokenVerifier:
    """Introspect user access tokens with the ``debug_token`` endpoint."""

    def __init__(self, client: MetaGraphClient) -> None:
        self._client = client

    async def introspect(self, token: str) -> TokenIntrospection:
        # Without app credentials the token introspects itself.
        app_token = self._client.settings.app_access_token
        try:
            payload = await self._client.get(
                "/debug_token",
                params={"input_token": token, "access_token": app_token or token},
            )
        except MetaGraphError as exc:
            if app_token is not None:
                # An OAuth error here is about the app credentials; invalid user
                # tokens come back as a 200 with is_valid=false.
                logger.warning(
                    "Meta rejected the app credentials used for introspection",
                    extra={"graph_error_code": exc.code, "status_code": exc.status_code},
                )
                raise ProviderUnavailable(
                    "Meta rejected the app credentials; check META_APP_ID and META_APP_SECRET.",
                    cause=f"app_{exc.cause}",
                ) from None
            raise ProviderRejected(
                "Meta rejected the access token.", cause=exc.cause
            ) from None

        data = payload.get("data") or {}
        if not data.get("is_valid"):
            error = data.get("error") or {}
            reason = error.get("message") or "Token reported invalid by provider."
            logger.info(
                "Meta token introspection reported invalid token",
                extra={"graph_error_code": error.get("code")},
            )
            raise ProviderRejected(reason, cause=f"graph_error_{error.get('code')}")

        expires_at = _from_epoch(data.get("expires_at"))
        issued_at = _from_epoch(data.get("issued_at"))
        return TokenIntrospection(
            is_valid=True,
            expires_at=expires_at,
            subject_id=data.get("user_id"),
            scopes=set(data.get("scopes") or []),
            app_id=data.get("app_id"),
            token_kind=_infer_kind(expires_at, issued_at),
        )


def _infer_kind(
    expires_at: Optional[datetime], issued_at: Optional[datetime]
) -> Optional[TokenKind]:
    if expires_at is None:
        return TokenKind.LONG_LIVED
    if issued_at is None:
        return None
    if expires_at - issued_at > _LONG_LIVED_THRESHOLD:
        return TokenKind.LONG_LIVED
    return TokenKind.SHORT_LIVED


class MetaTokenRefresher:
    """Exchange a still-valid token for a fresh long-lived one."""

    def __init__(self, client: MetaGraphClient) -> None:
        self._client = client

    async def refresh(
        self, integration_id: str, current_token: str, metadata: TokenMetadata
    ) -> str:
        settings = self._client.settings
        if not settings.app_id or not settings.app_secret:
            raise RenewalFailed(
                "Meta app credentials are not configured; token cannot be exchanged.",
                integration_id=integration_id,
                cause="app_credentials_missing",
            )
        try:
            payload = await self._client.get(
                "/oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": settings.app_id,
                    "client_secret": settings.app_secret.get_secret_value(),
                    "fb_exchange_token": current_token,
                },
            )
        except MetaGraphError as exc:
            raise RenewalFailed(
                "Meta declined to exchange the access token.",
                integration_id=integration_id,
                cause=exc.cause,
            ) from None

        new_token = payload.get("access_token")
        if not new_token:
            raise RenewalFailed(
                "Incomplete exchange payload returned from Meta.",
                integration_id=integration_id,
                cause="missing_access_token",
            )
        logger.info("Meta token exchanged", extra={"integration_id": integration_id})
        return new_token


__all__ = [
    "MetaGraphClient",
    "MetaGraphError",
    "MetaTokenRefresher",
    "MetaTokenVerifier",
]
