"""Public schema exports."""

from .tokens import (
    ErrorResponse,
    TokenRenewRequest,
    TokenStateResponse,
    TokenStoreRequest,
)

__all__ = [
    "ErrorResponse",
    "TokenRenewRequest",
    "TokenStateResponse",
    "TokenStoreRequest",
]
