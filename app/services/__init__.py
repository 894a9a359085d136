"""Service layer exports."""

from .integration_binding import IntegrationBinding, IntegrationRef, IntegrationTokenStatus
from .key_locks import KeyedLocks
from .token_cipher import TokenCipherService, fingerprint_token
from .token_lifecycle import TokenLifecycleManager

__all__ = [
    "IntegrationBinding",
    "IntegrationRef",
    "IntegrationTokenStatus",
    "KeyedLocks",
    "TokenCipherService",
    "TokenLifecycleManager",
    "fingerprint_token",
]
