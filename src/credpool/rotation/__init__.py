"""Multi-account credential rotation.

Selects one of several OAuth accounts per outbound request, keeps access
tokens fresh, and fails over when an account is rate limited.
"""

from credpool.rotation.accounts import Account, PoolDocument, RotationMode
from credpool.rotation.codec import load_pool, migrate_profile_store, save_pool
from credpool.rotation.pool import (
    AccountState,
    Credential,
    ImportResult,
    PoolManager,
    RateLimitEvent,
    Transition,
    create_pool_manager,
)
from credpool.rotation.provider import CredentialProvider, PoolAuth, RequestOutcome
from credpool.rotation.resolver import resolve, resolve_index
from credpool.rotation.selection import next_index
from credpool.rotation.tokens import TokenCache


__all__ = [
    "Account",
    "AccountState",
    "Credential",
    "CredentialProvider",
    "ImportResult",
    "PoolAuth",
    "PoolDocument",
    "PoolManager",
    "RateLimitEvent",
    "RequestOutcome",
    "RotationMode",
    "TokenCache",
    "Transition",
    "create_pool_manager",
    "load_pool",
    "migrate_profile_store",
    "next_index",
    "resolve",
    "resolve_index",
    "save_pool",
]
