"""Authentication store access and OAuth helpers."""

from credpool.auth.claims import decode_claims, infer_email
from credpool.auth.store import AuthStore


__all__ = [
    "AuthStore",
    "decode_claims",
    "infer_email",
]
