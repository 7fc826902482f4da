"""Public instance identifier derived from the session secret."""
from __future__ import annotations

import hashlib

from .secret_store import SecretRecord


def derive_identity(secret: SecretRecord) -> str:
    """Return the SHA-256 hex digest of the secret key."""
    return hashlib.sha256(secret.secret_key.encode("utf-8")).hexdigest()


__all__ = ["derive_identity"]
