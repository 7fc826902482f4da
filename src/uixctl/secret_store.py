"""Persisted symmetric secret used to sign UI sessions."""
from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

SECRETS_FILE = ".uix-secrets"
SECRET_KEY_BYTES = 32


class SecretStoreError(RuntimeError):
    """Raised when the secret file cannot be written."""


@dataclass(frozen=True, slots=True)
class SecretRecord:
    """Contents of the secrets file."""

    secret_key: str

    def to_dict(self) -> dict[str, str]:
        """Return the on-disk JSON shape."""
        return {"secretKey": self.secret_key}


def get_or_create_secret(path: Path) -> SecretRecord:
    """Return the secret stored at *path*, generating it when missing or corrupt.

    A file that cannot be read or parsed, or that lacks a non-empty
    ``secretKey``, is replaced wholesale by a freshly generated secret. Only
    failures to write that replacement are surfaced.
    """
    existing = _read_secret(path)
    if existing is not None:
        return existing
    return _generate_secret(path)


def _read_secret(path: Path) -> SecretRecord | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        LOGGER.warning("Regenerating unreadable secrets file %s: %s", path, exc)
        return None
    secret_key = payload.get("secretKey") if isinstance(payload, dict) else None
    if not isinstance(secret_key, str) or not secret_key:
        LOGGER.warning("Regenerating secrets file %s without a secretKey", path)
        return None
    return SecretRecord(secret_key=secret_key)


def _generate_secret(path: Path) -> SecretRecord:
    record = SecretRecord(secret_key=secrets.token_hex(SECRET_KEY_BYTES))
    try:
        path.write_text(json.dumps(record.to_dict()), encoding="utf-8")
    except OSError as exc:
        raise SecretStoreError(f"Unable to write secrets file {path}: {exc}") from exc
    return record


__all__ = ["SECRETS_FILE", "SecretRecord", "SecretStoreError", "get_or_create_secret"]
