"""Tests for the persisted session secret and the identity derived from it."""
from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from uixctl.identity import derive_identity
from uixctl.secret_store import (
    SECRETS_FILE,
    SecretRecord,
    SecretStoreError,
    get_or_create_secret,
)


def test_generates_secret_when_missing(tmp_path: Path) -> None:
    """A fresh 32-byte hex secret is written on first use."""
    path = tmp_path / SECRETS_FILE

    record = get_or_create_secret(path)

    assert len(record.secret_key) == 64
    int(record.secret_key, 16)
    assert json.loads(path.read_text(encoding="utf-8")) == {"secretKey": record.secret_key}


def test_existing_secret_is_reused(tmp_path: Path) -> None:
    """Repeated calls return the same secret without rewriting the file."""
    path = tmp_path / SECRETS_FILE
    path.write_text(json.dumps({"secretKey": "abc123", "other": 1}), encoding="utf-8")

    first = get_or_create_secret(path)
    second = get_or_create_secret(path)

    assert first == second == SecretRecord(secret_key="abc123")
    assert json.loads(path.read_text(encoding="utf-8"))["other"] == 1


@pytest.mark.parametrize(
    "content",
    ["{not json", "[]", json.dumps({"secretKey": ""}), json.dumps({"other": "x"})],
)
def test_corrupt_secret_is_regenerated(tmp_path: Path, content: str) -> None:
    """Unreadable or incomplete files are replaced by a new secret."""
    path = tmp_path / SECRETS_FILE
    path.write_text(content, encoding="utf-8")

    record = get_or_create_secret(path)

    assert len(record.secret_key) == 64
    assert json.loads(path.read_text(encoding="utf-8")) == record.to_dict()


def test_write_failure_raises(tmp_path: Path) -> None:
    """Failing to persist a new secret is surfaced."""
    path = tmp_path / "missing-dir" / SECRETS_FILE

    with pytest.raises(SecretStoreError, match="Unable to write secrets file"):
        get_or_create_secret(path)


def test_identity_is_sha256_of_secret() -> None:
    """The public identifier is the hex SHA-256 digest of the secret key."""
    record = SecretRecord(secret_key="abc123")

    assert derive_identity(record) == hashlib.sha256(b"abc123").hexdigest()
    assert derive_identity(record) == derive_identity(SecretRecord(secret_key="abc123"))
    assert derive_identity(record) != derive_identity(SecretRecord(secret_key="abc124"))
