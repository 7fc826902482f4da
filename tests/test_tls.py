"""Unit tests for TLS material checks."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from uixctl.bridge_config import TLSSettings
from uixctl.tls import TLSConfigurationError, load_tls_bundle


def _create_self_signed_cert(
    tmp_path: Path,
    *,
    common_name: str = "example.test",
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
    passphrase: bytes | None = None,
) -> tuple[Path, Path, rsa.RSAPrivateKey, x509.Certificate]:
    default_now = datetime.now(UTC)
    valid_from = valid_from or (default_now - timedelta(days=1))
    valid_to = valid_to or (default_now + timedelta(days=90))
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_to)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    encryption: serialization.KeySerializationEncryption = (
        serialization.BestAvailableEncryption(passphrase)
        if passphrase
        else serialization.NoEncryption()
    )
    safe = common_name.replace(".", "_")
    key_path = tmp_path / f"{safe}.key"
    cert_path = tmp_path / f"{safe}.pem"
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=encryption,
        )
    )
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return cert_path, key_path, key, cert


def test_pem_pair_loads(tmp_path: Path) -> None:
    """A matching certificate and key produce a bundle summary."""
    cert_path, key_path, _, _ = _create_self_signed_cert(tmp_path)

    bundle = load_tls_bundle(TLSSettings(key=str(key_path), cert=str(cert_path)))

    assert bundle.source == "pem"
    assert bundle.paths == (cert_path, key_path)
    assert bundle.subject == "CN=example.test"
    assert bundle.expired() is False
    assert bundle.to_dict()["subject"] == "CN=example.test"


def test_relative_paths_resolve_against_base_dir(tmp_path: Path) -> None:
    """Relative material paths are looked up under the storage path."""
    cert_path, key_path, _, _ = _create_self_signed_cert(tmp_path)

    bundle = load_tls_bundle(
        TLSSettings(key=key_path.name, cert=cert_path.name),
        base_dir=tmp_path,
    )

    assert bundle.paths == (cert_path, key_path)


def test_mismatched_key_is_rejected(tmp_path: Path) -> None:
    """A key from another certificate fails the cross-check."""
    cert_path, _, _, _ = _create_self_signed_cert(tmp_path, common_name="one.test")
    _, other_key, _, _ = _create_self_signed_cert(tmp_path, common_name="two.test")

    with pytest.raises(TLSConfigurationError, match="does not match"):
        load_tls_bundle(TLSSettings(key=str(other_key), cert=str(cert_path)))


def test_encrypted_key_requires_passphrase(tmp_path: Path) -> None:
    """Encrypted keys load with the passphrase and fail without it."""
    cert_path, key_path, _, _ = _create_self_signed_cert(tmp_path, passphrase=b"s3cret")

    bundle = load_tls_bundle(
        TLSSettings(key=str(key_path), cert=str(cert_path), passphrase="s3cret")
    )
    assert bundle.source == "pem"

    with pytest.raises(TLSConfigurationError, match="requires a passphrase"):
        load_tls_bundle(TLSSettings(key=str(key_path), cert=str(cert_path)))


def test_passphrase_with_plain_key_is_tolerated(tmp_path: Path) -> None:
    """A stray passphrase does not break an unencrypted key."""
    cert_path, key_path, _, _ = _create_self_signed_cert(tmp_path)

    bundle = load_tls_bundle(
        TLSSettings(key=str(key_path), cert=str(cert_path), passphrase="unused")
    )

    assert bundle.subject == "CN=example.test"


def test_pfx_bundle_takes_precedence(tmp_path: Path) -> None:
    """A PKCS#12 bundle is used even when a PEM pair is also configured."""
    _, _, key, cert = _create_self_signed_cert(tmp_path, common_name="pfx.test")
    pfx_path = tmp_path / "bundle.pfx"
    pfx_path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"ui", key, cert, None, serialization.BestAvailableEncryption(b"pw")
        )
    )

    bundle = load_tls_bundle(
        TLSSettings(pfx=str(pfx_path), passphrase="pw", key="missing.key", cert="missing.pem")
    )

    assert bundle.source == "pfx"
    assert bundle.paths == (pfx_path,)
    assert bundle.subject == "CN=pfx.test"


def test_pfx_with_wrong_passphrase(tmp_path: Path) -> None:
    """A bundle that cannot be decrypted is reported."""
    _, _, key, cert = _create_self_signed_cert(tmp_path)
    pfx_path = tmp_path / "bundle.pfx"
    pfx_path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"ui", key, cert, None, serialization.BestAvailableEncryption(b"pw")
        )
    )

    with pytest.raises(TLSConfigurationError, match="PKCS#12"):
        load_tls_bundle(TLSSettings(pfx=str(pfx_path), passphrase="wrong"))


def test_missing_files_are_reported(tmp_path: Path) -> None:
    """Missing certificate files raise a configuration error."""
    with pytest.raises(TLSConfigurationError, match="does not exist"):
        load_tls_bundle(
            TLSSettings(key=str(tmp_path / "k.pem"), cert=str(tmp_path / "c.pem"))
        )


def test_incomplete_settings_are_rejected() -> None:
    """A key without a certificate is not enough."""
    with pytest.raises(TLSConfigurationError, match="either 'pfx'"):
        load_tls_bundle(TLSSettings(key="/k.pem"))


def test_expired_certificate_is_detected(tmp_path: Path) -> None:
    """Certificates past their validity window report as expired."""
    now = datetime.now(UTC)
    cert_path, key_path, _, _ = _create_self_signed_cert(
        tmp_path,
        valid_from=now - timedelta(days=30),
        valid_to=now - timedelta(days=1),
    )

    bundle = load_tls_bundle(TLSSettings(key=str(key_path), cert=str(cert_path)))

    assert bundle.expired() is True
    assert bundle.expired(now=now - timedelta(days=2)) is False
