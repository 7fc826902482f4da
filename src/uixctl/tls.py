"""TLS material checks for the UI listener."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .bridge_config import TLSSettings


class TLSConfigurationError(RuntimeError):
    """Raised when the configured TLS material is missing or unusable."""


@dataclass(frozen=True)
class TLSBundle:
    """Loaded TLS material summary."""

    source: str
    paths: tuple[Path, ...]
    subject: str
    not_valid_before: datetime
    not_valid_after: datetime

    def expired(self, *, now: datetime | None = None) -> bool:
        """Return True when the certificate is past its validity window."""
        return self.not_valid_after <= (now or datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "source": self.source,
            "paths": [str(path) for path in self.paths],
            "subject": self.subject,
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
        }


def load_tls_bundle(settings: TLSSettings, *, base_dir: Path | None = None) -> TLSBundle:
    """Load and cross-check the TLS material referenced by *settings*.

    A ``pfx`` bundle takes precedence over a ``key``/``cert`` pair, matching
    how the listener consumes the settings. Relative paths resolve against
    *base_dir* (the instance storage path).
    """
    passphrase = settings.passphrase.encode("utf-8") if settings.passphrase else None
    if settings.pfx:
        pfx_path = _resolve(settings.pfx, base_dir)
        key, cert, _ = _load_pkcs12(pfx_path, passphrase)
        if cert is None:
            raise TLSConfigurationError(f"PKCS#12 bundle {pfx_path} does not contain a certificate.")
        if key is not None and not _public_keys_match(cert, key):
            raise TLSConfigurationError(
                f"PKCS#12 bundle {pfx_path} key does not match its certificate."
            )
        return _bundle("pfx", (pfx_path,), cert)

    if not (settings.key and settings.cert):
        raise TLSConfigurationError("TLS requires either 'pfx' or both 'key' and 'cert'.")

    cert_path = _resolve(settings.cert, base_dir)
    key_path = _resolve(settings.key, base_dir)
    cert = _load_certificate(cert_path)
    key = _load_private_key(key_path, passphrase)
    if not _public_keys_match(cert, key):
        raise TLSConfigurationError(
            f"Certificate {cert_path} does not match private key {key_path}."
        )
    return _bundle("pem", (cert_path, key_path), cert)


def _resolve(value: str, base_dir: Path | None) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    return path


def _read(path: Path, label: str) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError as exc:
        raise TLSConfigurationError(f"TLS {label} {path} does not exist.") from exc
    except OSError as exc:
        raise TLSConfigurationError(f"Unable to read TLS {label} {path}: {exc}") from exc


def _load_certificate(path: Path) -> x509.Certificate:
    data = _read(path, "certificate")
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as exc:
        raise TLSConfigurationError(f"Failed to parse certificate {path}: {exc}") from exc


def _load_private_key(path: Path, passphrase: bytes | None) -> object:
    data = _read(path, "key")
    try:
        return serialization.load_pem_private_key(data, password=passphrase)
    except TypeError as exc:
        if passphrase is None:
            raise TLSConfigurationError(f"Private key {path} requires a passphrase.") from exc
        # a passphrase alongside an unencrypted key is tolerated
        try:
            return serialization.load_pem_private_key(data, password=None)
        except (TypeError, ValueError) as retry_exc:
            raise TLSConfigurationError(
                f"Failed to load private key {path}: {retry_exc}"
            ) from retry_exc
    except ValueError as exc:
        raise TLSConfigurationError(f"Failed to load private key {path}: {exc}") from exc


def _load_pkcs12(
    path: Path,
    passphrase: bytes | None,
) -> tuple[object | None, x509.Certificate | None, list[x509.Certificate]]:
    data = _read(path, "pfx bundle")
    try:
        key, cert, chain = pkcs12.load_key_and_certificates(data, passphrase)
    except (TypeError, ValueError) as exc:
        raise TLSConfigurationError(f"Failed to load PKCS#12 bundle {path}: {exc}") from exc
    return key, cert, list(chain)


def _public_keys_match(cert: x509.Certificate, key: object) -> bool:
    public_key = getattr(key, "public_key", None)
    if public_key is None:
        return False
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    encoding = serialization.Encoding.DER
    return cert.public_key().public_bytes(encoding, fmt) == public_key().public_bytes(
        encoding, fmt
    )


def _bundle(source: str, paths: tuple[Path, ...], cert: x509.Certificate) -> TLSBundle:
    return TLSBundle(
        source=source,
        paths=paths,
        subject=cert.subject.rfc4514_string(),
        not_valid_before=cert.not_valid_before_utc,
        not_valid_after=cert.not_valid_after_utc,
    )


__all__ = ["TLSBundle", "TLSConfigurationError", "load_tls_bundle"]
