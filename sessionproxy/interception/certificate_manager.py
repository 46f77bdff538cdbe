"""
Certificate Authority for SSL/TLS Interception

Handles:
- Root CA key and certificate generation
- PEM persistence and loading
- Certificate details extraction
- Exporting the CA in the layout mitmproxy expects
"""

import base64
import binascii
import hashlib
import os
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Any, Tuple, Union

import structlog
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from sessionproxy.core.exceptions import (
    CryptoError,
    FormatError,
    NotFoundError,
    StorageError,
)

logger = structlog.get_logger()

PathLike = Union[str, Path]

# mitmproxy looks for "<basename>-ca.pem" holding key and certificate together
MITMPROXY_CA_BASENAME = "mitmproxy"

EXPIRY_WARNING_DAYS = 30

_PEM_BLOCK = re.compile(
    rb"-----BEGIN (?P<label>[A-Z0-9 ]+)-----\s*(?P<body>[A-Za-z0-9+/=\s]*?)\s*-----END (?P=label)-----"
)


def _decode_pem(data: bytes, expected_label: str, source: PathLike) -> bytes:
    """Return the DER payload of the first PEM block carrying ``expected_label``"""
    for match in _PEM_BLOCK.finditer(data):
        label = match.group("label").decode("ascii")
        if label != expected_label:
            continue
        try:
            return base64.b64decode(b"".join(match.group("body").split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise FormatError(f"invalid base64 in {expected_label} block of {source}") from e

    raise FormatError(f"no {expected_label} PEM block found in {source}")


def _read(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError as e:
        raise NotFoundError(f"{path} does not exist") from e
    except OSError as e:
        raise StorageError(f"cannot read {path}: {e}") from e


def _write_private(path: Path, data: bytes):
    """Write key material, owner read/write only from the moment the file exists"""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    # O_TRUNC on a pre-existing file keeps its old mode
    os.chmod(path, 0o600)


class CertificateAuthority:
    """
    Owns the self-signed root identity used for intercepted TLS connections

    The key pair is generated at most once: as long as both files exist on
    disk they are reused, so clients that trusted the root keep trusting it
    across restarts.
    """

    def __init__(
        self,
        organization: str,
        common_name: str,
        valid_days: int,
        cert_path: PathLike,
        key_path: PathLike,
        key_size: int = 2048,
    ):
        self.organization = organization
        self.common_name = common_name
        self.valid_days = valid_days
        self.cert_path = Path(cert_path)
        self.key_path = Path(key_path)
        self.key_size = key_size
        self.logger = logger.bind(component="certificate_authority")

    @classmethod
    def from_config(cls, config) -> "CertificateAuthority":
        """Build from the ``certificate`` configuration section"""
        return cls(
            organization=config.organization,
            common_name=config.common_name,
            valid_days=config.valid_days,
            cert_path=config.cert_path,
            key_path=config.key_path,
            key_size=config.key_size,
        )

    def exists(self) -> bool:
        """Check if both certificate and key are on disk"""
        return self.cert_path.exists() and self.key_path.exists()

    def ensure(self) -> bool:
        """
        Make sure a root identity is persisted

        Returns:
            True if a new key pair was generated, False if existing files
            were left untouched
        """
        if self.exists():
            self.logger.debug("Reusing existing CA", cert_path=str(self.cert_path))
            return False

        cert_pem, key_pem = self._generate()

        try:
            for path in (self.cert_path, self.key_path):
                path.parent.mkdir(parents=True, exist_ok=True)
            self.cert_path.write_bytes(cert_pem)
            _write_private(self.key_path, key_pem)
        except OSError as e:
            raise StorageError(f"cannot write CA material: {e}") from e

        self.logger.info(
            "Generated new CA",
            organization=self.organization,
            common_name=self.common_name,
            valid_days=self.valid_days,
            cert_path=str(self.cert_path),
            key_path=str(self.key_path),
        )
        return True

    def _generate(self) -> Tuple[bytes, bytes]:
        """Create the key pair and self-signed certificate as PEM bytes"""
        try:
            key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)

            name = x509.Name([
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
                x509.NameAttribute(NameOID.COMMON_NAME, self.common_name),
            ])
            not_before = datetime.now(timezone.utc).replace(microsecond=0)
            not_after = not_before + timedelta(days=self.valid_days)

            cert = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(not_before)
                .not_valid_after(not_after)
                .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=True,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                    critical=False,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                    critical=False,
                )
                .sign(key, hashes.SHA256())
            )

            cert_pem = cert.public_bytes(serialization.Encoding.PEM)
            key_pem = key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise CryptoError(f"CA generation failed: {e}") from e

        return cert_pem, key_pem

    def load(self) -> Tuple[x509.Certificate, Any]:
        """
        Parse the persisted certificate and private key

        Returns:
            (certificate, private_key)
        """
        cert_data = _read(self.cert_path)
        key_data = _read(self.key_path)

        cert_der = _decode_pem(cert_data, "CERTIFICATE", self.cert_path)
        key_der = _decode_pem(key_data, "PRIVATE KEY", self.key_path)

        try:
            cert = x509.load_der_x509_certificate(cert_der)
        except ValueError as e:
            raise CryptoError(f"cannot parse certificate {self.cert_path}: {e}") from e

        try:
            key = serialization.load_der_private_key(key_der, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise CryptoError(f"cannot parse private key {self.key_path}: {e}") from e

        return cert, key

    def info(self) -> Dict[str, Any]:
        """
        Get information about the CA certificate

        Returns:
            Dictionary with subject, validity and fingerprint details
        """
        cert, _ = self.load()

        not_before = cert.not_valid_before_utc
        not_after = cert.not_valid_after_utc
        days_until_expiry = (not_after - datetime.now(timezone.utc)).days

        return {
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "serial_number": cert.serial_number,
            "not_before": not_before.isoformat(),
            "not_after": not_after.isoformat(),
            "days_until_expiry": days_until_expiry,
            "is_expired": days_until_expiry < 0,
            "is_expiring_soon": 0 <= days_until_expiry <= EXPIRY_WARNING_DAYS,
            "fingerprint": hashlib.sha256(
                cert.public_bytes(serialization.Encoding.DER)
            ).hexdigest(),
            "cert_path": str(self.cert_path),
        }

    def write_mitmproxy_bundle(self, confdir: PathLike) -> Path:
        """
        Install this CA as mitmproxy's signing authority

        mitmproxy loads ``<confdir>/mitmproxy-ca.pem`` (private key followed by
        certificate) and mints per-host certificates from it.

        Returns:
            Path of the bundle file
        """
        cert, key = self.load()
        bundle = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ) + cert.public_bytes(serialization.Encoding.PEM)

        bundle_path = Path(confdir) / f"{MITMPROXY_CA_BASENAME}-ca.pem"
        try:
            if bundle_path.exists() and bundle_path.read_bytes() == bundle:
                return bundle_path
            bundle_path.parent.mkdir(parents=True, exist_ok=True)
            _write_private(bundle_path, bundle)
        except OSError as e:
            raise StorageError(f"cannot write mitmproxy CA bundle {bundle_path}: {e}") from e

        self.logger.info("Installed CA for mitmproxy", bundle=str(bundle_path))
        return bundle_path


def exists(cert_path: PathLike, key_path: PathLike) -> bool:
    """Pure existence check on both paths"""
    return Path(cert_path).exists() and Path(key_path).exists()


def ensure(
    organization: str,
    common_name: str,
    valid_days: int,
    cert_path: PathLike,
    key_path: PathLike,
    key_size: int = 2048,
) -> bool:
    """Generate and persist a root CA unless both files already exist"""
    return CertificateAuthority(
        organization, common_name, valid_days, cert_path, key_path, key_size
    ).ensure()


def load(cert_path: PathLike, key_path: PathLike) -> Tuple[x509.Certificate, Any]:
    """Parse a persisted CA back into certificate and private key objects"""
    return CertificateAuthority("", "", 1, cert_path, key_path).load()
