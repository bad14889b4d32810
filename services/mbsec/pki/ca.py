"""Certificate Authority for the Modbus Security PKI.

Handles generation of:
- Self-signed CA certificate and key (RSA 2048, SHA-256)
- Server certificate (serverAuth, SAN DNS:localhost)
- Client certificates (clientAuth) carrying the role extension

All issuance is pure credential construction: no file or network I/O.
"""

import datetime
import secrets
import threading
from collections.abc import Sequence
from enum import StrEnum

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from mbsec.config import settings
from mbsec.logging_config import get_logger
from mbsec.pki.credential import Credential
from mbsec.pki.roles import role_extension

logger = get_logger(__name__)

CA_COMMON_NAME = "Modbus CA"
SERVER_COMMON_NAME = "Modbus Server"
CLIENT_COMMON_NAME = "Modbus Client"

RSA_PUBLIC_EXPONENT = 65537


class LeafKind(StrEnum):
    SERVER = "server"
    CLIENT = "client"


# ── Key pairs, serials and validity ──────────────────────────────────────

_serial_lock = threading.Lock()
_last_serial = 0


def generate_key_pair(key_size: int | None = None) -> rsa.RSAPrivateKey:
    """Generate an RSA key pair."""
    if key_size is None:
        key_size = settings.certificates.key_size
    if key_size < 2048:
        raise ValueError(f"RSA key size must be at least 2048 bits, got {key_size}")
    return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=key_size)


def next_serial_number(issued_at: datetime.datetime) -> int:
    """Return a serial number ordered by issuance time and unique per call.

    Layout: issuance milliseconds in the high bits, 64 random bits below.
    Within one process the result is strictly increasing even when several
    certificates are issued in the same millisecond.
    """
    global _last_serial  # noqa: PLW0603

    millis = int(issued_at.timestamp() * 1000)
    candidate = (millis << 64) | secrets.randbits(64)
    with _serial_lock:
        if candidate <= _last_serial:
            candidate = _last_serial + 1
        _last_serial = candidate
    return candidate


def _validity_window(
    validity_days: int | None,
) -> tuple[datetime.datetime, datetime.datetime]:
    if validity_days is None:
        validity_days = settings.certificates.validity_days
    # X.509 times carry whole seconds
    not_before = datetime.datetime.now(datetime.UTC).replace(microsecond=0)
    return not_before, not_before + datetime.timedelta(days=validity_days)


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


# ── CA Generation ────────────────────────────────────────────────────────


def create_root_credential(
    common_name: str = CA_COMMON_NAME,
    validity_days: int | None = None,
    key_size: int | None = None,
) -> Credential:
    """Generate a new self-signed CA credential."""
    private_key = generate_key_pair(key_size)
    public_key = private_key.public_key()

    subject = issuer = _name(common_name)
    not_before, not_after = _validity_window(validity_days)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(next_serial_number(not_before))
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.BasicConstraints(ca=True, path_length=None),
            critical=True,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                key_cert_sign=True,
                crl_sign=True,
                key_encipherment=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key),
            critical=False,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    logger.info(
        "Generated new CA certificate",
        common_name=common_name,
        serial=cert.serial_number,
        expires=cert.not_valid_after_utc.isoformat(),
    )

    return Credential(private_key=private_key, certificate=cert)


# ── Certificate Issuance ─────────────────────────────────────────────────


def issue_leaf_credential(
    authority: Credential,
    kind: LeafKind,
    role: str | None = None,
    *,
    dns_names: Sequence[str] = ("localhost",),
    validity_days: int | None = None,
    key_size: int | None = None,
) -> Credential:
    """Issue a CA-signed server or client credential.

    Args:
        authority: The CA credential that signs the leaf.
        kind: Server or client leaf.
        role: Role for the client role extension. Ignored for server leaves.
        dns_names: SAN DNS names for server leaves.
        validity_days: Certificate lifetime (default from settings, 365 days).
        key_size: RSA key size (default from settings, 2048 bits).
    """
    kind = LeafKind(kind)
    if kind is LeafKind.SERVER and role is not None:
        logger.warning("Role ignored for server certificate", role=role)
        role = None

    private_key = generate_key_pair(key_size)
    public_key = private_key.public_key()

    ca_cert = authority.certificate
    ca_ski = ca_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)

    common_name = CLIENT_COMMON_NAME if kind is LeafKind.CLIENT else SERVER_COMMON_NAME
    not_before, not_after = _validity_window(validity_days)

    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(ca_cert.subject)
        .public_key(public_key)
        .serial_number(next_serial_number(not_before))
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=False,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski.value),
            critical=False,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key),
            critical=False,
        )
    )

    if kind is LeafKind.CLIENT:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
        if role is not None:
            builder = builder.add_extension(role_extension(role), critical=False)
    else:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False,
        )

    cert = builder.sign(authority.private_key, hashes.SHA256())

    logger.info(
        "Issued leaf certificate",
        kind=kind.value,
        role=role,
        serial=cert.serial_number,
        expires=cert.not_valid_after_utc.isoformat(),
    )

    return Credential(private_key=private_key, certificate=cert)


class CertificateAuthority:
    """Issues server and client credentials under one CA credential."""

    def __init__(self, credential: Credential):
        self._credential = credential

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def ca_cert(self) -> x509.Certificate:
        return self._credential.certificate

    @property
    def ca_cert_pem(self) -> str:
        """Return the CA certificate as a PEM string."""
        return self._credential.certificate_pem

    @classmethod
    def generate(
        cls,
        common_name: str = CA_COMMON_NAME,
        validity_days: int | None = None,
        key_size: int | None = None,
    ) -> "CertificateAuthority":
        """Generate a new CA."""
        return cls(create_root_credential(common_name, validity_days, key_size))

    def issue_server_credential(
        self,
        dns_names: Sequence[str] = ("localhost",),
        validity_days: int | None = None,
        key_size: int | None = None,
    ) -> Credential:
        return issue_leaf_credential(
            self._credential,
            LeafKind.SERVER,
            dns_names=dns_names,
            validity_days=validity_days,
            key_size=key_size,
        )

    def issue_client_credential(
        self,
        role: str | None,
        validity_days: int | None = None,
        key_size: int | None = None,
    ) -> Credential:
        return issue_leaf_credential(
            self._credential,
            LeafKind.CLIENT,
            role,
            validity_days=validity_days,
            key_size=key_size,
        )
