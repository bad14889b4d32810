"""Encoding and decoding of keys, certificates and credential archives.

PEM for the operator-facing companion files, password-less PKCS#12 for the
archive that the credential store treats as the source of truth.
"""

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from mbsec.exceptions import CredentialDecodeError
from mbsec.pki.credential import Credential

# ── PEM ──────────────────────────────────────────────────────────────────


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def serialize_private_key(
    key: rsa.RSAPrivateKey,
    password: bytes | None = None,
) -> bytes:
    """Serialize private key to PEM format."""
    encryption: serialization.KeySerializationEncryption
    if password:
        encryption = serialization.BestAvailableEncryption(password)
    else:
        encryption = serialization.NoEncryption()

    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )


def load_certificate(pem_data: bytes) -> x509.Certificate:
    """Load certificate from PEM data."""
    return x509.load_pem_x509_certificate(pem_data)


def load_private_key(
    pem_data: bytes,
    password: bytes | None = None,
) -> rsa.RSAPrivateKey:
    """Load an RSA private key from PEM data."""
    key = serialization.load_pem_private_key(pem_data, password=password)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise TypeError(f"Expected RSA private key, got {type(key).__name__}")
    return key


def get_certificate_fingerprint(cert: x509.Certificate) -> str:
    """Get SHA256 fingerprint of certificate."""
    return cert.fingerprint(hashes.SHA256()).hex()


# ── PKCS#12 archive ──────────────────────────────────────────────────────


def serialize_archive(alias: str, credential: Credential) -> bytes:
    """Serialize a credential to a password-less PKCS#12 archive.

    The alias is stored as the friendly name of the key entry.
    """
    return pkcs12.serialize_key_and_certificates(
        name=alias.encode(),
        key=credential.private_key,
        cert=credential.certificate,
        cas=None,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_archive(data: bytes, alias: str | None = None) -> Credential:
    """Load a credential from a password-less PKCS#12 archive.

    Args:
        data: Archive bytes.
        alias: Expected friendly name. Checked only when the archive carries one.

    Raises:
        CredentialDecodeError: If the archive is unreadable or incomplete.
    """
    try:
        archive = pkcs12.load_pkcs12(data, None)
    except ValueError as e:
        raise CredentialDecodeError(f"Invalid PKCS#12 archive: {e}") from e

    if archive.key is None or archive.cert is None:
        raise CredentialDecodeError("PKCS#12 archive is missing its key or certificate")

    if not isinstance(archive.key, rsa.RSAPrivateKey):
        raise CredentialDecodeError(
            f"Expected RSA private key, got {type(archive.key).__name__}"
        )

    if alias is not None and archive.cert.friendly_name is not None:
        stored_alias = archive.cert.friendly_name.decode(errors="replace")
        if stored_alias != alias:
            raise CredentialDecodeError(
                f"Archive alias '{stored_alias}' does not match '{alias}'"
            )

    return Credential(private_key=archive.key, certificate=archive.cert.certificate)
