"""Role extension encoding and peer role extraction.

Client certificates carry their authorization role in a private extension:

    1.3.6.1.4.1.50316.802.1  (non-critical)  UTF8String "ReadOnly" | "ReadWrite" | ...

Extraction is total: a missing or undecodable extension means "no role".
Whether a role grants anything is decided by the authorization service.
"""

from typing import Any, Protocol

from cryptography import x509
from cryptography.x509.oid import ObjectIdentifier
from pyasn1.codec.der import decoder, encoder
from pyasn1.error import PyAsn1Error
from pyasn1.type import char

from mbsec.logging_config import get_logger

logger = get_logger(__name__)

ROLE_OID = ObjectIdentifier("1.3.6.1.4.1.50316.802.1")


def encode_role(role: str) -> bytes:
    """DER-encode a role as an ASN.1 UTF8String."""
    return encoder.encode(char.UTF8String(role))


def decode_role(data: bytes) -> str:
    """Decode a DER UTF8String role payload.

    Raises:
        ValueError: If the payload is not exactly one DER UTF8String.
    """
    try:
        value, rest = decoder.decode(data, asn1Spec=char.UTF8String())
    except (PyAsn1Error, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid role payload: {e}") from e
    if rest:
        raise ValueError(f"Invalid role payload: {len(rest)} trailing bytes")
    return str(value)


def role_extension(role: str) -> x509.UnrecognizedExtension:
    """Build the role extension for a client certificate."""
    return x509.UnrecognizedExtension(ROLE_OID, encode_role(role))


def extract_role(cert: x509.Certificate) -> str | None:
    """Return the role carried by a certificate, or None.

    No vocabulary check happens here; unknown roles are returned as-is.
    """
    try:
        ext = cert.extensions.get_extension_for_oid(ROLE_OID)
    except x509.ExtensionNotFound:
        return None

    try:
        return decode_role(ext.value.value)
    except ValueError as e:
        logger.warning(
            "Ignoring undecodable role extension",
            serial=cert.serial_number,
            error=str(e),
        )
        return None


def role_from_der(der: bytes | None) -> str | None:
    """Return the role from a DER-encoded peer certificate, or None."""
    if not der:
        return None
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as e:
        logger.warning("Ignoring unparsable peer certificate", error=str(e))
        return None
    return extract_role(cert)


# ── Connection-facing resolvers ──────────────────────────────────────────


class SupportsExtraInfo(Protocol):
    """Anything exposing asyncio-style extra info (StreamWriter, Transport)."""

    def get_extra_info(self, name: str, default: Any = None) -> Any: ...


class RoleResolver(Protocol):
    """Resolves the role bound to a connection's peer certificate."""

    def resolve_role(self, connection: Any) -> str | None: ...


class PeerCertificateRoleResolver:
    """Reads the role from the peer certificate negotiated on a TLS connection.

    Plain-TCP connections and peers that sent no certificate resolve to None.
    """

    def resolve_role(self, connection: SupportsExtraInfo) -> str | None:
        ssl_object = connection.get_extra_info("ssl_object")
        if ssl_object is None:
            return None
        return role_from_der(ssl_object.getpeercert(binary_form=True))
