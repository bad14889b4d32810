"""TLS contexts built from PKI credentials.

Both sides trust only the PKI's CA certificate. ``ssl.SSLContext`` loads
certificate chains from files only, so the credential is written to a
private temp directory for the duration of the load.
"""

from __future__ import annotations

import ssl
import tempfile
from pathlib import Path

from cryptography import x509

from mbsec.pki.codec import serialize_certificate
from mbsec.pki.credential import Credential


def _load_credential(ctx: ssl.SSLContext, credential: Credential) -> None:
    tmpdir = tempfile.mkdtemp(prefix="mbsec-tls-")
    cert_path = Path(tmpdir) / "cert.pem"
    key_path = Path(tmpdir) / "key.pem"

    try:
        cert_path.write_text(credential.certificate_pem)
        cert_path.chmod(0o600)
        key_path.touch(mode=0o600)
        key_path.write_text(credential.private_key_pem)

        ctx.load_cert_chain(str(cert_path), str(key_path))
    finally:
        for p in (cert_path, key_path):
            p.unlink(missing_ok=True)
        Path(tmpdir).rmdir()


def _trust(ctx: ssl.SSLContext, ca_certificate: x509.Certificate) -> None:
    ctx.load_verify_locations(cadata=serialize_certificate(ca_certificate).decode())


def server_ssl_context(
    credential: Credential,
    ca_certificate: x509.Certificate,
    require_client_cert: bool = True,
) -> ssl.SSLContext:
    """Build the listener context.

    With ``require_client_cert=False`` peers without a certificate are
    accepted; they resolve to no role and are authorized for nothing.
    Certificates that are presented must still chain to the CA.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    _load_credential(ctx, credential)
    _trust(ctx, ca_certificate)
    ctx.verify_mode = ssl.CERT_REQUIRED if require_client_cert else ssl.CERT_OPTIONAL
    return ctx


def client_ssl_context(
    credential: Credential | None,
    ca_certificate: x509.Certificate,
) -> ssl.SSLContext:
    """Build a client context; ``credential=None`` connects without a certificate."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    if credential is not None:
        _load_credential(ctx, credential)
    _trust(ctx, ca_certificate)
    # PROTOCOL_TLS_CLIENT defaults: CERT_REQUIRED and hostname checking against SAN
    return ctx
