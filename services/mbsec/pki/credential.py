"""Credential value type: an RSA private key paired with its X.509 certificate."""

from dataclasses import dataclass

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


@dataclass(frozen=True)
class Credential:
    """A key pair plus the certificate binding its public half.

    Never mutated after creation. A role change means issuing a new
    credential, not editing this one.
    """

    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    @property
    def subject(self) -> x509.Name:
        return self.certificate.subject

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def certificate_pem(self) -> str:
        """Return the certificate as a PEM string."""
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode()

    @property
    def private_key_pem(self) -> str:
        """Return the private key as an unencrypted PKCS#8 PEM string."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
