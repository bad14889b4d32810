"""
Bootstrap the PKI: CA, server credential and configured client credentials.

Idempotent: credentials already on disk are loaded, never re-issued.
Run via: python -m mbsec.cli.bootstrap

Order:
  1. ca                 self-signed authority       (fatal on failure)
  2. server             CA-signed, serverAuth       (fatal on failure)
  3. each client alias  CA-signed, clientAuth, role (failures recorded per alias)

Reads configuration from mbsec.config (MBSEC_PKI_DIR, MBSEC_CLIENTS, ...).
"""

import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm

from mbsec.config import ClientIdentityConfig, settings
from mbsec.exceptions import BootstrapError, PKIError
from mbsec.logging_config import configure_logging, get_logger
from mbsec.pki.ca import CertificateAuthority, create_root_credential
from mbsec.pki.credential import Credential
from mbsec.pki.store import CredentialStore
from mbsec.services.authz_service import is_known_role

logger = get_logger(__name__)

CA_ALIAS = "ca"
SERVER_ALIAS = "server"

# Errors that affect one client identity only
_CLIENT_ERRORS = (PKIError, OSError, ValueError, TypeError, UnsupportedAlgorithm)


@dataclass
class BootstrapResult:
    """Credentials ensured by one bootstrap run."""

    ca: Credential
    server: Credential
    clients: dict[str, Credential] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def bootstrap_pki(
    pki_dir: Path,
    clients: Iterable[ClientIdentityConfig],
    *,
    validity_days: int | None = None,
    key_size: int | None = None,
    server_dns_names: Sequence[str] = ("localhost",),
) -> BootstrapResult:
    """Ensure the CA, server and client credentials exist under ``pki_dir``.

    Raises:
        BootstrapError: If the CA or server credential cannot be ensured.
    """
    store = CredentialStore(pki_dir)

    try:
        ca = store.ensure(
            CA_ALIAS,
            lambda: create_root_credential(validity_days=validity_days, key_size=key_size),
        )
    except (PKIError, OSError, ValueError) as e:
        raise BootstrapError(str(e), alias=CA_ALIAS, step="ca") from e

    authority = CertificateAuthority(ca)

    try:
        server = store.ensure(
            SERVER_ALIAS,
            lambda: authority.issue_server_credential(
                dns_names=server_dns_names,
                validity_days=validity_days,
                key_size=key_size,
            ),
        )
    except (PKIError, OSError, ValueError) as e:
        raise BootstrapError(str(e), alias=SERVER_ALIAS, step="server") from e

    result = BootstrapResult(ca=ca, server=server)

    for client in clients:
        if not is_known_role(client.role):
            logger.warning(
                "Client role is not in the permission table; it will authorize nothing",
                alias=client.alias,
                role=client.role,
            )

        def issue(role: str = client.role) -> Credential:
            return authority.issue_client_credential(
                role,
                validity_days=validity_days,
                key_size=key_size,
            )

        try:
            result.clients[client.alias] = store.ensure(client.alias, issue)
        except _CLIENT_ERRORS as e:
            logger.error(
                "Failed to ensure client credential",
                alias=client.alias,
                role=client.role,
                error=str(e),
            )
            result.failures[client.alias] = str(e)

    logger.info(
        "PKI bootstrap complete",
        pki_dir=str(pki_dir),
        clients=sorted(result.clients),
        failed=sorted(result.failures),
    )

    return result


def main() -> int:
    configure_logging(json_logs=settings.json_logs, log_level=settings.effective_log_level)

    try:
        result = bootstrap_pki(
            settings.pki_dir,
            settings.clients,
            validity_days=settings.certificates.validity_days,
            key_size=settings.certificates.key_size,
            server_dns_names=settings.server.dns_names,
        )
    except BootstrapError as e:
        logger.error("PKI bootstrap failed", alias=e.alias, step=e.step, error=str(e))
        return 1

    if not result.ok:
        for alias, error in result.failures.items():
            logger.error("Client credential missing", alias=alias, error=error)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
