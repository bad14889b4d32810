"""
Run the Modbus Security server.

Bootstraps the PKI first (idempotent), then serves until interrupted.
Run via: python -m mbsec.cli.serve
"""

import asyncio
import sys

from mbsec.cli.bootstrap import bootstrap_pki
from mbsec.config import settings
from mbsec.exceptions import BootstrapError
from mbsec.logging_config import configure_logging, get_logger
from mbsec.modbus.server import ModbusSecurityServer, ServerContext

logger = get_logger(__name__)


async def serve() -> None:
    result = bootstrap_pki(
        settings.pki_dir,
        settings.clients,
        validity_days=settings.certificates.validity_days,
        key_size=settings.certificates.key_size,
        server_dns_names=settings.server.dns_names,
    )
    for alias, error in result.failures.items():
        logger.warning("Client credential unavailable", alias=alias, error=error)

    context = ServerContext(
        credential=result.server,
        ca_certificate=result.ca.certificate,
        require_client_cert=settings.server.require_client_cert,
    )
    server = ModbusSecurityServer(context, settings.server.host, settings.server.port)
    async with server:
        await server.serve_forever()


def main() -> int:
    configure_logging(json_logs=settings.json_logs, log_level=settings.effective_log_level)
    logger.info("Starting Modbus Security server", app=settings.app_name)

    try:
        asyncio.run(serve())
    except BootstrapError as e:
        logger.error("PKI bootstrap failed", alias=e.alias, step=e.step, error=str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down Modbus Security server")
    return 0


if __name__ == "__main__":
    sys.exit(main())
