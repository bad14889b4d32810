"""
Modbus Security client.

Sends one request to a Modbus/TCP Security server using a client credential
from the PKI directory, logs the reply and exits.

Run via: python -m mbsec.cli.client [OPTIONS] HOST rhr ADDRESS QUANTITY
         python -m mbsec.cli.client [OPTIONS] HOST wsr ADDRESS VALUE

Defaults come from mbsec.config (MBSEC_PKI_DIR, MBSEC_CLIENT__ALIAS,
MBSEC_CLIENT__PORT, ...). Exit code 0 on a normal reply, 1 on an exception
reply or any credential, TLS or connection failure.
"""

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path

import click

from mbsec.cli.bootstrap import CA_ALIAS
from mbsec.config import settings
from mbsec.exceptions import CredentialStoreError
from mbsec.logging_config import configure_logging, get_logger
from mbsec.modbus.client import ModbusTlsClient
from mbsec.modbus.pdu import (
    MAX_READ_REGISTERS,
    ExceptionCode,
    FramingError,
    ModbusReply,
    ReadHoldingRegistersRequest,
    Request,
    WriteSingleRegisterRequest,
)
from mbsec.modbus.tls import client_ssl_context
from mbsec.pki.store import ARCHIVE_SUFFIX, load_credential

logger = get_logger(__name__)

REGISTER = click.IntRange(0, 0xFFFF)


@dataclass(frozen=True)
class ClientOptions:
    host: str
    port: int
    unit_id: int
    server_name: str
    timeout: float
    ca_key_store: Path
    client_key_store: Path


async def send_request(options: ClientOptions, request: Request) -> ModbusReply:
    """Connect, send ``request`` and return the server's reply.

    The archive file stem is the alias stored inside it (``pki/client1.pfx``
    holds ``client1``).

    Raises:
        CredentialStoreError: If either archive is missing or unusable.
        OSError: On TLS or connection failures (including timeouts).
    """
    ca = load_credential(options.ca_key_store, options.ca_key_store.stem)
    credential = load_credential(options.client_key_store, options.client_key_store.stem)

    client = ModbusTlsClient(
        options.host,
        client_ssl_context(credential, ca.certificate),
        port=options.port,
        server_hostname=options.server_name,
        timeout=options.timeout,
    )
    async with client:
        logger.debug("Sending request", request=repr(request), unit_id=options.unit_id)
        return await client.request(options.unit_id, request)


def _run(options: ClientOptions, request: Request) -> None:
    try:
        reply = asyncio.run(send_request(options, request))
    except CredentialStoreError as e:
        logger.error("Cannot load credential", alias=e.alias, path=str(e.path), error=str(e))
        sys.exit(1)
    except (OSError, EOFError, FramingError) as e:
        logger.error(
            "Request failed",
            host=options.host,
            port=options.port,
            error=str(e) or type(e).__name__,
        )
        sys.exit(1)

    if not reply.ok:
        try:
            exception = ExceptionCode(reply.exception_code).name
        except ValueError:
            exception = f"0x{reply.exception_code:02x}"
        logger.warning(
            "Exception response",
            function_code=reply.function_code,
            exception_code=reply.exception_code,
            exception=exception,
        )
        sys.exit(1)

    logger.info(
        "Response",
        function_code=reply.function_code,
        values=list(reply.values),
    )


@click.group()
@click.option(
    "--ca-key-store",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="CA credential archive [default: <pki_dir>/ca.pfx]",
)
@click.option(
    "--client-key-store",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Client credential archive [default: <pki_dir>/<client alias>.pfx]",
)
@click.option("-p", "--port", type=click.IntRange(1, 65535), default=None, help="Server port")
@click.option("-u", "--unit-id", type=click.IntRange(0, 255), default=None, help="Modbus unit id")
@click.option("--server-name", default=None, help="Name expected in the server certificate")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.argument("host")
@click.pass_context
def cli(
    ctx: click.Context,
    ca_key_store: Path | None,
    client_key_store: Path | None,
    port: int | None,
    unit_id: int | None,
    server_name: str | None,
    debug: bool,
    host: str,
) -> None:
    """Start a Modbus Security client."""
    configure_logging(
        json_logs=settings.json_logs,
        log_level="DEBUG" if debug else settings.effective_log_level,
    )

    defaults = settings.client
    ctx.obj = ClientOptions(
        host=host,
        port=port if port is not None else defaults.port,
        unit_id=unit_id if unit_id is not None else defaults.unit_id,
        server_name=server_name or defaults.server_name,
        timeout=defaults.timeout,
        ca_key_store=ca_key_store or settings.pki_dir / f"{CA_ALIAS}{ARCHIVE_SUFFIX}",
        client_key_store=(
            client_key_store or settings.pki_dir / f"{defaults.alias}{ARCHIVE_SUFFIX}"
        ),
    )


@cli.command()
@click.argument("address", type=REGISTER)
@click.argument("quantity", type=click.IntRange(1, MAX_READ_REGISTERS))
@click.pass_obj
def rhr(options: ClientOptions, address: int, quantity: int) -> None:
    """Read Holding Registers."""
    _run(options, ReadHoldingRegistersRequest(address, quantity))


@cli.command()
@click.argument("address", type=REGISTER)
@click.argument("value", type=REGISTER)
@click.pass_obj
def wsr(options: ClientOptions, address: int, value: int) -> None:
    """Write Single Register."""
    _run(options, WriteSingleRegisterRequest(address, value))


if __name__ == "__main__":
    cli()
