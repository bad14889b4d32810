"""Modbus/TCP Security server.

Every connection is TLS with mutual authentication. The peer's role is read
from its certificate once, at connection start; every request is then
checked against the authorization service before it touches the process
image. A NOT_AUTHORIZED verdict becomes an ILLEGAL_FUNCTION exception
response here, at the protocol boundary, and nowhere else.

All state lives in a ServerContext owned by one server instance, so several
servers (e.g. one per test) can run side by side.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog
from cryptography import x509

from mbsec.logging_config import get_logger
from mbsec.modbus.pdu import (
    ExceptionCode,
    Frame,
    FramingError,
    ModbusRequestError,
    ReadCoilsRequest,
    ReadHoldingRegistersRequest,
    Request,
    WriteSingleCoilRequest,
    WriteSingleRegisterRequest,
    decode_request,
    exception_pdu,
    read_bits_pdu,
    read_frame,
    read_registers_pdu,
)
from mbsec.modbus.tls import server_ssl_context
from mbsec.pki.credential import Credential
from mbsec.pki.roles import PeerCertificateRoleResolver, RoleResolver
from mbsec.services.authz_service import Operation, Verdict, authorize

logger = get_logger(__name__)

ADDRESS_SPACE = 65536
MODBUS_TLS_PORT = 802

Authorizer = Callable[[Operation, str | None], Verdict]


class ProcessImage:
    """Coils and holding registers, shared by all unit ids."""

    def __init__(self, size: int = ADDRESS_SPACE):
        self._coils = bytearray(size)
        self._registers = [0] * size

    def _check_range(self, function_code: int, address: int, quantity: int) -> None:
        if address + quantity > len(self._registers):
            raise ModbusRequestError(function_code, ExceptionCode.ILLEGAL_DATA_ADDRESS)

    def read_coils(self, function_code: int, address: int, quantity: int) -> list[bool]:
        self._check_range(function_code, address, quantity)
        return [bool(b) for b in self._coils[address : address + quantity]]

    def write_coil(self, function_code: int, address: int, value: bool) -> None:
        self._check_range(function_code, address, 1)
        self._coils[address] = int(value)

    def read_registers(self, function_code: int, address: int, quantity: int) -> list[int]:
        self._check_range(function_code, address, quantity)
        return self._registers[address : address + quantity]

    def write_register(self, function_code: int, address: int, value: int) -> None:
        self._check_range(function_code, address, 1)
        self._registers[address] = value


@dataclass
class ServerContext:
    """Everything one server instance needs; nothing is module-global."""

    credential: Credential
    ca_certificate: x509.Certificate
    require_client_cert: bool = True
    process_image: ProcessImage = field(default_factory=ProcessImage)
    role_resolver: RoleResolver = field(default_factory=PeerCertificateRoleResolver)
    authorizer: Authorizer = authorize

    def handle_request(self, unit_id: int, pdu: bytes, role: str | None) -> bytes:
        """Decode, authorize and execute one request PDU; return the response PDU."""
        try:
            request = decode_request(pdu)
        except ModbusRequestError as e:
            logger.debug("Rejected malformed request", unit_id=unit_id, error=str(e))
            return exception_pdu(e.function_code, e.exception_code)

        verdict = self.authorizer(request.operation, role)
        if verdict is not Verdict.AUTHORIZED:
            return exception_pdu(request.function_code, ExceptionCode.ILLEGAL_FUNCTION)

        try:
            return self._execute(request)
        except ModbusRequestError as e:
            return exception_pdu(e.function_code, e.exception_code)

    def _execute(self, request: Request) -> bytes:
        image = self.process_image
        fc = request.function_code
        match request:
            case ReadCoilsRequest(address=address, quantity=quantity):
                return read_bits_pdu(fc, image.read_coils(fc, address, quantity))
            case ReadHoldingRegistersRequest(address=address, quantity=quantity):
                return read_registers_pdu(fc, image.read_registers(fc, address, quantity))
            case WriteSingleCoilRequest(address=address, value=value):
                image.write_coil(fc, address, value)
                return request.encode()
            case WriteSingleRegisterRequest(address=address, value=value):
                image.write_register(fc, address, value)
                return request.encode()


class ModbusSecurityServer:
    """asyncio TLS listener serving one ServerContext."""

    def __init__(
        self,
        context: ServerContext,
        host: str = "0.0.0.0",
        port: int = MODBUS_TLS_PORT,
    ):
        self._context = context
        self._host = host
        self._port = port
        self._server: asyncio.Server | None = None

    @property
    def context(self) -> ServerContext:
        return self._context

    @property
    def port(self) -> int:
        """The bound port (resolves port 0 once started)."""
        if self._server is None or not self._server.sockets:
            return self._port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        ssl_ctx = server_ssl_context(
            self._context.credential,
            self._context.ca_certificate,
            require_client_cert=self._context.require_client_cert,
        )
        self._server = await asyncio.start_server(
            self._handle_connection, self._host, self._port, ssl=ssl_ctx
        )
        logger.info("Modbus Security server listening", host=self._host, port=self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Modbus Security server stopped")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def __aenter__(self) -> ModbusSecurityServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peer = writer.get_extra_info("peername")
        peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        structlog.contextvars.bind_contextvars(peer=peer_str)

        # Fixed for the lifetime of the TLS session
        role = self._context.role_resolver.resolve_role(writer)
        logger.info("Connection from peer", role=role)

        try:
            while True:
                frame = await read_frame(reader)
                structlog.contextvars.bind_contextvars(unit_id=frame.unit_id)
                response = self._context.handle_request(frame.unit_id, frame.pdu, role)
                writer.write(
                    Frame(frame.transaction_id, frame.unit_id, response).encode()
                )
                await writer.drain()
        except asyncio.IncompleteReadError:
            pass
        except FramingError as e:
            logger.warning("Closing connection after framing error", error=str(e))
        except (ConnectionError, OSError) as e:
            logger.info("Connection error", error=str(e))
        finally:
            logger.info("Connection closed")
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            structlog.contextvars.clear_contextvars()
