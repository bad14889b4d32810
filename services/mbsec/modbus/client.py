"""Modbus/TCP Security client.

Protocol-level denials come back as a ModbusReply carrying an exception
code; only transport failures (TLS, connection loss) raise.
"""

from __future__ import annotations

import asyncio
import itertools
import ssl

from mbsec.logging_config import get_logger
from mbsec.modbus.pdu import (
    Frame,
    FramingError,
    ModbusReply,
    ReadCoilsRequest,
    ReadHoldingRegistersRequest,
    Request,
    WriteSingleCoilRequest,
    WriteSingleRegisterRequest,
    decode_reply,
    read_frame,
)
from mbsec.modbus.server import MODBUS_TLS_PORT

logger = get_logger(__name__)


class ModbusTlsClient:
    """Sequential request/response client over one TLS connection."""

    def __init__(
        self,
        host: str,
        ssl_context: ssl.SSLContext,
        port: int = MODBUS_TLS_PORT,
        server_hostname: str | None = None,
        timeout: float = 5.0,
    ):
        self._host = host
        self._port = port
        self._ssl_context = ssl_context
        self._server_hostname = server_hostname or host
        self._timeout = timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._transaction_ids = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(
                self._host,
                self._port,
                ssl=self._ssl_context,
                server_hostname=self._server_hostname,
            ),
            timeout=self._timeout,
        )
        logger.info("Connected to Modbus server", host=self._host, port=self._port)

    async def disconnect(self) -> None:
        if self._writer is None:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        self._reader = self._writer = None
        logger.info("Disconnected from Modbus server", host=self._host, port=self._port)

    async def __aenter__(self) -> ModbusTlsClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    async def request(self, unit_id: int, request: Request) -> ModbusReply:
        if self._reader is None or self._writer is None:
            raise ConnectionError("Client is not connected")

        transaction_id = next(self._transaction_ids) & 0xFFFF
        self._writer.write(Frame(transaction_id, unit_id, request.encode()).encode())
        await self._writer.drain()

        try:
            frame = await asyncio.wait_for(read_frame(self._reader), timeout=self._timeout)
        except TimeoutError:
            # A late response would be read as the reply to the next request
            logger.warning(
                "No response from Modbus server, closing connection",
                transaction_id=transaction_id,
                timeout=self._timeout,
            )
            await self.disconnect()
            raise
        if frame.transaction_id != transaction_id:
            raise FramingError(
                f"Transaction id {frame.transaction_id} does not match {transaction_id}"
            )
        return decode_reply(request, frame.pdu)

    async def read_coils(self, unit_id: int, address: int, quantity: int) -> ModbusReply:
        return await self.request(unit_id, ReadCoilsRequest(address, quantity))

    async def read_holding_registers(
        self, unit_id: int, address: int, quantity: int
    ) -> ModbusReply:
        return await self.request(unit_id, ReadHoldingRegistersRequest(address, quantity))

    async def write_single_coil(self, unit_id: int, address: int, value: bool) -> ModbusReply:
        return await self.request(unit_id, WriteSingleCoilRequest(address, value))

    async def write_single_register(
        self, unit_id: int, address: int, value: int
    ) -> ModbusReply:
        return await self.request(unit_id, WriteSingleRegisterRequest(address, value))
