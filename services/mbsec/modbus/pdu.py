"""Modbus/TCP framing and the request/response PDUs the server supports.

MBAP header (7 bytes, big-endian):

    transaction id (2) | protocol id (2, always 0) | length (2) | unit id (1)

``length`` counts the unit id plus the PDU. Only the four function codes
needed for register and coil access are implemented.
"""

import asyncio
import struct
from dataclasses import dataclass, field
from enum import IntEnum

from mbsec.services.authz_service import Operation

MBAP_HEADER = struct.Struct(">HHHB")
MAX_PDU_LENGTH = 253
EXCEPTION_FLAG = 0x80

MAX_READ_COILS = 2000
MAX_READ_REGISTERS = 125

COIL_ON = 0xFF00
COIL_OFF = 0x0000


class FunctionCode(IntEnum):
    READ_COILS = 0x01
    READ_HOLDING_REGISTERS = 0x03
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06


class ExceptionCode(IntEnum):
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03


class FramingError(ValueError):
    """The byte stream does not contain a valid MBAP frame."""


class ModbusRequestError(Exception):
    """A request that must be answered with an exception response."""

    def __init__(self, function_code: int, exception_code: ExceptionCode):
        super().__init__(f"function 0x{function_code:02x}: {exception_code.name}")
        self.function_code = function_code
        self.exception_code = exception_code


# ── Framing ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Frame:
    transaction_id: int
    unit_id: int
    pdu: bytes

    def encode(self) -> bytes:
        header = MBAP_HEADER.pack(self.transaction_id, 0, len(self.pdu) + 1, self.unit_id)
        return header + self.pdu


async def read_frame(reader: asyncio.StreamReader) -> Frame:
    """Read one MBAP frame.

    Raises:
        asyncio.IncompleteReadError: If the peer closes mid-frame or before one.
        FramingError: If the header is invalid.
    """
    header = await reader.readexactly(MBAP_HEADER.size)
    transaction_id, protocol_id, length, unit_id = MBAP_HEADER.unpack(header)
    if protocol_id != 0:
        raise FramingError(f"Unsupported protocol id {protocol_id}")
    if not 2 <= length <= MAX_PDU_LENGTH + 1:
        raise FramingError(f"Invalid MBAP length {length}")
    pdu = await reader.readexactly(length - 1)
    return Frame(transaction_id=transaction_id, unit_id=unit_id, pdu=pdu)


# ── Requests ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ReadCoilsRequest:
    address: int
    quantity: int
    function_code: FunctionCode = field(default=FunctionCode.READ_COILS, init=False)
    operation: Operation = field(default=Operation.READ, init=False)

    def encode(self) -> bytes:
        return struct.pack(">BHH", self.function_code, self.address, self.quantity)


@dataclass(frozen=True)
class ReadHoldingRegistersRequest:
    address: int
    quantity: int
    function_code: FunctionCode = field(default=FunctionCode.READ_HOLDING_REGISTERS, init=False)
    operation: Operation = field(default=Operation.READ, init=False)

    def encode(self) -> bytes:
        return struct.pack(">BHH", self.function_code, self.address, self.quantity)


@dataclass(frozen=True)
class WriteSingleCoilRequest:
    address: int
    value: bool
    function_code: FunctionCode = field(default=FunctionCode.WRITE_SINGLE_COIL, init=False)
    operation: Operation = field(default=Operation.WRITE, init=False)

    def encode(self) -> bytes:
        raw = COIL_ON if self.value else COIL_OFF
        return struct.pack(">BHH", self.function_code, self.address, raw)


@dataclass(frozen=True)
class WriteSingleRegisterRequest:
    address: int
    value: int
    function_code: FunctionCode = field(default=FunctionCode.WRITE_SINGLE_REGISTER, init=False)
    operation: Operation = field(default=Operation.WRITE, init=False)

    def encode(self) -> bytes:
        return struct.pack(">BHH", self.function_code, self.address, self.value)


Request = (
    ReadCoilsRequest
    | ReadHoldingRegistersRequest
    | WriteSingleCoilRequest
    | WriteSingleRegisterRequest
)


def decode_request(pdu: bytes) -> Request:
    """Decode a request PDU.

    Raises:
        ModbusRequestError: For unsupported functions or malformed fields.
    """
    if not pdu:
        raise ModbusRequestError(0, ExceptionCode.ILLEGAL_FUNCTION)

    function_code = pdu[0]
    try:
        supported = FunctionCode(function_code)
    except ValueError:
        raise ModbusRequestError(function_code, ExceptionCode.ILLEGAL_FUNCTION) from None
    if len(pdu) != 5:
        raise ModbusRequestError(function_code, ExceptionCode.ILLEGAL_DATA_VALUE)

    address, word = struct.unpack(">HH", pdu[1:5])

    match supported:
        case FunctionCode.READ_COILS:
            if not 1 <= word <= MAX_READ_COILS:
                raise ModbusRequestError(function_code, ExceptionCode.ILLEGAL_DATA_VALUE)
            return ReadCoilsRequest(address, word)
        case FunctionCode.READ_HOLDING_REGISTERS:
            if not 1 <= word <= MAX_READ_REGISTERS:
                raise ModbusRequestError(function_code, ExceptionCode.ILLEGAL_DATA_VALUE)
            return ReadHoldingRegistersRequest(address, word)
        case FunctionCode.WRITE_SINGLE_COIL:
            if word not in (COIL_ON, COIL_OFF):
                raise ModbusRequestError(function_code, ExceptionCode.ILLEGAL_DATA_VALUE)
            return WriteSingleCoilRequest(address, word == COIL_ON)
        case FunctionCode.WRITE_SINGLE_REGISTER:
            return WriteSingleRegisterRequest(address, word)


# ── Responses ────────────────────────────────────────────────────────────


def exception_pdu(function_code: int, exception_code: ExceptionCode) -> bytes:
    return bytes([(function_code | EXCEPTION_FLAG) & 0xFF, exception_code])


def read_bits_pdu(function_code: int, bits: list[bool]) -> bytes:
    """Pack bits LSB-first, eight per byte."""
    packed = bytearray((len(bits) + 7) // 8)
    for i, bit in enumerate(bits):
        if bit:
            packed[i // 8] |= 1 << (i % 8)
    return bytes([function_code, len(packed)]) + bytes(packed)


def read_registers_pdu(function_code: int, values: list[int]) -> bytes:
    return bytes([function_code, 2 * len(values)]) + struct.pack(f">{len(values)}H", *values)


@dataclass(frozen=True)
class ModbusReply:
    """A decoded response: either values or an exception code."""

    function_code: int
    values: tuple[int, ...] = ()
    exception_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.exception_code is None


def decode_reply(request: Request, pdu: bytes) -> ModbusReply:
    """Decode the server's response to ``request``.

    Raises:
        FramingError: If the response does not match the request.
    """
    if len(pdu) < 2:
        raise FramingError("Response PDU too short")

    function_code = pdu[0]
    if function_code == request.function_code | EXCEPTION_FLAG:
        return ModbusReply(function_code=request.function_code, exception_code=pdu[1])
    if function_code != request.function_code:
        raise FramingError(
            f"Response function 0x{function_code:02x} does not match request "
            f"0x{request.function_code:02x}"
        )

    match request:
        case ReadCoilsRequest(quantity=quantity):
            data = pdu[2 : 2 + pdu[1]]
            if len(data) < (quantity + 7) // 8:
                raise FramingError("Read coils response too short")
            bits = tuple((data[i // 8] >> (i % 8)) & 1 for i in range(quantity))
            return ModbusReply(function_code=function_code, values=bits)
        case ReadHoldingRegistersRequest(quantity=quantity):
            if len(pdu) < 2 + 2 * quantity:
                raise FramingError("Read registers response too short")
            values = struct.unpack(f">{quantity}H", pdu[2 : 2 + 2 * quantity])
            return ModbusReply(function_code=function_code, values=values)
        case WriteSingleCoilRequest() | WriteSingleRegisterRequest():
            if pdu != request.encode():
                raise FramingError("Write response does not echo the request")
            _, _, value = struct.unpack(">BHH", pdu)
            return ModbusReply(function_code=function_code, values=(value,))
