"""Modbus/TCP Security transport: framing, TLS contexts, server and client."""

from .client import ModbusTlsClient
from .pdu import ExceptionCode, ModbusReply
from .server import ModbusSecurityServer, ProcessImage, ServerContext

__all__ = [
    "ExceptionCode",
    "ModbusReply",
    "ModbusSecurityServer",
    "ModbusTlsClient",
    "ProcessImage",
    "ServerContext",
]
