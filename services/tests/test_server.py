"""Tests for the Modbus/TCP Security server and client."""

import asyncio
import ssl
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization

from mbsec.modbus.client import ModbusTlsClient
from mbsec.modbus.pdu import ExceptionCode, ModbusRequestError
from mbsec.modbus.server import ModbusSecurityServer, ProcessImage, ServerContext
from mbsec.modbus.tls import client_ssl_context
from mbsec.pki.ca import LeafKind, create_root_credential, issue_leaf_credential
from mbsec.pki.credential import Credential
from mbsec.pki.roles import extract_role
from mbsec.services.authz_service import ROLE_READ_ONLY, ROLE_READ_WRITE, authorize

UNIT_ID = 1

# Failures a rejected TLS peer can observe, depending on TLS version and timing
HANDSHAKE_REJECTED = (ssl.SSLError, ConnectionError, asyncio.IncompleteReadError)


@pytest.fixture
def context(ca_credential, server_credential) -> ServerContext:
    """Fresh server state per test."""
    return ServerContext(
        credential=server_credential,
        ca_certificate=ca_credential.certificate,
    )


@asynccontextmanager
async def running(context: ServerContext):
    async with ModbusSecurityServer(context, host="127.0.0.1", port=0) as server:
        yield server


def make_client(server, credential, ca_credential) -> ModbusTlsClient:
    return ModbusTlsClient(
        "127.0.0.1",
        client_ssl_context(credential, ca_credential.certificate),
        port=server.port,
        server_hostname="localhost",
    )


class TestProcessImage:
    """Test the in-memory coils and registers."""

    def test_defaults_to_zero(self):
        """Test a fresh image reads as zero."""
        image = ProcessImage(size=16)

        assert image.read_coils(0x01, 0, 16) == [False] * 16
        assert image.read_registers(0x03, 0, 16) == [0] * 16

    def test_out_of_range(self):
        """Test reads past the end are ILLEGAL_DATA_ADDRESS."""
        image = ProcessImage(size=16)

        with pytest.raises(ModbusRequestError) as exc_info:
            image.read_registers(0x03, 10, 7)

        assert exc_info.value.exception_code is ExceptionCode.ILLEGAL_DATA_ADDRESS


class TestHandleRequest:
    """Test request dispatch without a network."""

    def test_read_only_can_read(self, context):
        """Test ReadOnly reads registers."""
        context.process_image.write_register(0x06, 0, 1234)

        response = context.handle_request(UNIT_ID, b"\x03\x00\x00\x00\x01", ROLE_READ_ONLY)

        assert response == b"\x03\x02\x04\xd2"

    def test_read_only_cannot_write(self, context):
        """Test a denied write is ILLEGAL_FUNCTION and changes nothing."""
        response = context.handle_request(UNIT_ID, b"\x06\x00\x00\x00\x2a", ROLE_READ_ONLY)

        assert response == bytes([0x86, ExceptionCode.ILLEGAL_FUNCTION])
        assert context.process_image.read_registers(0x03, 0, 1) == [0]

    def test_read_write_can_write(self, context):
        """Test ReadWrite writes and the response echoes the request."""
        response = context.handle_request(UNIT_ID, b"\x05\x00\x07\xff\x00", ROLE_READ_WRITE)

        assert response == b"\x05\x00\x07\xff\x00"
        assert context.process_image.read_coils(0x01, 7, 1) == [True]

    @pytest.mark.parametrize("role", [None, "Bogus"])
    def test_no_usable_role(self, context, role):
        """Test peers without a known role can do nothing."""
        read = context.handle_request(UNIT_ID, b"\x01\x00\x00\x00\x01", role)
        write = context.handle_request(UNIT_ID, b"\x05\x00\x00\xff\x00", role)

        assert read == b"\x81\x01"
        assert write == b"\x85\x01"

    def test_malformed_request_not_authorized(self, context):
        """Test malformed requests are rejected before authorization."""
        authorizer = MagicMock(wraps=authorize)
        context.authorizer = authorizer

        response = context.handle_request(UNIT_ID, b"\x2b\x0e\x01\x00", ROLE_READ_WRITE)

        assert response == bytes([0xAB, ExceptionCode.ILLEGAL_FUNCTION])
        authorizer.assert_not_called()

    def test_authorized_out_of_range(self, context):
        """Test address errors surface after authorization."""
        response = context.handle_request(UNIT_ID, b"\x03\xff\xff\x00\x02", ROLE_READ_ONLY)

        assert response == bytes([0x83, ExceptionCode.ILLEGAL_DATA_ADDRESS])

    def test_independent_contexts(self, ca_credential, server_credential):
        """Test two contexts do not share state."""
        first = ServerContext(server_credential, ca_credential.certificate)
        second = ServerContext(server_credential, ca_credential.certificate)

        first.handle_request(UNIT_ID, b"\x06\x00\x00\x00\x01", ROLE_READ_WRITE)

        assert second.process_image.read_registers(0x03, 0, 1) == [0]


class TestRoleEnforcementOverTls:
    """Test role-based access end to end over mutual TLS."""

    async def test_read_only_client(self, context, ca_credential, read_only_credential):
        """Test ReadOnly reads succeed and writes are refused."""
        async with running(context) as server:
            async with make_client(server, read_only_credential, ca_credential) as client:
                read = await client.read_holding_registers(UNIT_ID, 0, 4)
                write = await client.write_single_register(UNIT_ID, 0, 99)
                coil = await client.write_single_coil(UNIT_ID, 0, True)

        assert read.ok
        assert read.values == (0, 0, 0, 0)
        assert write.exception_code == ExceptionCode.ILLEGAL_FUNCTION
        assert coil.exception_code == ExceptionCode.ILLEGAL_FUNCTION
        assert context.process_image.read_registers(0x03, 0, 1) == [0]

    async def test_read_write_client(self, context, ca_credential, read_write_credential):
        """Test ReadWrite writes are visible to later reads."""
        async with running(context) as server:
            async with make_client(server, read_write_credential, ca_credential) as client:
                write = await client.write_single_register(UNIT_ID, 10, 0xBEEF)
                coil = await client.write_single_coil(UNIT_ID, 3, True)
                registers = await client.read_holding_registers(UNIT_ID, 10, 1)
                coils = await client.read_coils(UNIT_ID, 0, 4)

        assert write.ok
        assert coil.ok
        assert registers.values == (0xBEEF,)
        assert coils.values == (0, 0, 0, 1)

    async def test_writes_visible_across_clients(
        self, context, ca_credential, read_only_credential, read_write_credential
    ):
        """Test a ReadOnly client sees values written by a ReadWrite client."""
        async with running(context) as server:
            async with make_client(server, read_write_credential, ca_credential) as writer:
                await writer.write_single_register(UNIT_ID, 5, 77)
            async with make_client(server, read_only_credential, ca_credential) as reader:
                reply = await reader.read_holding_registers(UNIT_ID, 5, 1)

        assert reply.values == (77,)

    async def test_roleless_client(self, context, ca_credential, roleless_credential):
        """Test a CA-signed client without a role connects but is refused everything."""
        async with running(context) as server:
            async with make_client(server, roleless_credential, ca_credential) as client:
                read = await client.read_coils(UNIT_ID, 0, 1)
                write = await client.write_single_coil(UNIT_ID, 0, True)

        assert read.exception_code == ExceptionCode.ILLEGAL_FUNCTION
        assert write.exception_code == ExceptionCode.ILLEGAL_FUNCTION

    async def test_concurrent_clients(
        self, context, ca_credential, read_only_credential, read_write_credential
    ):
        """Test each connection keeps its own role."""

        async def session(credential, address):
            async with make_client(server, credential, ca_credential) as client:
                return await client.write_single_register(UNIT_ID, address, 1)

        async with running(context) as server:
            results = await asyncio.gather(
                *(session(read_only_credential, i) for i in range(5)),
                *(session(read_write_credential, i + 100) for i in range(5)),
            )

        assert [r.ok for r in results] == [False] * 5 + [True] * 5
        assert context.process_image.read_registers(0x03, 0, 5) == [0] * 5
        assert context.process_image.read_registers(0x03, 100, 5) == [1] * 5

    async def test_port_resolves_after_start(self, context):
        """Test port 0 reports the bound port."""
        server = ModbusSecurityServer(context, host="127.0.0.1", port=0)
        assert server.port == 0

        async with server:
            assert server.port > 0

        assert server.port == 0


class TestClientTimeout:
    """Test the client after a server stops answering."""

    async def test_timeout_closes_connection(self, ca_credential, read_only_credential):
        """Test a timed-out request drops the connection so no late reply is misread."""
        client = ModbusTlsClient(
            "127.0.0.1",
            client_ssl_context(read_only_credential, ca_credential.certificate),
            timeout=0.05,
        )
        writer = MagicMock()
        writer.is_closing.return_value = False
        writer.drain = AsyncMock()
        writer.wait_closed = AsyncMock()
        client._reader = asyncio.StreamReader()
        client._writer = writer
        assert client.is_connected

        with pytest.raises(TimeoutError):
            await client.read_holding_registers(UNIT_ID, 0, 1)

        writer.close.assert_called_once_with()
        assert not client.is_connected
        with pytest.raises(ConnectionError, match="not connected"):
            await client.read_holding_registers(UNIT_ID, 0, 1)


class TestTlsRejection:
    """Test peers that fail certificate verification never reach authorization."""

    @pytest.fixture
    def tampered_credential(self, ca_credential) -> Credential:
        """A client whose role was edited after signing."""
        original = issue_leaf_credential(ca_credential, LeafKind.CLIENT, "ReadXXXXX")
        der = original.certificate.public_bytes(serialization.Encoding.DER)
        assert der.count(b"ReadXXXXX") == 1
        forged = x509.load_der_x509_certificate(der.replace(b"ReadXXXXX", b"ReadWrite"))
        return Credential(private_key=original.private_key, certificate=forged)

    def test_tampered_signature_is_invalid(self, ca_credential, tampered_credential):
        """Test the forged role is readable but the signature no longer verifies."""
        assert extract_role(tampered_credential.certificate) == "ReadWrite"

        with pytest.raises(InvalidSignature):
            tampered_credential.certificate.verify_directly_issued_by(
                ca_credential.certificate
            )

    @pytest.mark.parametrize("require_client_cert", [True, False])
    async def test_tampered_client_rejected(
        self, context, ca_credential, tampered_credential, require_client_cert
    ):
        """Test a forged role is refused at the handshake."""
        authorizer = MagicMock(wraps=authorize)
        context.authorizer = authorizer
        context.require_client_cert = require_client_cert

        async with running(context) as server:
            client = make_client(server, tampered_credential, ca_credential)
            with pytest.raises(HANDSHAKE_REJECTED):
                try:
                    await client.connect()
                    await client.write_single_register(UNIT_ID, 0, 1)
                finally:
                    await client.disconnect()

        authorizer.assert_not_called()
        assert context.process_image.read_registers(0x03, 0, 1) == [0]

    async def test_foreign_ca_rejected(self, context, ca_credential):
        """Test a client signed by another CA is refused."""
        foreign_ca = create_root_credential(common_name="Other CA")
        foreign = issue_leaf_credential(foreign_ca, LeafKind.CLIENT, ROLE_READ_WRITE)
        authorizer = MagicMock(wraps=authorize)
        context.authorizer = authorizer

        async with running(context) as server:
            client = make_client(server, foreign, ca_credential)
            with pytest.raises(HANDSHAKE_REJECTED):
                try:
                    await client.connect()
                    await client.read_coils(UNIT_ID, 0, 1)
                finally:
                    await client.disconnect()

        authorizer.assert_not_called()

    async def test_missing_certificate_rejected(self, context, ca_credential):
        """Test peers without a certificate are refused by default."""
        async with running(context) as server:
            client = make_client(server, None, ca_credential)
            with pytest.raises(HANDSHAKE_REJECTED):
                try:
                    await client.connect()
                    await client.read_coils(UNIT_ID, 0, 1)
                finally:
                    await client.disconnect()

    async def test_missing_certificate_allowed_but_denied(self, context, ca_credential):
        """Test optional client certificates still grant nothing."""
        context.require_client_cert = False

        async with running(context) as server:
            async with make_client(server, None, ca_credential) as client:
                reply = await client.read_coils(UNIT_ID, 0, 1)

        assert reply.exception_code == ExceptionCode.ILLEGAL_FUNCTION

    async def test_client_rejects_untrusted_server(self, context, read_write_credential):
        """Test the client verifies the server against its own trust anchor."""
        other_ca = create_root_credential(common_name="Other CA")

        async with running(context) as server:
            client = make_client(server, read_write_credential, other_ca)
            with pytest.raises(ssl.SSLCertVerificationError):
                await client.connect()
