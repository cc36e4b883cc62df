import asyncio
import ipaddress
import struct
import uuid

import pytest

from vless64.config import GatewayConfig
from vless64.header import AddressType, Command

USER_ID = 'd342d11e-d424-4583-b36e-524ab1f0afa4'


def build_header(command=Command.TCP, atyp=AddressType.IPV4, address='127.0.0.1', port=80,
                 payload=b'', user_id=USER_ID, version=0, options=b''):
    buf = bytearray([version])
    buf += uuid.UUID(user_id).bytes
    buf.append(len(options))
    buf += options
    buf += struct.pack('!BHB', command, port, atyp)
    if atyp == AddressType.IPV4:
        buf += ipaddress.IPv4Address(address).packed
    elif atyp == AddressType.DOMAIN:
        raw = address.encode('utf-8')
        buf.append(len(raw))
        buf += raw
    elif atyp == AddressType.IPV6:
        buf += ipaddress.IPv6Address(address).packed
    buf += payload
    return bytes(buf)


def frame(message):
    return struct.pack('!H', len(message)) + message


class FakeDoH:
    """Stands in for DoHClient: fixed A records, echoing wire-format answers."""

    def __init__(self, records=None):
        self.records = dict(records or {})
        self.resolved = []
        self.queries = []

    async def resolve_a(self, domain):
        self.resolved.append(domain)
        return self.records[domain]

    async def query(self, message):
        self.queries.append(message)
        return b'ans:' + message


@pytest.fixture
def cfg():
    return GatewayConfig(uuid=USER_ID, connect_timeout=5)


@pytest.fixture
def fake_doh():
    return FakeDoH()


async def _start(handler):
    server = await asyncio.start_server(handler, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.fixture
async def echo_server():
    async def handle(reader, writer):
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    server, port = await _start(handle)
    yield port
    server.close()


@pytest.fixture
async def hello_server():
    """Reads one chunk, answers with a greeting and closes."""
    received = []

    async def handle(reader, writer):
        received.append(await reader.read(65536))
        writer.write(b'bye')
        await writer.drain()
        writer.close()

    server, port = await _start(handle)
    yield port, received
    server.close()
