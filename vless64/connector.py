import asyncio
import enum
import logging
from dataclasses import dataclass

from . import metrics
from .errors import DestinationUnreachable, GatewayError
from .nat64 import DEFAULT_NAT64_PREFIX, nat64_address

logger = logging.getLogger('v64.connector')


class Route(enum.Enum):
    DIRECT = 'direct'
    NAT64 = 'nat64'


@dataclass
class RemoteConnection:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    route: Route
    host: str
    port: int


class Connector:
    """Opens the outbound TCP leg of a session.

    The literal destination is tried first. When that fails the address is
    mapped into the NAT64 prefix (domains are resolved to IPv4 first) and
    tried once more.
    """

    def __init__(self, resolver, nat64_prefix=DEFAULT_NAT64_PREFIX, connect_timeout: float = 30,
                 open_connection=asyncio.open_connection):
        self.resolver = resolver
        self.nat64_prefix = nat64_prefix
        self.connect_timeout = connect_timeout
        self._open_connection = open_connection

    async def _open(self, host, port, first_payload):
        coro = self._open_connection(host, port)
        if self.connect_timeout:
            reader, writer = await asyncio.wait_for(coro, self.connect_timeout)
        else:
            reader, writer = await coro
        try:
            if first_payload:
                writer.write(first_payload)
                await writer.drain()
        except (OSError, ConnectionError):
            writer.close()
            raise
        return reader, writer

    async def connect(self, address: str, port: int, first_payload: bytes = b'') -> RemoteConnection:
        try:
            reader, writer = await self._open(address, port, first_payload)
            metrics.remote_connections.labels(route=Route.DIRECT.value).inc()
            return RemoteConnection(reader, writer, Route.DIRECT, address, port)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("direct connect to %s:%d failed: %s", address, port, e)

        try:
            nat64_host = await nat64_address(address, self.resolver, self.nat64_prefix)
        except GatewayError as e:
            raise DestinationUnreachable(f"unable to connect to {address}:{port}: {e.reason}") from e
        logger.info("retrying %s:%d via NAT64 %s", address, port, nat64_host)
        try:
            reader, writer = await self._open(nat64_host, port, first_payload)
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("NAT64 connect to [%s]:%d failed: %s", nat64_host, port, e)
            raise DestinationUnreachable(f"unable to connect to {address}:{port}") from e
        metrics.remote_connections.labels(route=Route.NAT64.value).inc()
        return RemoteConnection(reader, writer, Route.NAT64, nat64_host, port)
