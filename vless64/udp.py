import asyncio
import logging
import struct
from typing import Awaitable, Callable, List

from .errors import GatewayError

logger = logging.getLogger('v64.udp')

DNS_PORT = 53
_LEN = struct.Struct('!H')


def encode_frame(message: bytes) -> bytes:
    if len(message) > 0xFFFF:
        raise ValueError(f"DNS message too long for a frame: {len(message)} bytes")
    return _LEN.pack(len(message)) + message


class FrameDecoder:
    """Splits a byte stream into length-prefixed DNS messages.

    A frame split across chunks is held back until the rest arrives.
    """

    def __init__(self):
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buf)

    def feed(self, chunk: bytes) -> List[bytes]:
        self._buf += chunk
        messages = []
        offset = 0
        while len(self._buf) - offset >= _LEN.size:
            (size,) = _LEN.unpack_from(self._buf, offset)
            end = offset + _LEN.size + size
            if end > len(self._buf):
                break
            messages.append(bytes(self._buf[offset + _LEN.size:end]))
            offset = end
        del self._buf[:offset]
        return messages


class DNSRelay:
    """Relays framed DNS queries of one UDP session through DoH.

    Queries are answered one at a time in arrival order by a single worker.
    `send` delivers a frame to the client; the first one carries the
    response header.
    """

    def __init__(self, doh, send: Callable[[bytes], Awaitable[None]], response_header: bytes, peer=None):
        self.doh = doh
        self.send = send
        self.peer = peer
        self._response_header = response_header
        self._decoder = FrameDecoder()
        self._queue = asyncio.Queue()
        self._worker = None

    def start(self):
        if self._worker is None:
            self._worker = asyncio.ensure_future(self._run())
        return self

    def feed(self, chunk: bytes):
        for message in self._decoder.feed(chunk):
            self._queue.put_nowait(message)

    async def _run(self):
        while True:
            message = await self._queue.get()
            try:
                answer = await self.doh.query(message)
                frame = encode_frame(answer)
            except (GatewayError, ValueError) as e:
                logger.warning("[%s] DNS query dropped: %s", self.peer, e)
                continue
            header = self._response_header
            if header is not None:
                frame = header + frame
            logger.debug("[%s] DNS answer %d bytes", self.peer, len(answer))
            try:
                sent = await self.send(frame)
            except (ConnectionError, OSError) as e:
                logger.debug("[%s] DNS answer dropped, client gone: %s", self.peer, e)
                continue
            # send returns False when the socket was already closed
            if header is not None and sent is not False:
                self._response_header = None

    async def close(self):
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("[%s] DNS worker failed: %s", self.peer, e)
            self._worker = None
