import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Optional

from aiohttp import WSMsgType

from . import metrics
from .errors import WS_CLOSE_ABNORMAL, WS_CLOSE_NORMAL, GatewayError, TransportError, UnsupportedUDPPort
from .header import parse_header
from .udp import DNS_PORT, DNSRelay

logger = logging.getLogger('v64.relay')


class SessionState(enum.Enum):
    AWAITING_HEADER = 'awaiting-header'
    RELAYING = 'relaying'
    CLOSED = 'closed'


class EventKind(enum.Enum):
    DATA = 'data'
    CLIENT_CLOSED = 'client-closed'
    REMOTE_CLOSED = 'remote-closed'
    ERROR = 'error'


@dataclass
class Event:
    kind: EventKind
    data: bytes = b''
    error: Optional[Exception] = None


class SerializedWriter:
    """Allows one in-flight write per socket; concurrent callers queue up."""

    def __init__(self, write):
        self._write = write
        self._lock = asyncio.Lock()

    async def write(self, data: bytes):
        async with self._lock:
            return await self._write(data)


class Session:
    """One accepted WebSocket and everything it opened.

    `run()` is the only consumer of the event queue. The WebSocket pump and
    the remote pump only produce events, so all state changes happen here.
    """

    def __init__(self, ws, cfg, connector, doh, early_data: Optional[bytes] = None, peer=None):
        self.ws = ws
        self.cfg = cfg
        self.connector = connector
        self.doh = doh
        self.peer = peer
        self.state = SessionState.AWAITING_HEADER
        self.remote = None
        self.dns = None
        self.bytes_c2r = 0
        self.bytes_r2c = 0
        self._early_data = early_data
        self._events = asyncio.Queue()
        self._ws_out = SerializedWriter(self._send_ws)
        self._remote_out = None
        self._tasks = []

    async def _send_ws(self, data):
        if self.ws.closed:
            return False
        await self.ws.send_bytes(data)
        return True

    async def _write_remote(self, data):
        writer = self.remote.writer
        try:
            writer.write(data)
            await writer.drain()
        except OSError as e:
            raise TransportError(f"remote write failed: {e}") from e

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.append(task)
        return task

    async def run(self):
        metrics.sessions_total.inc()
        metrics.active_sessions.inc()
        start = time.monotonic()
        close_code, reason = WS_CLOSE_NORMAL, b''
        if self._early_data:
            self._events.put_nowait(Event(EventKind.DATA, self._early_data))
            self._early_data = None
        self._spawn(self._pump_client())
        try:
            while self.state is not SessionState.CLOSED:
                event = await self._events.get()
                if event.kind is EventKind.DATA:
                    await self._on_data(event.data)
                elif event.kind is EventKind.CLIENT_CLOSED:
                    logger.debug("[%s] client closed", self.peer)
                    break
                elif event.kind is EventKind.REMOTE_CLOSED:
                    logger.debug("[%s] remote closed", self.peer)
                    break
                elif event.kind is EventKind.ERROR:
                    raise event.error
        except GatewayError as e:
            close_code, reason = e.close_code, e.close_reason
            metrics.session_errors.labels(type=type(e).__name__).inc()
            logger.warning("[%s] session aborted: %s", self.peer, e.reason)
        except Exception as e:
            close_code, reason = WS_CLOSE_ABNORMAL, b'internal error'
            metrics.session_errors.labels(type='internal').inc()
            logger.exception("[%s] Unexpected error: %s", self.peer, e)
        finally:
            self.state = SessionState.CLOSED
            await self._teardown(close_code, reason)
            metrics.active_sessions.dec()
            logger.info("[%s] closed (%s) - duration: %.2fs, c->r: %d bytes, r->c: %d bytes",
                        self.peer, self.remote.route.value if self.remote else 'dns' if self.dns else 'none',
                        time.monotonic() - start, self.bytes_c2r, self.bytes_r2c)

    async def _on_data(self, data):
        if self.state is SessionState.AWAITING_HEADER:
            await self._open(data)
            return
        self.bytes_c2r += len(data)
        metrics.bytes_transferred.labels(direction='c2r').inc(len(data))
        if self.dns is not None:
            self.dns.feed(data)
        else:
            await self._remote_out.write(data)

    async def _open(self, data):
        header = parse_header(data, self.cfg.uuid)
        payload = bytes(data[header.payload_offset:])
        self.bytes_c2r += len(payload)
        metrics.bytes_transferred.labels(direction='c2r').inc(len(payload))
        logger.info("[%s] -> %s %s:%d", self.peer, header.command.name, header.address, header.port)
        if header.is_udp:
            if header.port != DNS_PORT:
                raise UnsupportedUDPPort(f"UDP relay only supports DNS (port 53), got {header.port}")
            self.dns = DNSRelay(self.doh, self._ws_out.write, header.response_header, peer=self.peer).start()
            self.state = SessionState.RELAYING
            self.dns.feed(payload)
            return
        self.remote = await self.connector.connect(header.address, header.port, payload)
        self._remote_out = SerializedWriter(self._write_remote)
        self.state = SessionState.RELAYING
        self._spawn(self._pump_remote(header.response_header))

    async def _pump_client(self):
        try:
            async for msg in self.ws:
                if msg.type == WSMsgType.BINARY:
                    self._events.put_nowait(Event(EventKind.DATA, msg.data))
                elif msg.type == WSMsgType.TEXT:
                    self._events.put_nowait(Event(EventKind.DATA, msg.data.encode('utf-8')))
                elif msg.type == WSMsgType.ERROR:
                    err = TransportError(f"websocket error: {self.ws.exception()}")
                    self._events.put_nowait(Event(EventKind.ERROR, error=err))
                    return
        except Exception as e:
            self._events.put_nowait(Event(EventKind.ERROR, error=TransportError(f"websocket read failed: {e}")))
            return
        self._events.put_nowait(Event(EventKind.CLIENT_CLOSED))

    async def _pump_remote(self, response_header: Optional[bytes]):
        reader = self.remote.reader
        buffer_size = self.cfg.buffer_size
        try:
            while True:
                data = await reader.read(buffer_size)
                if not data:
                    break
                self.bytes_r2c += len(data)
                metrics.bytes_transferred.labels(direction='r2c').inc(len(data))
                if response_header is not None:
                    data = response_header + data
                    response_header = None
                await self._ws_out.write(data)
        except Exception as e:
            self._events.put_nowait(Event(EventKind.ERROR, error=TransportError(f"relay failed: {e}")))
            return
        self._events.put_nowait(Event(EventKind.REMOTE_CLOSED))

    async def _teardown(self, close_code, reason):
        if self.dns is not None:
            await self.dns.close()
        if self.remote is not None:
            writer = self.remote.writer
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug("[%s] remote close: %s", self.peer, e)
        if not self.ws.closed:
            await self.ws.close(code=close_code, message=reason)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
