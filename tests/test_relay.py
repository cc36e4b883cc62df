import asyncio

from aiohttp import WSMessage, WSMsgType
from prometheus_client import REGISTRY

from vless64.header import AddressType, Command
from vless64.relay import SerializedWriter, Session, SessionState

from .conftest import FakeDoH, build_header, frame


class FakeWebSocket:
    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False
        self.close_args = None

    def push(self, data):
        self.incoming.put_nowait(WSMessage(WSMsgType.BINARY, data, None))

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self.incoming.get()
        if msg is None:
            raise StopAsyncIteration
        return msg

    async def send_bytes(self, data):
        self.sent.append(data)

    async def close(self, code=1000, message=b''):
        self.closed = True
        self.close_args = (code, message)
        self.incoming.put_nowait(None)
        return True

    def exception(self):
        return ConnectionResetError("peer reset")


async def _wait_for(predicate):
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


async def test_serialized_writer_never_overlaps():
    active = 0
    peak = 0
    out = []

    async def write(data):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        out.append(data)
        active -= 1

    writer = SerializedWriter(write)
    await asyncio.gather(*(writer.write(bytes([i])) for i in range(5)))
    assert peak == 1
    assert out == [bytes([i]) for i in range(5)]


async def test_state_machine_for_dns_session(cfg):
    ws = FakeWebSocket()
    early = build_header(Command.UDP, AddressType.DOMAIN, 'dns.google', 53, payload=frame(b'q'))
    session = Session(ws, cfg, connector=None, doh=FakeDoH(), early_data=early)
    assert session.state is SessionState.AWAITING_HEADER
    task = asyncio.ensure_future(session.run())
    await _wait_for(lambda: ws.sent)
    assert session.state is SessionState.RELAYING
    assert ws.sent == [b'\x00\x00' + frame(b'ans:q')]
    ws.incoming.put_nowait(None)
    await asyncio.wait_for(task, 5)
    assert session.state is SessionState.CLOSED


async def test_websocket_error_aborts_session(cfg):
    ws = FakeWebSocket()
    session = Session(ws, cfg, connector=None, doh=FakeDoH())
    task = asyncio.ensure_future(session.run())
    ws.incoming.put_nowait(WSMessage(WSMsgType.ERROR, None, None))
    await asyncio.wait_for(task, 5)
    assert ws.close_args[0] == 1011
    assert b'peer reset' in ws.close_args[1]


async def test_header_failure_closes_with_reason(cfg):
    ws = FakeWebSocket()
    session = Session(ws, cfg, connector=None, doh=FakeDoH())
    task = asyncio.ensure_future(session.run())
    ws.push(b'\x00' * 10)
    await asyncio.wait_for(task, 5)
    assert ws.close_args == (1011, b'invalid header length')
    assert session.state is SessionState.CLOSED


class ResettingWebSocket(FakeWebSocket):
    """Refuses the first writes the way a closing transport does."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def send_bytes(self, data):
        if self.failures:
            self.failures -= 1
            raise ConnectionResetError("Cannot write to closing transport")
        await super().send_bytes(data)


async def test_dns_send_failure_still_closes_session(cfg):
    active_before = REGISTRY.get_sample_value('v64_active_sessions')
    ws = ResettingWebSocket()
    early = build_header(Command.UDP, AddressType.DOMAIN, 'dns.google', 53, payload=frame(b'q1'))
    session = Session(ws, cfg, connector=None, doh=FakeDoH(), early_data=early)
    task = asyncio.ensure_future(session.run())
    await _wait_for(lambda: ws.failures == 0)
    ws.push(frame(b'q2'))
    await _wait_for(lambda: ws.sent)
    # the lost answer never carried the response header, so the next one does
    assert ws.sent == [b'\x00\x00' + frame(b'ans:q2')]
    ws.incoming.put_nowait(None)
    await asyncio.wait_for(task, 5)
    assert ws.closed
    assert ws.close_args == (1000, b'')
    assert session.state is SessionState.CLOSED
    assert REGISTRY.get_sample_value('v64_active_sessions') == active_before
