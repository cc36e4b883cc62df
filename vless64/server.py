import asyncio
import logging

import aiohttp
import orjson
from aiohttp import WSCloseCode, hdrs, web

from .connector import Connector
from .dnscache import build_dns_cache
from .doh import DoHClient, DomainResolver
from .earlydata import decode_early_data
from .metrics import export_prometheus_metrics
from .relay import Session

logger = logging.getLogger('v64.server')


def build_client_uri(user_id: str, host: str, port: int = 443) -> str:
    return (f"vless://{user_id}@{host}:{port}?encryption=none&security=tls&sni={host}"
            f"&type=ws&host={host}&path=/#{host}")


class Gateway:
    """Shared state of the process: config, DNS cache, DoH client, connector."""

    def __init__(self, cfg, dns_cache=None, doh=None, open_connection=asyncio.open_connection):
        self.cfg = cfg
        self.dns_cache = dns_cache if dns_cache is not None else build_dns_cache(cfg)
        self.doh = doh
        self.connector = None
        self.sessions = set()
        self._open_connection = open_connection
        self._http = None

    async def on_startup(self, app):
        if self.doh is None:
            self._http = aiohttp.ClientSession()
            self.doh = DoHClient(self._http, self.cfg.doh_servers, self.cfg.doh_timeout)
        resolver = DomainResolver(self.dns_cache, self.doh)
        self.connector = Connector(resolver, self.cfg.nat64_prefix, self.cfg.connect_timeout, self._open_connection)
        logger.info("Starting gateway with configuration: %s",
                    orjson.dumps(self.cfg.redacted(), option=orjson.OPT_INDENT_2).decode('utf-8'))

    async def on_shutdown(self, app):
        for ws in list(self.sessions):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b'server shutdown')

    async def on_cleanup(self, app):
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def handle(self, request: web.Request):
        if request.headers.get(hdrs.UPGRADE, '').lower() == 'websocket':
            return await self.handle_websocket(request)
        return await self.handle_http(request)

    async def handle_http(self, request: web.Request):
        path = request.path
        if path == '/':
            return web.Response(text='VLESS Proxy Server')
        if path == '/metrics':
            body, content_type = export_prometheus_metrics()
            return web.Response(body=body, headers={hdrs.CONTENT_TYPE: content_type})
        if path == f'/{self.cfg.uuid}':
            host = request.url.host or request.host
            uri = build_client_uri(self.cfg.uuid, host, self.cfg.public_port)
            return web.Response(text=uri, content_type='text/plain', charset='utf-8')
        raise web.HTTPNotFound(text='Not Found')

    async def handle_websocket(self, request: web.Request):
        if self.cfg.max_sessions and len(self.sessions) >= self.cfg.max_sessions:
            logger.warning("Rejecting session from %s: %d sessions active", request.remote, len(self.sessions))
            raise web.HTTPServiceUnavailable(text='too many sessions')
        protocol = request.headers.get(hdrs.SEC_WEBSOCKET_PROTOCOL, '').strip()
        early_data = decode_early_data(protocol)
        # echo the subprotocol so browser-based clients accept the handshake
        ws = web.WebSocketResponse(protocols=(protocol,) if protocol else (), max_msg_size=0)
        self.sessions.add(ws)
        try:
            await ws.prepare(request)
            logger.debug("[%s] websocket accepted on %s", request.remote, request.path)
            session = Session(ws, self.cfg, self.connector, self.doh, early_data=early_data, peer=request.remote)
            await session.run()
        finally:
            self.sessions.discard(ws)
        return ws


GATEWAY_KEY = web.AppKey('gateway', Gateway)


def create_app(cfg, **kwargs) -> web.Application:
    gateway = Gateway(cfg, **kwargs)
    app = web.Application()
    app[GATEWAY_KEY] = gateway
    app.on_startup.append(gateway.on_startup)
    app.on_shutdown.append(gateway.on_shutdown)
    app.on_cleanup.append(gateway.on_cleanup)
    app.router.add_route('*', '/{tail:.*}', gateway.handle)
    return app
