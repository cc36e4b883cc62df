import argparse
import logging
import sys

from aiohttp import web

from . import __version__
from .config import ConfigManager, validate_config
from .log import setup_logger
from .server import create_app


def parse_args(argv=None):
    # defaults stay None so that env vars and the config file can fill them in
    p = argparse.ArgumentParser(prog='vless64', description="VLESS over WebSocket gateway with NAT64 fallback")
    p.add_argument("--version", action='version', version=f"%(prog)s {__version__}")
    p.add_argument("--uuid", default=None, help="user id clients must present (env: V64_UUID or UUID)")
    p.add_argument("--listen-addr", default=None, help="address to listen on (default 0.0.0.0)")
    p.add_argument("--listen-port", type=int, default=None, help="port to listen on (default 8080)")
    p.add_argument("--doh-servers", default=None, help="comma-separated DoH endpoints, tried in order")
    p.add_argument("--doh-timeout", type=float, default=None, help="timeout of one DoH request in seconds")
    p.add_argument("--nat64-prefix", default=None, help="NAT64 /96 prefix used when direct connect fails")
    p.add_argument("--connect-timeout", type=float, default=None, help="timeout of one TCP connect attempt (0 disables)")
    p.add_argument("--buffer-size", type=int, default=None, help="read buffer size for the remote socket")
    p.add_argument("--max-sessions", type=int, default=None, help="maximum concurrent sessions (0 unlimited)")
    p.add_argument("--public-port", type=int, default=None, help="port advertised in the client URI")
    p.add_argument("--dns-ttl", type=int, default=None, help="DNS cache TTL seconds (0 keeps entries forever)")
    p.add_argument("--dns-cache-size", type=int, default=None, help="DNS cache entry limit (0 unlimited)")
    p.add_argument("--dns-cache-file", default=None, help="persist the DNS cache to this JSON file")
    p.add_argument("--logfile", default=None, help="path to log file")
    p.add_argument("--log-format", choices=("text", "json"), default=None)
    p.add_argument("--verbose", action='store_true', default=None, help="debug logging")
    p.add_argument("--config-file", default=None, help="path to YAML or JSON config file")
    return p.parse_args(argv)


def _event_loop():
    if sys.platform == 'win32':
        return None
    import uvloop
    return uvloop.new_event_loop()


def main(argv=None):
    args = parse_args(argv)
    cm = ConfigManager(args)
    try:
        cm.load_file()
        cfg = cm.as_config()
        validate_config(cfg)
    except ValueError as e:
        print("Invalid configuration:", e, file=sys.stderr)
        return 2
    logger = setup_logger(level=logging.DEBUG if cfg.verbose else logging.INFO,
                          logfile=cfg.logfile, log_format=cfg.log_format)
    logger.info("vless64 %s listening on %s:%d", __version__, cfg.listen_addr, cfg.listen_port)
    web.run_app(create_app(cfg), host=cfg.listen_addr, port=cfg.listen_port,
                print=None, access_log=None, loop=_event_loop())
    return 0
