import argparse
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from typing import List, Optional

import orjson
import yaml

from .doh import DEFAULT_DOH_SERVERS
from .nat64 import DEFAULT_NAT64_PREFIX, parse_prefix

logger = logging.getLogger('v64')

ENV_PREFIX = 'V64_'


@dataclass
class GatewayConfig:
    uuid: str
    listen_addr: str = '0.0.0.0'
    listen_port: int = 8080
    doh_servers: List[str] = field(default_factory=lambda: list(DEFAULT_DOH_SERVERS))
    doh_timeout: float = 5
    nat64_prefix: str = DEFAULT_NAT64_PREFIX
    connect_timeout: float = 30
    buffer_size: int = 131072
    max_sessions: int = 0
    public_port: int = 443
    dns_ttl: int = 0
    dns_cache_size: int = 0
    dns_cache_file: Optional[str] = None
    logfile: Optional[str] = None
    log_format: str = 'text'
    verbose: bool = False

    def redacted(self) -> dict:
        d = asdict(self)
        d['uuid'] = '***'
        return d


def normalize_uuid(value) -> str:
    return str(uuid.UUID(str(value).strip()))


def _as_list(value):
    if isinstance(value, str):
        return [s.strip() for s in value.split(',') if s.strip()]
    return list(value or [])


def _as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


class ConfigManager:
    """
    Centralized config manager. Precedence: CLI args > ENV vars > config file > defaults.
    The config file is optional YAML or JSON given via --config-file or V64_CONFIG_FILE.
    """

    def __init__(self, cli_args: Optional[argparse.Namespace] = None, env=None):
        self.cli = vars(cli_args) if cli_args is not None else {}
        self.env = dict(os.environ if env is None else env)
        self.file_cfg = {}
        self.defaults = {
            k: v for k, v in asdict(GatewayConfig(uuid='')).items() if k != 'uuid'
        }

    def load_file(self):
        conf_path = self.cli.get('config_file') or self.env.get(ENV_PREFIX + 'CONFIG_FILE')
        if not conf_path:
            return
        try:
            with open(conf_path, 'rb') as f:
                raw = f.read()
            if conf_path.endswith(('.yaml', '.yml')):
                data = yaml.safe_load(raw)
            else:
                data = orjson.loads(raw)
        except (OSError, yaml.YAMLError, orjson.JSONDecodeError) as e:
            raise ValueError(f"failed to load config file {conf_path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"config file {conf_path} must contain a mapping")
        self.file_cfg.update(data)
        logger.info("Loaded config file %s (%d keys)", conf_path, len(data))

    def get(self, key, fallback=None):
        # precedence: CLI -> ENV -> file -> defaults -> fallback
        if self.cli.get(key) is not None:
            return self.cli[key]
        env_val = self.env.get(ENV_PREFIX + key.upper())
        if key == 'uuid' and not env_val:
            env_val = self.env.get('UUID')
        if env_val:
            return env_val
        if key in self.file_cfg:
            return self.file_cfg[key]
        if key in self.defaults:
            return self.defaults[key]
        return fallback

    def as_config(self) -> GatewayConfig:
        raw_uuid = self.get('uuid')
        if not raw_uuid:
            raise ValueError("a user id (uuid) must be configured")
        try:
            user_id = normalize_uuid(raw_uuid)
        except ValueError:
            raise ValueError(f"invalid uuid {raw_uuid!r}") from None
        opt = self.get('dns_cache_file')
        return GatewayConfig(
            uuid=user_id,
            listen_addr=str(self.get('listen_addr')),
            listen_port=int(self.get('listen_port')),
            doh_servers=_as_list(self.get('doh_servers')),
            doh_timeout=float(self.get('doh_timeout')),
            nat64_prefix=str(self.get('nat64_prefix')),
            connect_timeout=float(self.get('connect_timeout')),
            buffer_size=int(self.get('buffer_size')),
            max_sessions=int(self.get('max_sessions')),
            public_port=int(self.get('public_port')),
            dns_ttl=int(self.get('dns_ttl')),
            dns_cache_size=int(self.get('dns_cache_size')),
            dns_cache_file=str(opt) if opt else None,
            logfile=self.get('logfile'),
            log_format=str(self.get('log_format')).lower(),
            verbose=_as_bool(self.get('verbose')),
        )


def validate_config(cfg: GatewayConfig):
    for name in ('listen_port', 'public_port'):
        port = getattr(cfg, name)
        if not 1 <= port <= 65535:
            raise ValueError(f"{name} must be between 1 and 65535")
    for name in ('doh_timeout', 'connect_timeout', 'dns_ttl', 'dns_cache_size', 'max_sessions'):
        if getattr(cfg, name) < 0:
            raise ValueError(f"{name} cannot be negative")
    if cfg.buffer_size <= 0:
        raise ValueError("buffer_size must be positive")
    if not cfg.doh_servers:
        raise ValueError("at least one DoH server is required")
    if cfg.log_format not in ('text', 'json'):
        raise ValueError("log_format must be 'text' or 'json'")
    try:
        parse_prefix(cfg.nat64_prefix)
    except ValueError as e:
        raise ValueError(f"invalid nat64_prefix: {e}") from e
