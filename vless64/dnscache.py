import logging
import os
import tempfile
import threading
import time
from collections import OrderedDict
from typing import Optional

import orjson

logger = logging.getLogger('v64.dnscache')


class DNSCache:
    """Domain -> IPv4 mapping shared by every session of the process."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str) -> None:
        raise NotImplementedError

    def __len__(self):
        raise NotImplementedError


class MemoryDNSCache(DNSCache):
    """Entries live until the process exits."""

    def __init__(self):
        self._cache = {}

    def get(self, key):
        return self._cache.get(key)

    def put(self, key, value):
        self._cache[key] = value

    def __len__(self):
        return len(self._cache)


class TTLDNSCache(DNSCache):
    def __init__(self, ttl: float = 600, max_entries: int = 0):
        self.ttl = ttl
        self.max_entries = max_entries
        self._cache = OrderedDict()

    def get(self, key):
        item = self._cache.get(key)
        if item is None:
            return None
        ip, ts = item
        if self.ttl and time.monotonic() - ts >= self.ttl:
            self._cache.pop(key, None)
            return None
        return ip

    def put(self, key, value):
        self._cache.pop(key, None)
        self._cache[key] = (value, time.monotonic())
        if self.max_entries:
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)

    def __len__(self):
        return len(self._cache)


def _atomic_write(path, data_bytes):
    """Write to a temp file in the same directory, then rename over path."""
    dirpath = os.path.dirname(os.path.abspath(path))
    os.makedirs(dirpath, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=dirpath)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data_bytes)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


class PersistentDNSCache(MemoryDNSCache):
    """Memory cache backed by a JSON snapshot on disk."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._lock = threading.Lock()
        try:
            with open(path, 'rb') as f:
                data = orjson.loads(f.read())
            if isinstance(data, dict):
                self._cache.update({str(k): str(v) for k, v in data.items()})
            logger.info("Loaded %d DNS cache entries from %s", len(self._cache), path)
        except FileNotFoundError:
            pass
        except (OSError, orjson.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable DNS cache file %s: %s", path, e)

    def put(self, key, value):
        if self._cache.get(key) == value:
            return
        super().put(key, value)
        with self._lock:
            try:
                _atomic_write(self.path, orjson.dumps(self._cache))
            except OSError as e:
                logger.warning("Failed to persist DNS cache to %s: %s", self.path, e)


def build_dns_cache(cfg) -> DNSCache:
    if cfg.dns_cache_file:
        return PersistentDNSCache(cfg.dns_cache_file)
    if cfg.dns_ttl or cfg.dns_cache_size:
        return TTLDNSCache(ttl=cfg.dns_ttl, max_entries=cfg.dns_cache_size)
    return MemoryDNSCache()
