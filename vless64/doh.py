import asyncio
import logging
from typing import Sequence

import aiohttp
import orjson

from . import metrics
from .dnscache import DNSCache
from .errors import DestinationUnreachable, TransportError

logger = logging.getLogger('v64.doh')

DEFAULT_DOH_SERVERS = ('https://1.1.1.1/dns-query',)
DNS_MESSAGE_TYPE = 'application/dns-message'
DNS_JSON_TYPE = 'application/dns-json'
RR_TYPE_A = 1


class DoHClient:
    """DNS-over-HTTPS over one shared aiohttp session.

    Servers are tried in order until one of them answers.
    """

    def __init__(self, session: aiohttp.ClientSession, servers: Sequence[str] = DEFAULT_DOH_SERVERS, timeout: float = 5):
        if not servers:
            raise ValueError("at least one DoH server is required")
        self.session = session
        self.servers = list(servers)
        self.timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None

    async def resolve_a(self, domain: str) -> str:
        params = {'name': domain, 'type': 'A'}
        headers = {'Accept': DNS_JSON_TYPE}
        for server in self.servers:
            try:
                async with self.session.get(server, params=params, headers=headers, timeout=self.timeout) as resp:
                    resp.raise_for_status()
                    data = orjson.loads(await resp.read())
            except (aiohttp.ClientError, asyncio.TimeoutError, orjson.JSONDecodeError) as e:
                logger.debug("DoH server %s failed for %s: %s", server, domain, e)
                continue
            metrics.doh_queries.labels(kind='resolve').inc()
            answers = data.get('Answer') if isinstance(data, dict) else None
            for answer in answers or []:
                if answer.get('type') == RR_TYPE_A and answer.get('data'):
                    return answer['data']
            logger.debug("DoH server %s has no A record for %s", server, domain)
        raise DestinationUnreachable(f"cannot resolve IPv4 address of {domain}")

    async def query(self, message: bytes) -> bytes:
        headers = {'content-type': DNS_MESSAGE_TYPE, 'accept': DNS_MESSAGE_TYPE}
        last_err = None
        for server in self.servers:
            try:
                async with self.session.post(server, data=message, headers=headers, timeout=self.timeout) as resp:
                    resp.raise_for_status()
                    answer = await resp.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_err = e
                logger.debug("DoH server %s failed to relay query: %s", server, e)
                continue
            metrics.doh_queries.labels(kind='relay').inc()
            return answer
        raise TransportError(f"DoH query failed: {last_err}")


class DomainResolver:
    """Domain -> IPv4 via the cache, falling back to a DoH A query."""

    def __init__(self, cache: DNSCache, doh: DoHClient):
        self.cache = cache
        self.doh = doh

    async def resolve_ipv4(self, domain: str) -> str:
        ip = self.cache.get(domain)
        if ip is not None:
            metrics.dns_cache_hits.inc()
            return ip
        metrics.dns_cache_misses.inc()
        ip = await self.doh.resolve_a(domain)
        self.cache.put(domain, ip)
        logger.info("resolved %s -> %s", domain, ip)
        return ip
