from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

# Session metrics
sessions_total = Counter('v64_sessions', 'WebSocket sessions accepted')
active_sessions = Gauge('v64_active_sessions', 'Currently open sessions')
session_errors = Counter('v64_session_errors', 'Sessions closed by an error', ['type'])

# Traffic metrics
bytes_transferred = Counter('v64_bytes_transferred', 'Bytes relayed', ['direction'])
remote_connections = Counter('v64_remote_connections', 'Outbound TCP connections', ['route'])

# DNS metrics
doh_queries = Counter('v64_doh_queries', 'DoH requests sent upstream', ['kind'])
dns_cache_hits = Counter('v64_dns_cache_hits', 'Domain lookups served from cache')
dns_cache_misses = Counter('v64_dns_cache_misses', 'Domain lookups that went upstream')


def export_prometheus_metrics():
    return generate_latest(), CONTENT_TYPE_LATEST
