from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

TUNNEL_SESSIONS = Counter(
    "uptunnel_tunnel_sessions_total",
    "Finished tunnel sessions",
    ["outcome"],  # client_closed, backend_closed, client_error, backend_error, parse_error
)

TUNNEL_REQUESTS = Counter(
    "uptunnel_tunnel_requests_total",
    "Upgrade requests by result of the connect phase",
    ["result"],  # connected, bad_gateway, cancelled
)

HANDSHAKE_RESPONSES = Counter(
    "uptunnel_handshake_responses_total",
    "Backend handshake response statuses",
    ["status"],
)

BYTES_RELAYED = Counter(
    "uptunnel_bytes_relayed_total",
    "Bytes relayed through tunnels",
    ["direction"],  # up: client to backend, down: backend to client
)

PROXY_REQUESTS = Counter(
    "uptunnel_proxy_requests_total",
    "Ordinary proxied HTTP requests",
    ["method", "status"],
)

ACTIVE_TUNNELS = Gauge(
    "uptunnel_active_tunnels",
    "Current relaying tunnels",
)

CONNECT_DURATION = Histogram(
    "uptunnel_backend_connect_seconds",
    "Backend connect latency",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


def bucket_status(status: int) -> str:
    """Bucket HTTP status to prevent cardinality explosion."""
    if 100 <= status < 600:
        return f"{status // 100}xx"
    return "other"


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
