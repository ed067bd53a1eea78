from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

REQUESTS_TOTAL = Counter(
    "regdesk_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
BLOCKED_REQUESTS_TOTAL = Counter(
    "regdesk_blocked_requests_total",
    "Requests rejected because the caller IP is blocked",
)
RATE_LIMIT_DENIALS_TOTAL = Counter(
    "regdesk_rate_limit_denials_total",
    "Requests denied by a rate limit",
    ["scope"],
)
IP_BLOCKS_TOTAL = Counter("regdesk_ip_blocks_total", "IP blocks created or extended")
STORE_ERRORS_TOTAL = Counter(
    "regdesk_store_errors_total",
    "Durable store failures seen by the request gates",
    ["component"],
)


__all__ = [
    "CONTENT_TYPE_LATEST",
    "REQUESTS_TOTAL",
    "BLOCKED_REQUESTS_TOTAL",
    "RATE_LIMIT_DENIALS_TOTAL",
    "IP_BLOCKS_TOTAL",
    "STORE_ERRORS_TOTAL",
    "generate_latest",
]
