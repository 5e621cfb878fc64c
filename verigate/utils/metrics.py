from prometheus_client import Counter, Histogram, Gauge

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests in progress",
)

CODES_ISSUED = Counter(
    "verification_codes_issued_total",
    "Verification codes issued",
    ["type", "delivery"],
)
VALIDATION_OUTCOMES = Counter(
    "verification_validations_total",
    "Verification code validation outcomes",
    ["type", "outcome"],
)
RATE_LIMIT_REJECTIONS = Counter(
    "verification_rate_limit_rejections_total",
    "Code requests rejected by the rate limiter",
)
ACCOUNT_LOCKOUTS = Counter(
    "account_lockouts_total",
    "Identifiers locked after repeated verification failures",
)
CLEANUP_AFFECTED = Counter(
    "verification_cleanup_rows_total",
    "Rows removed or resolved by cleanup sweeps",
    ["sweep"],
)


def get_route_name(scope: dict) -> str:
    route = scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return scope.get("path", "unknown")
