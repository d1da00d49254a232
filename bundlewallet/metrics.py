# bundlewallet/metrics.py
from prometheus_client import Counter, Histogram, make_asgi_app

# Counters
ledger_entries_total = Counter(
    "ledger_entries_total",
    "Ledger entries appended by the balance mutator",
    ["type"],
)
settlements_total = Counter(
    "settlements_total",
    "Orders settled against a wallet",
    ["source"],
)
refunds_total = Counter(
    "refunds_total",
    "Compensating credits applied",
    ["kind"],
)
duplicate_compensations = Counter(
    "duplicate_compensations_total",
    "Refunds or status entries skipped because the reference already existed",
    ["kind"],
)
transient_retries = Counter(
    "transient_retries_total",
    "Units of work retried after deadlock or lock timeout",
    ["operation"],
)

settlement_errors = Counter("settlement_errors_total", "Settlement errors", ["kind"])

# Latency
settlement_latency = Histogram("settlement_latency_seconds", "Settlement latency in seconds")
refund_latency = Histogram("refund_latency_seconds", "Status change / refund latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
