"""
Prometheus Metrics
==================
Counters and gauges for challenge issuance and verification.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge

# Custom registry so hosts can expose or ignore it independently
OTP_REGISTRY = CollectorRegistry()

OTP_ISSUE_TOTAL = Counter(
    name="otp_issue_total",
    documentation="Challenge issuance outcomes",
    labelnames=["method", "outcome"],
    registry=OTP_REGISTRY,
)

OTP_VERIFY_TOTAL = Counter(
    name="otp_verify_total",
    documentation="Challenge verification outcomes",
    labelnames=["method", "outcome"],
    registry=OTP_REGISTRY,
)

BACKUP_CODE_TOTAL = Counter(
    name="otp_backup_code_total",
    documentation="Backup code redemption outcomes",
    labelnames=["outcome"],
    registry=OTP_REGISTRY,
)

FRAUD_BLOCKS_TOTAL = Counter(
    name="otp_fraud_blocks_total",
    documentation="Fraud records escalated to a block",
    labelnames=["scope"],
    registry=OTP_REGISTRY,
)

STORE_ENTRIES = Gauge(
    name="otp_store_entries",
    documentation="Live entries per in-memory store after the last sweep",
    labelnames=["store"],
    registry=OTP_REGISTRY,
)


def record_issue(method: str, outcome: str) -> None:
    OTP_ISSUE_TOTAL.labels(method=method, outcome=outcome).inc()


def record_verify(method: str, outcome: str) -> None:
    OTP_VERIFY_TOTAL.labels(method=method, outcome=outcome).inc()


def record_backup_code(outcome: str) -> None:
    BACKUP_CODE_TOTAL.labels(outcome=outcome).inc()


def record_fraud_block(scope: str) -> None:
    FRAUD_BLOCKS_TOTAL.labels(scope=scope).inc()


def set_store_entries(store: str, count: int) -> None:
    STORE_ENTRIES.labels(store=store).set(count)
