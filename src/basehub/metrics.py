"""Prometheus metrics definitions for basehub.

Tracks lifecycle operations, external tool calls and registry size.
Instance ids are high cardinality and never used as labels.
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets
# =============================================================================
# Provisioning can take many minutes on first image pull
_BUCKETS_SLOW = (
    0.1, 0.5, 1, 2, 5,
    10, 30, 60, 120, 300,
    600, 900,
)  # 12 buckets

# =============================================================================
# Lifecycle Operation Metrics
# =============================================================================

OPERATION_DURATION = Histogram(
    "basehub_operation_duration_seconds",
    "Duration of lifecycle operations",
    ["operation"],  # create, start, stop, restart, delete, list, check
    buckets=_BUCKETS_SLOW,
)

OPERATION_ERRORS = Counter(
    "basehub_operation_errors_total",
    "Total lifecycle operation errors",
    ["operation", "error_code"],
)

ROLLBACKS = Counter(
    "basehub_rollbacks_total",
    "Compensating deletes after failed creation",
    ["result"],  # completed, failed
)

# =============================================================================
# External Tool Metrics
# =============================================================================

COMMAND_DURATION = Histogram(
    "basehub_command_duration_seconds",
    "Duration of external tool invocations",
    ["command"],  # provision, compose_up, compose_down, compose_teardown, compose_logs
    buckets=_BUCKETS_SLOW,
)

# =============================================================================
# Resource Metrics
# =============================================================================

INSTANCES_TOTAL = Gauge(
    "basehub_instances_total",
    "Number of instances in the registry",
)

PORT_ALLOCATION_ATTEMPTS = Counter(
    "basehub_port_allocation_attempts_total",
    "Random port picks, including rejected ones",
    ["service"],
)


def _init_metrics() -> None:
    """Initialize labeled metrics with zero values."""
    for op in ["create", "start", "stop", "restart", "delete", "list", "check"]:
        OPERATION_DURATION.labels(operation=op)
    for cmd in ["provision", "compose_up", "compose_down", "compose_teardown", "compose_logs"]:
        COMMAND_DURATION.labels(command=cmd)
    ROLLBACKS.labels(result="completed")
    ROLLBACKS.labels(result="failed")


_init_metrics()
