"""
Line Metrics Engine - Prometheus Instrumentation

Counters and histograms for metric computations, fallback tiers and
degraded quantities, exposed on /metrics by the application.
"""

from prometheus_client import Counter, Histogram

METRICS_COMPUTATIONS = Counter(
    "line_metrics_computations_total",
    "Number of metrics computations by entry point and outcome",
    ["entry_point", "outcome"]
)

METRICS_COMPUTATION_SECONDS = Histogram(
    "line_metrics_computation_seconds",
    "Duration of metrics computations",
    ["entry_point"]
)

RESOLVER_TIER_HITS = Counter(
    "line_metrics_resolver_tier_hits_total",
    "Fallback tier that resolved a quantity",
    ["resolver", "tier"]
)

DEGRADED_QUANTITIES = Counter(
    "line_metrics_degraded_quantities_total",
    "Quantities that degraded to zero because of a lookup failure",
    ["quantity", "reason"]
)

COUNTER_RESETS = Counter(
    "line_metrics_counter_resets_total",
    "Counter deltas that went negative inside a window",
    ["tag_ref"]
)
