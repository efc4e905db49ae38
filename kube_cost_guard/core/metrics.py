"""
Prometheus observability for cost attribution.

A :class:`CostMetrics` instance owns its own collector registry and is passed
explicitly to the components that record measurements, so tests and
multiple services in one process never share counters.

Exported series:

* ``cost_micro_cents_total{kind,strategy,<dimensions>}``: attributed cost.
* ``cycles_total{status}``: calculation cycles by outcome.
* ``cycle_lag_milliseconds``: elapsed interval minus configured interval.
* ``export_errors_total{exporter}``: records dropped by a failing sink.
"""

import re
from typing import Dict, Optional, Sequence

from prometheus_client import CollectorRegistry, Counter, Gauge

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"

COST_LABELS = ("kind", "strategy")


class CostMetrics:
    """Counters and gauges describing the cost attribution loop.

    Args:
        dimension_names: Dimension names produced by the mapper. They become
            extra labels of the cost counter, so they must be fixed for the
            registry's lifetime.
        registry: Registry to register collectors with. A fresh one is
            created when omitted.
        namespace: Metric name prefix.
    """

    def __init__(
        self,
        dimension_names: Sequence[str] = (),
        registry: Optional[CollectorRegistry] = None,
        namespace: str = "kube_cost_guard",
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self.dimension_names = [name for name in dimension_names if name not in COST_LABELS]
        self._label_names = [label_name(name) for name in self.dimension_names]

        self.cost = Counter(
            "cost_micro_cents",
            "Cost of services in millionths of a cent",
            list(COST_LABELS) + self._label_names,
            namespace=namespace,
            registry=self.registry,
        )
        self.cycles = Counter(
            "cycles",
            "Cost calculation cycles executed",
            ["status"],
            namespace=namespace,
            registry=self.registry,
        )
        self.lag = Gauge(
            "cycle_lag_milliseconds",
            "Lag between the configured and actual calculation interval",
            namespace=namespace,
            registry=self.registry,
        )
        self.export_errors = Counter(
            "export_errors",
            "Cost records dropped because a downstream exporter failed",
            ["exporter"],
            namespace=namespace,
            registry=self.registry,
        )

    def record_cost(self, kind: str, strategy: str, dimensions: Dict[str, str], value: int) -> None:
        """Add ``value`` micro-cents to the series for this kind, strategy and dimensions."""
        labels = {"kind": kind, "strategy": strategy}
        for name, label in zip(self.dimension_names, self._label_names):
            labels[label] = dimensions.get(name, "")
        self.cost.labels(**labels).inc(value)

    def record_cycle(self, status: str) -> None:
        self.cycles.labels(status=status).inc()

    def record_lag(self, lag_ms: float) -> None:
        self.lag.set(lag_ms)

    def record_export_error(self, exporter: str) -> None:
        self.export_errors.labels(exporter=exporter).inc()

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Return the current value of a sample, mainly for health output and tests."""
        return self.registry.get_sample_value(name, labels or {})


def label_name(name: str) -> str:
    """Sanitize a dimension name into a valid Prometheus label name."""
    label = re.sub(r"[^A-Za-z0-9_]", "_", name)
    if not label or label[0].isdigit():
        label = "_" + label
    return label
