"""
Prometheus metrics for ephemeral container provisioning.
"""
import threading
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY, start_http_server

METRIC_PREFIX = "kec_ephemeral_containers"


class ProvisioningMetrics:
    """
    Counters and timers of the provisioning controller, labelled by cloud.
    A separate registry keeps test instances from clashing with the global one.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.created = Counter(
            f"{METRIC_PREFIX}_created",
            "Ephemeral containers that reached the running state",
            ["cloud"],
            registry=self.registry,
        )
        self.creation_failed = Counter(
            f"{METRIC_PREFIX}_creation_failed",
            "Ephemeral container invocations that failed",
            ["cloud", "kind"],
            registry=self.registry,
        )
        self.creation_retried = Counter(
            f"{METRIC_PREFIX}_creation_retried",
            "Ephemeral containers replaced after a transient start failure",
            ["cloud"],
            registry=self.registry,
        )
        self.patch_conflicts = Counter(
            f"{METRIC_PREFIX}_patch_conflicts",
            "Pod updates rejected because of a concurrent modification",
            ["cloud"],
            registry=self.registry,
        )
        self.creation_duration = Histogram(
            f"{METRIC_PREFIX}_creation_duration_seconds",
            "Time from the first Pod update to a running container",
            ["cloud"],
            registry=self.registry,
        )
        self.creation_wait_duration = Histogram(
            f"{METRIC_PREFIX}_creation_wait_duration_seconds",
            "Time spent waiting for a container to report running",
            ["cloud"],
            registry=self.registry,
        )

    def value(self, name: str, **labels) -> float:
        """
        Current value of a sample, 0 if it was never recorded.

        :param name: Sample name without the metric prefix, e.g. 'created_total'.
        """
        value = self.registry.get_sample_value(f"{METRIC_PREFIX}_{name}", labels)
        return value or 0.0


_default_metrics: Optional[ProvisioningMetrics] = None
_default_metrics_lock = threading.Lock()


def default_metrics() -> ProvisioningMetrics:
    """
    Process wide metrics registered on the global Prometheus registry.
    """
    global _default_metrics
    with _default_metrics_lock:
        if _default_metrics is None:
            _default_metrics = ProvisioningMetrics(REGISTRY)
    return _default_metrics


def serve_metrics(port: int) -> None:
    """
    Exposes the global registry over HTTP.
    """
    start_http_server(port)
