"""Self-monitoring metrics for the proxy, using prometheus_client."""
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class SelfMetrics:
    """Counters and timings about proxied scrapes.

    Kept on a private registry so the proxy never mixes its own series
    into the proxied output.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, prefix: str = "relabel_proxy_"):
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.scrapes_total = Counter(
            f"{prefix}scrapes",
            "Total number of target scrapes attempted",
            ["job"],
            registry=registry
        )

        self.scrape_failures_total = Counter(
            f"{prefix}scrape_failures",
            "Total number of target scrapes that failed",
            ["job"],
            registry=registry
        )

        self.scrape_duration_seconds = Histogram(
            f"{prefix}scrape_duration_seconds",
            "Duration of a full proxied scrape cycle in seconds",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=registry
        )

        self.targets = Gauge(
            f"{prefix}targets",
            "Number of targets resolved after target relabeling",
            registry=registry
        )

    def record_scrape(self, job: str, failed: bool):
        """Record one target scrape."""
        self.scrapes_total.labels(job=job).inc()
        if failed:
            self.scrape_failures_total.labels(job=job).inc()

    def record_cycle_duration(self, duration: float):
        self.scrape_duration_seconds.observe(duration)

    def set_targets(self, count: int):
        self.targets.set(count)

    def render(self) -> bytes:
        """Render the registry in the text exposition format."""
        return generate_latest(self.registry)
