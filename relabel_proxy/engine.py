"""Scrape engine: fetches every target and runs the relabel pipeline on each."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from relabel_proxy.aggregator import Aggregator, order_entries
from relabel_proxy.config import Config, ScrapeConfig
from relabel_proxy.exceptions import AllTargetsFailedError, FetchError
from relabel_proxy.formatter import Formatter
from relabel_proxy.parser import ExpositionParser
from relabel_proxy.relabel import RelabelRule, Relabeler, compile_rules
from relabel_proxy.scraper import InboundRequest, Scraper
from relabel_proxy.self_metrics import SelfMetrics
from relabel_proxy.series import NAME_LABEL, Comment

SCRAPE_TIMEOUT_HEADER = "X-Prometheus-Scrape-Timeout-Seconds"

ADDRESS_LABEL = "__address__"
SCHEME_LABEL = "__scheme__"
METRICS_PATH_LABEL = "__metrics_path__"
JOB_LABEL = "job"


@dataclass
class ScrapeTarget:
    """One resolved target with the metric rules of its job."""
    job: str
    url: str
    metric_rules: List[RelabelRule] = field(default_factory=list)


@dataclass
class ScrapeResult:
    """Outcome of one proxied scrape cycle."""
    body: str
    attempted: int
    failed: int


class Pipeline:
    """Parse, relabel, deduplicate and re-render one target's payload.

    Every run builds fresh parser, relabeler and aggregator instances, so
    nothing carries over between targets or cycles.
    """

    def __init__(self, metric_rules: List[RelabelRule], logger: Optional[logging.Logger] = None):
        self.metric_rules = metric_rules
        self.logger = logger or logging.getLogger(__name__)

    def run(self, buf: bytes) -> str:
        entries = ExpositionParser(self.logger).parse(buf)
        relabeler = Relabeler(self.metric_rules, self.logger)
        aggregator = Aggregator()

        comments: List[Comment] = []
        nameless = 0
        series_count = 0
        for entry in entries:
            if isinstance(entry, Comment):
                comments.append(entry)
                continue
            series_count += 1
            labels = relabeler.process(entry.labels)
            if labels is None:
                continue
            if NAME_LABEL not in labels:
                nameless += 1
                continue
            aggregator.add(labels, entry.value, entry.position, entry.metric_name)

        records = aggregator.records()
        merged = sum(record.sources - 1 for record in records)
        self.logger.debug(
            f"Pipeline: {series_count} series in, {relabeler.discarded} discarded by rules, "
            f"{nameless} left without a name, {merged} merged, {len(records)} series out"
        )
        return Formatter(self.logger).format(order_entries(comments, records))


def _target_labels(job: ScrapeConfig, address: str) -> Dict[str, str]:
    return {
        ADDRESS_LABEL: address,
        SCHEME_LABEL: job.scheme,
        METRICS_PATH_LABEL: job.metrics_path,
        JOB_LABEL: job.job_name,
    }


def resolve_targets(jobs: List[ScrapeConfig], logger: Optional[logging.Logger] = None) -> List[ScrapeTarget]:
    """
    Expand jobs into scrape targets, applying each job's target relabeling.

    Args:
        jobs: Scrape configs in declaration order
        logger: Logger to use

    Returns:
        Targets in declaration order; targets dropped by relabeling are left out
    """
    logger = logger or logging.getLogger(__name__)
    targets = []
    for job in jobs:
        target_relabeler = Relabeler(compile_rules(job.relabel_configs, logger), logger)
        metric_rules = compile_rules(job.metric_relabel_configs, logger)

        for address in job.targets():
            labels = target_relabeler.process(_target_labels(job, address))
            if labels is None or not labels.get(ADDRESS_LABEL):
                logger.info(f"Target {address} of job '{job.job_name}' dropped by relabeling")
                continue
            scheme = labels.get(SCHEME_LABEL) or job.scheme
            path = labels.get(METRICS_PATH_LABEL) or job.metrics_path
            if not path.startswith("/"):
                path = "/" + path
            url = f"{scheme}://{labels[ADDRESS_LABEL]}{path}"
            targets.append(ScrapeTarget(job.job_name, url, metric_rules))

    return targets


def effective_timeout(inbound: InboundRequest, configured_s: float) -> float:
    """Smaller of the configured timeout and the collector's advertised one."""
    advertised = inbound.header(SCRAPE_TIMEOUT_HEADER)
    if advertised:
        try:
            advertised_s = float(advertised)
        except ValueError:
            return configured_s
        if advertised_s > 0:
            return min(configured_s, advertised_s)
    return configured_s


class ScrapeEngine:
    """Runs one scrape cycle per inbound request across all targets."""

    def __init__(
        self,
        config: Config,
        scraper: Scraper,
        self_metrics: Optional[SelfMetrics] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.scraper = scraper
        self.self_metrics = self_metrics
        self.logger = logger or logging.getLogger(__name__)
        self.max_concurrency = config.proxy.max_concurrent_scrapes
        self.targets = resolve_targets(config.scrape_configs, self.logger)

        if self.self_metrics:
            self.self_metrics.set_targets(len(self.targets))

        self.logger.info(
            f"Scrape engine initialized with {len(self.targets)} targets "
            f"across {len(config.scrape_configs)} jobs"
        )

    async def scrape(self, inbound: InboundRequest) -> ScrapeResult:
        """
        Scrape every target concurrently and assemble the response body.

        Output blocks keep target declaration order regardless of which
        fetch finishes first. Cancelling this coroutine cancels every
        in-flight fetch.

        Raises:
            AllTargetsFailedError: If no target produced output
        """
        cycle_start = time.time()
        timeout_s = effective_timeout(inbound, self.config.proxy.scrape_timeout_s)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        outputs = await asyncio.gather(
            *(self._scrape_target(target, inbound, timeout_s, semaphore) for target in self.targets)
        )

        attempted = len(outputs)
        failed = sum(1 for output in outputs if output is None)
        duration = time.time() - cycle_start
        if self.self_metrics:
            self.self_metrics.record_cycle_duration(duration)

        self.logger.info(
            f"Scrape cycle: {attempted - failed}/{attempted} targets succeeded in {duration:.3f}s"
        )

        if attempted == 0 or failed == attempted:
            raise AllTargetsFailedError(attempted, failed)

        blocks = [output for output in outputs if output]
        body = "\n".join(blocks) + "\n" if blocks else ""
        return ScrapeResult(body, attempted, failed)

    async def _scrape_target(
        self,
        target: ScrapeTarget,
        inbound: InboundRequest,
        timeout_s: float,
        semaphore: asyncio.Semaphore
    ) -> Optional[str]:
        """Fetch and process one target; None marks a failure."""
        async with semaphore:
            try:
                body = await asyncio.wait_for(
                    self.scraper.fetch(target.url, inbound, timeout_s),
                    timeout=timeout_s
                )
            except FetchError as e:
                self.logger.warning(f"Scrape of {target.url} (job '{target.job}') failed: {e}")
                self._record(target, failed=True)
                return None
            except asyncio.TimeoutError:
                self.logger.warning(
                    f"Scrape of {target.url} (job '{target.job}') exceeded {timeout_s}s"
                )
                self._record(target, failed=True)
                return None

        try:
            output = Pipeline(target.metric_rules, self.logger).run(body)
        except Exception as e:
            self.logger.error(f"Failed to process metrics from {target.url}: {e}", exc_info=True)
            self._record(target, failed=True)
            return None

        self._record(target, failed=False)
        return output

    def _record(self, target: ScrapeTarget, failed: bool):
        if self.self_metrics:
            self.self_metrics.record_scrape(target.job, failed)
