"""Tests for target resolution, fetching and the scrape cycle."""
import asyncio
import threading

import httpx
import pytest

from relabel_proxy.config import parse_config
from relabel_proxy.engine import Pipeline, ScrapeEngine, effective_timeout, resolve_targets
from relabel_proxy.exceptions import AllTargetsFailedError, FetchError
from relabel_proxy.scraper import InboundRequest, Scraper
from relabel_proxy.self_metrics import SelfMetrics

TARGET_BODIES = {
    "node1:9100": b'# TYPE up gauge\nup{code="200", node="1"} 1\nup{code="500", node="1"} 2',
    "node2:9100": b'# TYPE up gauge\nup{node="2"} 1',
    "node3:9100": b'# TYPE up gauge\nup{node="3"} 1',
}


def make_config(targets=("node1:9100", "node2:9100", "node3:9100"), **job):
    job.setdefault("job_name", "nodes")
    job["static_configs"] = [{"targets": list(targets)}]
    return parse_config({
        "proxy": {"scrape_timeout_s": 1.0, "max_concurrent_scrapes": 2},
        "scrape_configs": [job],
    })


def make_scraper(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Scraper(client=client, **kwargs)


def serve_bodies(failing=()):
    def handler(request):
        host = f"{request.url.host}:{request.url.port}"
        if host in failing:
            return httpx.Response(500, text="boom")
        return httpx.Response(200, content=TARGET_BODIES[host])
    return handler


def test_resolve_targets_builds_urls_in_order():
    config = make_config(metrics_path="stats", scheme="https")
    targets = resolve_targets(config.scrape_configs)
    assert [t.url for t in targets] == [
        "https://node1:9100/stats",
        "https://node2:9100/stats",
        "https://node3:9100/stats",
    ]
    assert all(t.job == "nodes" for t in targets)


def test_target_relabeling_drops_and_rewrites():
    config = make_config(relabel_configs=[
        {"action": "drop", "source_labels": ["__address__"], "regex": "node2:.*"},
        {
            "source_labels": ["__address__"],
            "regex": "node3:(.*)",
            "target_label": "__metrics_path__",
            "replacement": "/federate/$1",
        },
    ])
    targets = resolve_targets(config.scrape_configs)
    assert [t.url for t in targets] == [
        "http://node1:9100/metrics",
        "http://node3:9100/federate/9100",
    ]


def test_effective_timeout():
    assert effective_timeout(InboundRequest(), 10.0) == 10.0
    assert effective_timeout(InboundRequest({"x-prometheus-scrape-timeout-seconds": "2.5"}), 10.0) == 2.5
    assert effective_timeout(InboundRequest({"X-Prometheus-Scrape-Timeout-Seconds": "30"}), 10.0) == 10.0
    assert effective_timeout(InboundRequest({"X-Prometheus-Scrape-Timeout-Seconds": "soon"}), 10.0) == 10.0


def test_scraper_forwards_headers_and_extends_forwarded_for():
    scraper = Scraper(forward_headers=["User-Agent", "Authorization"])
    inbound = InboundRequest(
        headers={"user-agent": "Prometheus/2.45", "X-Forwarded-For": "10.0.0.1", "Cookie": "x"},
        client_host="10.0.0.2"
    )
    headers = scraper.build_headers(inbound)
    assert headers["User-Agent"] == "Prometheus/2.45"
    assert headers["X-Forwarded-For"] == "10.0.0.1, 10.0.0.2"
    assert "Authorization" not in headers
    assert "Cookie" not in headers
    assert headers["Accept"].startswith("text/plain")


def test_scraper_raises_fetch_error_on_bad_status():
    scraper = make_scraper(lambda request: httpx.Response(503))

    async def fetch():
        await scraper.fetch("http://node1:9100/metrics", InboundRequest())

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(fetch())
    assert excinfo.value.status_code == 503
    assert excinfo.value.url == "http://node1:9100/metrics"


def test_scraper_raises_fetch_error_on_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    scraper = make_scraper(handler)
    with pytest.raises(FetchError):
        asyncio.run(scraper.fetch("http://node1:9100/metrics", InboundRequest()))


def test_scrape_all_targets():
    config = make_config(metric_relabel_configs=[{"action": "labeldrop", "regex": "code"}])
    engine = ScrapeEngine(config, make_scraper(serve_bodies()))

    result = asyncio.run(engine.scrape(InboundRequest()))

    assert result.attempted == 3
    assert result.failed == 0
    assert result.body == (
        '# TYPE up gauge\nup{node="1"} 3\n'
        '# TYPE up gauge\nup{node="2"} 1\n'
        '# TYPE up gauge\nup{node="3"} 1\n'
    )


def test_partial_failure_keeps_successful_targets():
    config = make_config()
    self_metrics = SelfMetrics()
    engine = ScrapeEngine(config, make_scraper(serve_bodies(failing={"node2:9100"})), self_metrics)

    result = asyncio.run(engine.scrape(InboundRequest()))

    assert result.attempted == 3
    assert result.failed == 1
    assert 'node="2"' not in result.body
    assert 'up{code="200", node="1"} 1' in result.body
    assert 'up{node="3"} 1' in result.body

    registry = self_metrics.registry
    assert registry.get_sample_value("relabel_proxy_scrapes_total", {"job": "nodes"}) == 3
    assert registry.get_sample_value("relabel_proxy_scrape_failures_total", {"job": "nodes"}) == 1
    assert registry.get_sample_value("relabel_proxy_targets") == 3


def test_all_targets_failing_raises():
    config = make_config()
    failing = set(TARGET_BODIES)
    engine = ScrapeEngine(config, make_scraper(serve_bodies(failing=failing)))

    with pytest.raises(AllTargetsFailedError) as excinfo:
        asyncio.run(engine.scrape(InboundRequest()))
    assert excinfo.value.attempted == 3
    assert excinfo.value.failed == 3


def test_output_follows_declaration_order_not_completion_order():
    async def handler(request):
        # First declared target answers last
        if request.url.host == "node1":
            await asyncio.sleep(0.2)
        return httpx.Response(200, content=TARGET_BODIES[f"{request.url.host}:{request.url.port}"])

    engine = ScrapeEngine(make_config(), make_scraper(handler))
    body = asyncio.run(engine.scrape(InboundRequest())).body

    assert body.index('node="1"') < body.index('node="2"') < body.index('node="3"')


def test_slow_target_times_out_without_affecting_others():
    async def handler(request):
        if request.url.host == "node3":
            await asyncio.sleep(5)
        return httpx.Response(200, content=TARGET_BODIES[f"{request.url.host}:{request.url.port}"])

    engine = ScrapeEngine(make_config(), make_scraper(handler))
    inbound = InboundRequest({"X-Prometheus-Scrape-Timeout-Seconds": "0.1"})
    result = asyncio.run(engine.scrape(inbound))

    assert result.failed == 1
    assert 'node="3"' not in result.body


def test_cancelling_scrape_cancels_fetches():
    cancelled = []

    async def handler(request):
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.append(request.url.host)
            raise
        return httpx.Response(200)

    engine = ScrapeEngine(make_config(), make_scraper(handler))

    async def scrape_then_cancel():
        task = asyncio.ensure_future(engine.scrape(InboundRequest()))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scrape_then_cancel())
    # Concurrency is bounded at 2, so two fetches were in flight
    assert sorted(cancelled) == ["node1", "node2"]


def test_no_targets_after_relabeling_is_a_failure():
    config = make_config(relabel_configs=[{"action": "drop", "source_labels": ["job"], "regex": "nodes"}])
    engine = ScrapeEngine(config, make_scraper(serve_bodies()))
    assert engine.targets == []
    with pytest.raises(AllTargetsFailedError):
        asyncio.run(engine.scrape(InboundRequest()))


def test_malformed_target_does_not_affect_others():
    def handler(request):
        return httpx.Response(200, text="up 1")

    config = make_config(targets=("good:1", "bad:port"))
    self_metrics = SelfMetrics()
    engine = ScrapeEngine(config, make_scraper(handler), self_metrics)

    result = asyncio.run(engine.scrape(InboundRequest()))

    assert result.body == "up 1\n"
    assert result.attempted == 2
    assert result.failed == 1
    assert self_metrics.registry.get_sample_value("relabel_proxy_scrape_failures_total", {"job": "nodes"}) == 1


def test_scraper_wraps_invalid_url():
    scraper = make_scraper(lambda request: httpx.Response(200))
    with pytest.raises(FetchError) as excinfo:
        asyncio.run(scraper.fetch("http://bad:port/metrics", InboundRequest()))
    assert excinfo.value.url == "http://bad:port/metrics"
    assert excinfo.value.status_code is None


def test_pipeline_runs_on_the_event_loop_thread(monkeypatch):
    threads = []
    original_run = Pipeline.run

    def recording_run(self, buf):
        threads.append(threading.get_ident())
        return original_run(self, buf)

    monkeypatch.setattr(Pipeline, "run", recording_run)
    engine = ScrapeEngine(make_config(), make_scraper(serve_bodies()))
    asyncio.run(engine.scrape(InboundRequest()))

    assert threads == [threading.get_ident()] * 3
