"""Main entry point for the Prometheus relabel proxy."""
import argparse
import logging
import sys
from typing import List, Optional

from pythonjsonlogger.json import JsonFormatter

from relabel_proxy.config import load_config, normalize_path
from relabel_proxy.engine import ScrapeEngine
from relabel_proxy.exceptions import ConfigLoadError
from relabel_proxy.proxy_api import ProxyAPI
from relabel_proxy.scraper import Scraper
from relabel_proxy.self_metrics import SelfMetrics

DEFAULT_CONFIG_PATH = "prometheus.yml"

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
JSON_RENAMES = {"asctime": "time", "levelname": "level", "name": "logger"}
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_level: str, log_format: str) -> logging.Logger:
    """
    Build the proxy logger.

    Configures only the ``relabel_proxy`` logger; the returned logger is
    handed to each component explicitly.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        formatter = JsonFormatter(JSON_FORMAT, rename_fields=JSON_RENAMES, datefmt=DATE_FORMAT)
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)
    handler.setFormatter(formatter)

    logger = logging.getLogger("relabel_proxy")
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False

    # Reduce noise from some libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return logger


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Prometheus Relabel Proxy - relabel and merge metrics from proxied targets"
    )
    parser.add_argument(
        "--config",
        "-c",
        default=DEFAULT_CONFIG_PATH,
        help="Path to prometheus relabel config"
    )
    parser.add_argument(
        "--addr",
        "-a",
        default=None,
        help="Address proxy listens on, e.g. :9091"
    )
    parser.add_argument(
        "--metrics-path",
        default=None,
        help="Path the collector scrapes"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG, INFO, WARNING, ERROR)"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Main function."""
    args = parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except ConfigLoadError as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if args.addr:
        config.proxy.listen_address = args.addr
    if args.metrics_path:
        config.proxy.metrics_path = normalize_path(args.metrics_path)
    if args.log_level:
        config.proxy.log_level = args.log_level

    logger = setup_logging(config.proxy.log_level, config.proxy.log_format)
    logger.info(f"Configuration loaded from: {args.config}")
    logger.info(f"Scrape jobs configured: {len(config.scrape_configs)}")

    try:
        host, port = config.proxy.host_port()
    except ValueError:
        logger.error(f"Invalid listen address: {config.proxy.listen_address}")
        sys.exit(1)

    self_metrics = SelfMetrics()
    scraper = Scraper(
        forward_headers=config.proxy.forward_headers,
        timeout_s=config.proxy.scrape_timeout_s,
        logger=logger.getChild("scraper")
    )
    engine = ScrapeEngine(config, scraper, self_metrics=self_metrics, logger=logger.getChild("engine"))
    proxy_api = ProxyAPI(
        engine,
        metrics_path=config.proxy.metrics_path,
        self_metrics=self_metrics,
        logger=logger.getChild("api")
    )

    # uvicorn handles SIGINT/SIGTERM and shuts down gracefully
    logger.info(f"Serving {config.proxy.metrics_path} on {host}:{port}")
    try:
        proxy_api.run(host=host, port=port)
    except Exception as e:
        logger.error(f"Proxy server error: {e}", exc_info=True)
        sys.exit(1)
    logger.info("Shutting down...")


if __name__ == "__main__":
    main()
