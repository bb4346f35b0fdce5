"""Configuration models using Pydantic for validation.

The config file is a Prometheus-style document (``scrape_configs``) with an
optional ``proxy`` section for the proxy's own settings.
"""
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
import os
import re

import yaml

from relabel_proxy.exceptions import ConfigLoadError

# Actions that write to or compare against target_label
TARGET_LABEL_ACTIONS = {"replace", "hashmod", "lowercase", "uppercase", "keepequal", "dropequal"}


class RelabelConfig(BaseModel):
    """One relabel rule, as written in Prometheus relabel_configs."""
    source_labels: List[str] = Field(default_factory=list)
    separator: str = ";"
    regex: str = "(.*)"
    modulus: Optional[int] = None
    target_label: Optional[str] = None
    replacement: str = "$1"
    action: str = "replace"

    @field_validator('action')
    @classmethod
    def normalize_action(cls, v):
        """Actions are case-insensitive."""
        return v.lower()

    @field_validator('regex')
    @classmethod
    def validate_regex(cls, v):
        try:
            re.compile(f"(?:{v})")
        except re.error as e:
            raise ValueError(f"Invalid regex '{v}': {e}")
        return v

    @model_validator(mode='after')
    def validate_action_fields(self):
        """Ensure each action has the fields it needs."""
        if self.action in TARGET_LABEL_ACTIONS and not self.target_label:
            raise ValueError(f"Relabel action '{self.action}' requires a target_label")
        if self.action == "hashmod" and (self.modulus is None or self.modulus <= 0):
            raise ValueError("Relabel action 'hashmod' requires a positive modulus")
        return self


class StaticConfig(BaseModel):
    """Fixed list of targets."""
    targets: List[str] = Field(default_factory=list)


class ScrapeConfig(BaseModel):
    """A proxied scrape job."""
    job_name: str
    metrics_path: str = "/metrics"
    scheme: Literal["http", "https"] = "http"
    static_configs: List[StaticConfig] = Field(default_factory=list)
    relabel_configs: List[RelabelConfig] = Field(default_factory=list)
    metric_relabel_configs: List[RelabelConfig] = Field(default_factory=list)

    @field_validator('metrics_path')
    @classmethod
    def normalize_metrics_path(cls, v):
        return normalize_path(v)

    def targets(self) -> List[str]:
        """All targets of the job in declaration order."""
        return [target for static in self.static_configs for target in static.targets]


class ProxySettings(BaseModel):
    """Settings for the proxy itself."""
    listen_address: str = ":9091"
    metrics_path: str = "/metrics"
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"
    scrape_timeout_s: float = Field(default=10.0, gt=0)
    max_concurrent_scrapes: int = Field(default=16, ge=1)
    forward_headers: List[str] = Field(
        default_factory=lambda: ["User-Agent", "Authorization", "X-Prometheus-Scrape-Timeout-Seconds"]
    )

    @field_validator('metrics_path')
    @classmethod
    def normalize_metrics_path(cls, v):
        return normalize_path(v)

    def host_port(self):
        """Split ``listen_address`` into (host, port); an empty host binds all interfaces."""
        host, _, port = self.listen_address.rpartition(":")
        return host.strip("[]") or "0.0.0.0", int(port)


class Config(BaseModel):
    """Root configuration model."""
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    scrape_configs: List[ScrapeConfig]

    @field_validator('scrape_configs')
    @classmethod
    def validate_scrape_configs(cls, v):
        """Validate scrape job configurations."""
        if not v:
            raise ValueError("At least one scrape config must be defined")

        names = [job.job_name for job in v]
        if len(names) != len(set(names)):
            raise ValueError("Job names must be unique")

        return v


def normalize_path(path: str) -> str:
    """Make sure an HTTP path starts with a slash."""
    path = path.strip()
    if not path.startswith("/"):
        path = "/" + path
    return path


def parse_config(raw_config: dict) -> Config:
    """Validate an already-decoded config document."""
    try:
        return Config(**(raw_config or {}))
    except (ValidationError, TypeError) as e:
        raise ConfigLoadError(f"Configuration validation failed: {e}") from e


def load_config(config_path: str) -> Config:
    """Load and validate configuration from YAML file."""
    if not os.path.exists(config_path):
        raise ConfigLoadError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigLoadError(f"Failed to read config file from {config_path}: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigLoadError(f"Config file {config_path} must contain a mapping")

    # Apply environment variable overrides
    if env_log_level := os.getenv('LOG_LEVEL'):
        raw_config['proxy'] = raw_config.get('proxy') or {}
        raw_config['proxy']['log_level'] = env_log_level

    if env_listen := os.getenv('PROXY_LISTEN_ADDRESS'):
        raw_config['proxy'] = raw_config.get('proxy') or {}
        raw_config['proxy']['listen_address'] = env_listen

    return parse_config(raw_config)
