"""Configuration management for politefetch.

Loads settings from ~/.politefetch/config.toml with environment variable
overrides (``POLITEFETCH_<SECTION>_<KEY>``).
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from dataclasses import fields as dataclass_fields
from pathlib import Path
from typing import TypeVar

import structlog

from politefetch.fetcher.policy import NO_MIN_RESPONSE_RATE, FetcherPolicy
from politefetch.models import UserAgent

logger = structlog.get_logger()

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".politefetch"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.toml"


@dataclass(frozen=True)
class NodeConfig:
    """Process-level settings."""

    log_level: str = "info"


@dataclass(frozen=True)
class FetchConfig:
    """Fetcher policy and crawler identity."""

    agent_name: str = "politefetch"
    agent_email: str = ""
    agent_web_address: str = ""
    max_threads: int = 10
    max_urls_per_batch: int = 0  # 0 = derive from the crawl delay
    crawl_delay_ms: int = 30_000
    crawl_end_time: float = 0.0  # epoch seconds, 0 = no deadline
    min_response_rate: int = NO_MIN_RESPONSE_RATE  # bytes/second
    max_content_size: int = 64 * 1024
    max_redirects: int = 20
    max_connections_per_host: int = 2
    accept_language: str = "en-us,en-gb,en;q=0.7,*;q=0.3"
    valid_mime_types: tuple[str, ...] = ()
    timeout: float = 30.0

    def user_agent(self) -> UserAgent:
        return UserAgent(
            agent_name=self.agent_name,
            email=self.agent_email,
            web_address=self.agent_web_address,
        )

    def to_policy(self) -> FetcherPolicy:
        """Build the runtime :class:`FetcherPolicy` for these settings."""
        return FetcherPolicy(
            min_response_rate=self.min_response_rate,
            max_content_size=self.max_content_size,
            crawl_end_time=self.crawl_end_time or None,
            crawl_delay_ms=self.crawl_delay_ms,
            max_redirects=self.max_redirects,
            max_connections_per_host=self.max_connections_per_host,
            accept_language=self.accept_language,
            valid_mime_types=frozenset(self.valid_mime_types) or None,
        )


@dataclass(frozen=True)
class SchedulerConfig:
    """Politeness buffer and scheduler manager timing (seconds)."""

    request_timeout: float = 10.0
    buffer_termination_timeout: float = 100.0
    status_interval: float = 10.0
    queue_log_interval: float = 300.0
    num_queues_to_log: int = 100
    idle_sleep: float = 0.1


@dataclass(frozen=True)
class RobotsConfig:
    """robots.txt handling limits."""

    max_crawl_delay_ms: int = 200_000
    max_warnings: int = 5
    max_robots_size: int = 128 * 1024
    fetch_timeout: float = 10.0
    use_registered_domain: bool = False


@dataclass(frozen=True)
class Config:
    """Root configuration container."""

    node: NodeConfig = field(default_factory=NodeConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    robots: RobotsConfig = field(default_factory=RobotsConfig)


def _env_override(section: str, key: str) -> str | None:
    """Check for POLITEFETCH_{SECTION}_{KEY} environment variable."""
    env_key = f"POLITEFETCH_{section.upper()}_{key.upper()}"
    return os.environ.get(env_key)


def _coerce(value: str, target_type: type) -> object:
    """Coerce a string value to the target type."""
    if target_type is bool:
        return value.lower() in ("true", "1", "yes")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type in (list, tuple):
        # Env var lists are comma-separated
        return tuple(item.strip() for item in value.split(",") if item.strip())
    return value


# Configuration value constraints
_VALUE_CONSTRAINTS: dict[str, tuple[float, float]] = {
    "max_threads": (1, 1000),
    "max_urls_per_batch": (0, 100_000),
    "crawl_delay_ms": (0, 3_600_000),
    "max_content_size": (1, 1 << 30),
    "max_redirects": (0, 100),
    "max_connections_per_host": (1, 100),
    "timeout": (0.1, 600.0),
    "request_timeout": (0.1, 3600.0),
    "buffer_termination_timeout": (0.0, 3600.0),
    "status_interval": (0.1, 3600.0),
    "queue_log_interval": (1.0, 86_400.0),
    "num_queues_to_log": (0, 10_000),
    "idle_sleep": (0.01, 10.0),
    "max_crawl_delay_ms": (0, 3_600_000),
    "max_warnings": (0, 1000),
    "max_robots_size": (1024, 16 * 1024 * 1024),
    "fetch_timeout": (0.1, 600.0),
}

# Allowed values for string enums
_ALLOWED_VALUES: dict[str, frozenset[str]] = {
    "log_level": frozenset({"debug", "info", "warning", "error", "critical"}),
}


def _validate_value(key: str, value: object) -> object:
    """Validate a config value against known constraints."""
    if (
        key in _VALUE_CONSTRAINTS
        and isinstance(value, (int, float))
        and not isinstance(value, bool)
    ):
        lo, hi = _VALUE_CONSTRAINTS[key]
        if not (lo <= value <= hi):
            logger.warning(
                "config_value_out_of_range",
                key=key,
                value=value,
                min=lo,
                max=hi,
            )
            # Clamp to valid range
            return type(value)(max(lo, min(hi, value)))
    if (
        key in _ALLOWED_VALUES
        and isinstance(value, str)
        and value.lower() not in _ALLOWED_VALUES[key]
    ):
        logger.warning(
            "config_invalid_value",
            key=key,
            value=value,
            allowed=sorted(_ALLOWED_VALUES[key]),
        )
        return None  # Will use default
    return value


T = TypeVar("T")


def _build_section(
    cls: type[T], toml_section: dict[str, object], section_name: str
) -> T:
    """Build a dataclass instance from TOML data + env overrides."""
    kwargs: dict[str, object] = {}
    for f in dataclass_fields(cls):  # type: ignore[arg-type]
        # TOML value
        raw = toml_section.get(f.name)
        # env override
        env_val = _env_override(section_name, f.name)
        if env_val is not None:
            raw = _coerce(env_val, type(f.default))
        if raw is not None:
            if isinstance(f.default, tuple) and isinstance(raw, list):
                raw = tuple(str(v) for v in raw)
            elif isinstance(f.default, float) and isinstance(raw, int):
                raw = float(raw)
            # Validate value against constraints
            validated = _validate_value(f.name, raw)
            if validated is not None:
                kwargs[f.name] = validated
    return cls(**kwargs)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file with environment variable overrides.

    Priority: env vars > config.toml > defaults.

    Args:
        config_path: Path to config file. Defaults to ~/.politefetch/config.toml.

    Returns:
        Populated Config instance.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    raw: dict[str, object] = {}

    if path.exists():
        with open(path, "rb") as f:
            raw = tomllib.load(f)
        logger.info("config_loaded", path=str(path))
    else:
        logger.info("config_default", path=str(path), reason="file not found")

    return Config(
        node=_build_section(NodeConfig, raw.get("node", {}), "node"),  # type: ignore[arg-type]
        fetch=_build_section(FetchConfig, raw.get("fetch", {}), "fetch"),  # type: ignore[arg-type]
        scheduler=_build_section(
            SchedulerConfig,
            raw.get("scheduler", {}),  # type: ignore[arg-type]
            "scheduler",
        ),
        robots=_build_section(RobotsConfig, raw.get("robots", {}), "robots"),  # type: ignore[arg-type]
    )


def config_as_dict(config: Config) -> dict[str, dict[str, object]]:
    """Flatten a Config into ``{section: {key: value}}`` for display."""
    result: dict[str, dict[str, object]] = {}
    for section in dataclass_fields(config):
        section_obj = getattr(config, section.name)
        result[section.name] = {
            f.name: getattr(section_obj, f.name) for f in dataclass_fields(section_obj)
        }
    return result
