"""Configuration loader for BusPulse."""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError

API_KEY_ENV = "BUSPULSE_API_KEY"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class DataConfig:
    """Static data and storage locations."""

    stops_path: str
    gtfs_dir: Optional[str] = None
    storage_path: str = "buspulse_store.json"


@dataclass(frozen=True)
class RealtimeConfig:
    """Live arrival feed settings."""

    feed_urls: List[str] = field(default_factory=list)
    api_key: str = ""
    poll_interval_seconds: int = 30
    timeout_seconds: int = 10
    cache_ttl_seconds: int = 30


@dataclass(frozen=True)
class PulseConfig:
    """Arrival history merge and scoring settings."""

    fold_threshold_minutes: int = 5
    damping_factor: float = 3
    day_start_hour: int = 4


@dataclass(frozen=True)
class PlannerConfig:
    """Route planning settings."""

    minutes_per_stop: float = 2.5
    boarding_buffer_minutes: float = 1
    max_workers: int = 4


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    data: DataConfig
    realtime: RealtimeConfig
    pulse: PulseConfig
    planner: PlannerConfig
    log: LoggingConfig


def _require_key(mapping: Dict[str, Any], key: str, context: str) -> Any:
    if key not in mapping:
        raise ConfigurationError(f"Missing required key '{key}' in {context} config")
    return mapping[key]


def _section(data: Dict[str, Any], name: str, required: bool = False) -> Dict[str, Any]:
    if name not in data:
        if required:
            raise ConfigurationError(f"Missing required section '{name}'")
        return {}
    section = data[name]
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"'{name}' config must be a mapping")
    return section


def load_config(path: str = "config/config.yaml") -> AppConfig:
    """Load application configuration from a YAML file."""
    load_dotenv()
    api_key = os.environ.get(API_KEY_ENV, "")
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Config file {path} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError("Config file must contain a mapping at the top level")

    data_section = _section(data, "data", required=True)
    realtime_section = _section(data, "realtime")
    pulse_section = _section(data, "pulse")
    planner_section = _section(data, "planner")
    logging_section = _section(data, "logging")

    feed_urls = realtime_section.get("feed_urls", [])
    if not isinstance(feed_urls, list):
        raise ConfigurationError("'realtime.feed_urls' must be a list")

    data_config = DataConfig(
        stops_path=_require_key(data_section, "stops_path", "data"),
        gtfs_dir=data_section.get("gtfs_dir"),
        storage_path=data_section.get("storage_path", DataConfig.storage_path),
    )

    realtime = RealtimeConfig(
        feed_urls=[str(url) for url in feed_urls],
        api_key=api_key,
        poll_interval_seconds=realtime_section.get("poll_interval_seconds", RealtimeConfig.poll_interval_seconds),
        timeout_seconds=realtime_section.get("timeout_seconds", RealtimeConfig.timeout_seconds),
        cache_ttl_seconds=realtime_section.get("cache_ttl_seconds", RealtimeConfig.cache_ttl_seconds),
    )

    pulse = PulseConfig(
        fold_threshold_minutes=pulse_section.get("fold_threshold_minutes", PulseConfig.fold_threshold_minutes),
        damping_factor=pulse_section.get("damping_factor", PulseConfig.damping_factor),
        day_start_hour=pulse_section.get("day_start_hour", PulseConfig.day_start_hour),
    )

    planner = PlannerConfig(
        minutes_per_stop=planner_section.get("minutes_per_stop", PlannerConfig.minutes_per_stop),
        boarding_buffer_minutes=planner_section.get(
            "boarding_buffer_minutes", PlannerConfig.boarding_buffer_minutes
        ),
        max_workers=planner_section.get("max_workers", PlannerConfig.max_workers),
    )

    log = LoggingConfig(level=str(logging_section.get("level", LoggingConfig.level)).upper())

    return AppConfig(data=data_config, realtime=realtime, pulse=pulse, planner=planner, log=log)


def setup_logging(config: AppConfig) -> None:
    """Configure root logging from the loaded configuration."""
    logging.basicConfig(level=getattr(logging, config.log.level, logging.INFO), format=LOG_FORMAT)
