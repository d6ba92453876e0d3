"""
Configuration management for the web crawler system.
"""

import yaml
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field, fields


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    seed_urls: List[str] = field(default_factory=list)
    max_depth: int = 2
    time_limit: Optional[float] = 60
    max_workers: int = 10
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: Optional[float] = 8.0
    shutdown_grace_period: float = 10
    request_timeout: float = 15
    max_content_bytes: int = 10 * 1024 * 1024
    user_agent: str = "wavecrawl/1.0"
    allowed_domains: List[str] = field(default_factory=list)
    blocked_domains: List[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    metrics_enabled: bool = False
    prometheus_port: int = 8000


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """Build a configuration from parsed YAML, filling in defaults for missing keys."""
        data = data or {}
        unknown = set(data) - {'crawler', 'logging', 'monitoring'}
        if unknown:
            raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

        return cls(
            crawler=_build_section(CrawlerConfig, data.get('crawler')),
            logging=_build_section(LoggingConfig, data.get('logging')),
            monitoring=_build_section(MonitoringConfig, data.get('monitoring'))
        )


def _build_section(section_cls, values: Optional[Dict[str, Any]]):
    values = values or {}
    if not isinstance(values, dict):
        raise ValueError(f"Section for {section_cls.__name__} must be a mapping")
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown keys for {section_cls.__name__}: {sorted(unknown)}")
    return section_cls(**values)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else None
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file, or defaults when no path is set."""
        if self.config_path is None:
            self._config = Config()
        else:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

            with open(self.config_path, 'r') as file:
                config_data = yaml.safe_load(file)

            self._config = Config.from_dict(config_data)

        validate_config(self._config)
        return self._config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config):
    """Validate configuration values."""
    crawler = config.crawler

    if crawler.max_depth < 0:
        raise ValueError("max_depth must be non-negative")

    if crawler.time_limit is not None and crawler.time_limit < 0:
        raise ValueError("time_limit must be non-negative")

    if crawler.max_workers < 1:
        raise ValueError("max_workers must be at least 1")

    if crawler.retry_attempts < 1:
        raise ValueError("retry_attempts must be at least 1")

    if crawler.retry_base_delay < 0:
        raise ValueError("retry_base_delay must be non-negative")

    if crawler.retry_max_delay is not None and crawler.retry_max_delay < 0:
        raise ValueError("retry_max_delay must be non-negative")

    if crawler.shutdown_grace_period < 0:
        raise ValueError("shutdown_grace_period must be non-negative")

    if crawler.request_timeout <= 0:
        raise ValueError("request_timeout must be positive")

    if crawler.max_content_bytes <= 0:
        raise ValueError("max_content_bytes must be positive")

    if config.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
        raise ValueError(f"Invalid logging level: {config.logging.level}")

    logging.getLogger(__name__).debug("Configuration validation passed")


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
