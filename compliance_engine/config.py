"""
Configuration and logging setup.

Settings are read from a YAML file shaped like:

    results_interval: 300      # seconds
    findings_interval: 120     # seconds
    bucket_anchor: now         # 'now' or 'epoch'
    strict_filters: false
    database:
      path: compliance_engine/records.db
      timeout: 5.0            # seconds a store query may block
    storage:
      filters_path: compliance_engine/filters.json
    collections:
      results: results
      findings: findings
    logging:
      level: INFO
"""

import logging
import os
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

import yaml

CONFIG_ENV_VAR = 'COMPLIANCE_ENGINE_CONFIG'
BUCKET_ANCHORS = ('now', 'epoch')

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Runtime settings for the compliance engine."""
    results_interval: int = 300
    findings_interval: int = 120
    bucket_anchor: str = 'now'
    strict_filters: bool = False
    database_path: str = 'compliance_engine/records.db'
    store_timeout: Optional[float] = None
    filters_path: str = 'compliance_engine/filters.json'
    results_collection: str = 'results'
    findings_collection: str = 'findings'
    log_level: str = 'INFO'

    def __post_init__(self):
        if self.bucket_anchor not in BUCKET_ANCHORS:
            raise ValueError(
                f"bucket_anchor must be one of {BUCKET_ANCHORS}, got {self.bucket_anchor!r}"
            )
        for name in ('results_interval', 'findings_interval'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive number of seconds")
        if self.store_timeout is not None and self.store_timeout <= 0:
            raise ValueError("store_timeout must be a positive number of seconds")

    @property
    def results_timedelta(self) -> timedelta:
        return timedelta(seconds=self.results_interval)

    @property
    def findings_timedelta(self) -> timedelta:
        return timedelta(seconds=self.findings_interval)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'Settings':
        """Build settings from a parsed configuration mapping."""
        defaults = cls()
        return cls(
            results_interval=int(config.get('results_interval', defaults.results_interval)),
            findings_interval=int(config.get('findings_interval', defaults.findings_interval)),
            bucket_anchor=str(config.get('bucket_anchor', defaults.bucket_anchor)).lower(),
            strict_filters=bool(config.get('strict_filters', defaults.strict_filters)),
            database_path=(config.get('database') or {}).get('path', defaults.database_path),
            store_timeout=_optional_float((config.get('database') or {}).get('timeout')),
            filters_path=(config.get('storage') or {}).get('filters_path', defaults.filters_path),
            results_collection=(config.get('collections') or {}).get('results', defaults.results_collection),
            findings_collection=(config.get('collections') or {}).get('findings', defaults.findings_collection),
            log_level=str((config.get('logging') or {}).get('level', defaults.log_level)).upper(),
        )

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> 'Settings':
        """Load settings from a YAML file.

        Raises:
            OSError: If the file cannot be read
            yaml.YAMLError: If the file is not valid YAML
            ValueError: If a setting is invalid
        """
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config: {e}")
            raise
        if not isinstance(config, dict):
            raise ValueError(f"Configuration in {config_path} must be a mapping")
        logger.info(f"Loaded configuration from {config_path}")
        return cls.from_dict(config)


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from a path, the COMPLIANCE_ENGINE_CONFIG variable, or defaults."""
    path = config_path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        return Settings.from_yaml(path)
    return Settings()


def setup_logging(level: str = 'INFO', debug: bool = False, stream: TextIO = sys.stdout) -> None:
    """Configure root logging.

    Args:
        level: Level name used unless debug is set
        debug: Force DEBUG level
        stream: Where log lines are written; the CLI keeps stdout for JSON output
    """
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(stream)],
    )
