#!/usr/bin/env python3
"""
Configuration loading for the sentiment pipeline

YAML config merged over DEFAULT_CONFIG. DataForSEO credentials may also come
from the environment (DATAFORSEO_LOGIN / DATAFORSEO_PASSWORD), which wins
over the file so secrets can stay out of it.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Fatal configuration problem - the run must stop"""


DEFAULT_CONFIG: Dict[str, Any] = {
    'dataforseo': {
        'login': '',
        'password': '',
        'base_url': 'https://api.dataforseo.com/v3',
        'language_code': 'en',
        'location_code': 2840,  # United States
        'device': 'desktop',
        'os': 'windows',
        'timeout_seconds': 30,
        'cost_per_request': 0.0006,
    },
    'search': {
        'readiness': 'sleep',  # 'sleep' or 'poll'
        'wait_seconds': 5,
        'poll_interval_seconds': 2,
        'fetch_attempts': 3,
        'fetch_backoff_seconds': 5,
    },
    'queue': {
        'queue_path': 'data/sentiment_queue.json',
        'failure_log_path': 'data/sentiment_failures.json',
        'max_retries': 3,
        'rate_limit_seconds': 2,
    },
    'catalog': {
        'database_path': 'data/catalog.sqlite3',
        'cooldown_days': 30,
        'claim_ttl_seconds': 900,
    },
    'budget': {
        'max_items_per_run': None,
        'max_runtime_minutes': None,
        'max_cost': None,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'max_bytes': 10485760,
        'backup_count': 5,
    },
}

ENV_OVERRIDES = {
    'DATAFORSEO_LOGIN': ('dataforseo', 'login'),
    'DATAFORSEO_PASSWORD': ('dataforseo', 'password'),
}


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_dict(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML file

    A missing file is not fatal (defaults + environment are enough for a
    dry run); malformed YAML is.
    """
    file_config: Dict[str, Any] = {}
    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        file_config = loaded
    else:
        logger.warning(f"Config file not found: {config_path} - using defaults")

    config = merge_dict(DEFAULT_CONFIG, file_config)

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config[section][key] = value

    return config


def require_credentials(config: Dict[str, Any]):
    """Raise ConfigurationError unless both DataForSEO credentials are set"""
    section = config.get('dataforseo') or {}
    missing = [key for key in ('login', 'password') if not str(section.get(key) or '').strip()]
    if missing:
        raise ConfigurationError(
            f"Missing DataForSEO credentials: {', '.join(missing)} "
            f"(set them in the config file or DATAFORSEO_LOGIN / DATAFORSEO_PASSWORD)"
        )
