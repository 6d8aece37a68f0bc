import copy
import logging
import os
from typing import Any, Dict

import yaml

from analysis.cache import DAILY_TTL_SECONDS, FUNDAMENTALS_TTL_SECONDS, INTRADAY_TTL_SECONDS
from analysis.structure_scorer import DEFAULT_SCORING_CONFIG, DEFAULT_VERSION, merge_config

logger = logging.getLogger(__name__)

CONFIG_PATH = "config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "log_level": "INFO",
    "default_resolution": "1d",
    "source_preference": None,
    "fetch_timeout_seconds": 15,
    "csv_dir": "data",
    "symbol_rate_limit_seconds": 1,
    "scoring": {
        "api_version": DEFAULT_VERSION,
        **copy.deepcopy(DEFAULT_SCORING_CONFIG),
    },
    "scan": {
        "concurrency": 5,
        "max_retries": 3,
        "initial_backoff_seconds": 1.0,
        "batch_delay_seconds": 0.2,
        "default_top_n": 10,
        "history_days": 730,
    },
    "cache": {
        "daily_ttl_seconds": DAILY_TTL_SECONDS,
        "intraday_ttl_seconds": INTRADAY_TTL_SECONDS,
        "fundamentals_ttl_seconds": FUNDAMENTALS_TTL_SECONDS,
    },
}


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            logger.warning(f"Ignoring non-integer {env_key}={env_val!r}")
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            logger.warning(f"Ignoring non-numeric {env_key}={env_val!r}")
            return value
    return env_val


def load_config(path: str = CONFIG_PATH) -> Dict[str, Any]:
    """
    Loads config.yaml over DEFAULT_CONFIG, then applies environment overrides.
    A missing or unparsable file falls back to the defaults.
    """
    user_config: Dict[str, Any] = {}
    try:
        with open(path, 'r') as f:
            user_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(f"{path} not found. Using default configuration values.")
    except yaml.YAMLError as e:
        logger.error(f"Error loading {path}: {e}. Using default configuration values.")

    if not isinstance(user_config, dict):
        logger.error(f"{path} does not contain a mapping. Using default configuration values.")
        user_config = {}

    config = merge_config(DEFAULT_CONFIG, user_config)
    config["log_level"] = _env_override(config["log_level"], "WAVE_SCREENER_LOG_LEVEL")
    config["scan"]["concurrency"] = _env_override(config["scan"]["concurrency"], "WAVE_SCREENER_CONCURRENCY")
    config["scan"]["max_retries"] = _env_override(config["scan"]["max_retries"], "WAVE_SCREENER_MAX_RETRIES")
    return config
