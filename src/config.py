"""Configuration: frozen dataclass built from defaults, optional YAML and env vars.

Precedence (lowest to highest): dataclass defaults, the YAML file named by
``CONFIG_PATH``, then environment variables.
"""

import copy
import logging
import os
from dataclasses import dataclass, field, fields
from types import MappingProxyType

import yaml

from src.models import Category

logger = logging.getLogger(__name__)


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _all_enabled() -> dict:
    return {c.value: True for c in Category}


@dataclass(frozen=True)
class Config:
    log_dir: str = "./logs"
    local_store_enabled: bool = True
    archive_enabled: bool = False
    category_enabled: dict = field(default_factory=_all_enabled)

    max_bytes: int = 5 * 1024 * 1024
    rollover_bytes: int = 1024 * 1024

    duplicate_window_seconds: int = 300
    duplicate_confidence: float = 0.5
    similar_window_ms: int = 60_000

    max_parallel_connections: int = 8
    lookback_days: int = 7
    default_query_entries: int = 50
    max_query_entries: int = 500
    partition_refresh_hours: float = 12
    search_timeout_seconds: float = 20
    decode_warn_ratio: float = 0.2

    archive_backend: str = "file"
    archive_dir: str = "./archive"
    archive_bucket: str = ""
    archive_prefix: str = "logs/"
    archive_max_retries: int = 3

    query_backend: str = "local"
    athena_database: str = "circle_logs"
    athena_table: str = "entries"
    athena_output_location: str = ""

    trace_depth: int = 8
    clock_skew_ms: int = 300_000

    whole_match_weight: int = 100
    substring_weight: int = 10
    substring_cap: int = 50
    word_weight: int = 3
    word_cap: int = 30

    def __post_init__(self):
        object.__setattr__(self, "category_enabled", MappingProxyType(dict(self.category_enabled)))

    def is_enabled(self, category: Category) -> bool:
        return bool(self.category_enabled.get(category.value, True))

    @property
    def duplicate_window_ms(self) -> int:
        return int(self.duplicate_window_seconds * 1000)

    @property
    def archive_location(self) -> str:
        """Base location of the archive as the query engine sees it."""
        if self.archive_backend == "s3":
            return f"s3://{self.archive_bucket}/{self.archive_prefix}"
        return os.path.abspath(self.archive_dir)


# env var -> (field name, converter)
_ENV_FIELDS = {
    "LOG_DIR": ("log_dir", str),
    "LOCAL_STORE_ENABLED": ("local_store_enabled", _parse_bool),
    "ARCHIVE_ENABLED": ("archive_enabled", _parse_bool),
    "ROTATION_MAX_BYTES": ("max_bytes", int),
    "ROLLOVER_BYTES": ("rollover_bytes", int),
    "DUPLICATE_WINDOW_SECONDS": ("duplicate_window_seconds", int),
    "DUPLICATE_CONFIDENCE": ("duplicate_confidence", float),
    "SIMILAR_WINDOW_MS": ("similar_window_ms", int),
    "MAX_PARALLEL_CONNECTIONS": ("max_parallel_connections", int),
    "SEARCH_LOOKBACK_DAYS": ("lookback_days", int),
    "DEFAULT_QUERY_ENTRIES": ("default_query_entries", int),
    "MAX_QUERY_ENTRIES": ("max_query_entries", int),
    "PARTITION_REFRESH_HOURS": ("partition_refresh_hours", float),
    "SEARCH_TIMEOUT_SECONDS": ("search_timeout_seconds", float),
    "DECODE_WARN_RATIO": ("decode_warn_ratio", float),
    "ARCHIVE_BACKEND": ("archive_backend", str),
    "ARCHIVE_DIR": ("archive_dir", str),
    "ARCHIVE_BUCKET": ("archive_bucket", str),
    "ARCHIVE_PREFIX": ("archive_prefix", str),
    "ARCHIVE_MAX_RETRIES": ("archive_max_retries", int),
    "QUERY_BACKEND": ("query_backend", str),
    "ATHENA_DATABASE": ("athena_database", str),
    "ATHENA_TABLE": ("athena_table", str),
    "ATHENA_OUTPUT_LOCATION": ("athena_output_location", str),
    "TRACE_DEPTH": ("trace_depth", int),
    "CLOCK_SKEW_MS": ("clock_skew_ms", int),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override dict into base dict."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def load_yaml_config(path: str | None) -> dict:
    """Load overrides from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError:
        logger.warning("Invalid YAML in %s, using defaults", path)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping, using defaults", path)
        return {}
    logger.info("Loaded YAML config from %s", path)
    return data


def load_config(env=None) -> Config:
    """Build Config from the optional YAML file and environment variables."""
    env = os.environ if env is None else env
    known = {f.name for f in fields(Config)}

    values = {"category_enabled": _all_enabled()}
    for key, value in load_yaml_config(env.get("CONFIG_PATH")).items():
        if key not in known:
            logger.warning("Ignoring unknown config key %r", key)
            continue
        if key == "category_enabled" and isinstance(value, dict):
            upper = {str(k).upper(): _parse_bool(v) for k, v in value.items()}
            values[key] = _deep_merge(values[key], upper)
        else:
            values[key] = value

    for var, (name, convert) in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw is not None:
            values[name] = convert(raw)

    for category in Category:
        raw = env.get(f"LOG_{category.value}_ENABLED")
        if raw is not None:
            values["category_enabled"][category.value] = _parse_bool(raw)

    return Config(**values)
