"""Runtime configuration for the API server and the CLI.

Settings come from the first YAML file found among:

1. the ``--config`` path
2. ./fulfillment.yaml or ./fulfillment.yml
3. ~/.fulfillment/config.yaml

``${NAME}`` inside any YAML string is replaced from the environment, and
FULFILLMENT_<SECTION>_<KEY> variables win over the file. With no file at
all the defaults below apply, still subject to the env overrides.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

_ENV_REFERENCE = re.compile(r"\$\{([^}]+)\}")
_OVERRIDE_PREFIX = "FULFILLMENT_"
_LOCAL_NAMES = ("fulfillment.yaml", "fulfillment.yml")
_USER_NAMES = ("config.yaml", "config.yml")


def resolve_env_vars(value: str) -> str:
    """Expand ``${NAME}`` references; unset names expand to ""."""
    return _ENV_REFERENCE.sub(lambda m: os.environ.get(m.group(1), ""), value)


def _expand(node: Any) -> Any:
    if isinstance(node, str):
        return resolve_env_vars(node)
    if isinstance(node, dict):
        return {key: _expand(item) for key, item in node.items()}
    if isinstance(node, list):
        return [_expand(item) for item in node]
    return node


class DaemonConfig(BaseModel):
    """Configuration for the HTTP server process."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"


class IngestionConfig(BaseModel):
    """Defaults applied while normalizing inbound events."""

    default_provider: str = "unknown"
    email_excerpt_chars: int = 200

    @field_validator("email_excerpt_chars")
    @classmethod
    def excerpt_positive(cls, value: int) -> int:
        """Excerpt length must leave room for some text."""
        if value <= 0:
            raise ValueError("email_excerpt_chars must be positive")
        return value


class AnalyticsConfig(BaseModel):
    """Courier performance computation settings."""

    window_days: int = 30
    on_time_hours: float = 72.0

    @field_validator("window_days")
    @classmethod
    def window_positive(cls, value: int) -> int:
        """Window must cover at least one day."""
        if value < 1:
            raise ValueError("window_days must be at least 1")
        return value


class MappingCacheConfig(BaseModel):
    """Status mapping cache settings."""

    enabled: bool = True
    ttl_seconds: int = 60


class FulfillmentConfig(BaseModel):
    """Top-level configuration for the fulfillment tracking engine."""

    daemon: DaemonConfig = DaemonConfig()
    ingestion: IngestionConfig = IngestionConfig()
    analytics: AnalyticsConfig = AnalyticsConfig()
    mapping_cache: MappingCacheConfig = MappingCacheConfig()

    def apply_runtime_env(self) -> None:
        """Export settings read by modules that consult the environment."""
        os.environ.setdefault(
            "STATUS_MAPPING_CACHE_ENABLED", "true" if self.mapping_cache.enabled else "false"
        )
        os.environ.setdefault(
            "STATUS_MAPPING_CACHE_TTL_SECONDS", str(self.mapping_cache.ttl_seconds)
        )


def _find_config_file() -> Path | None:
    """First existing file: the working directory, then ~/.fulfillment."""
    user_dir = Path.home() / ".fulfillment"
    candidates = [Path.cwd() / name for name in _LOCAL_NAMES]
    candidates += [user_dir / name for name in _USER_NAMES]
    return next((path for path in candidates if path.exists()), None)


def _coerce(raw: str) -> int | bool | str:
    try:
        return int(raw)
    except ValueError:
        pass
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    return raw


def _split_override(name: str, sections: list[str]) -> tuple[str, str] | None:
    """Map FULFILLMENT_MAPPING_CACHE_TTL_SECONDS to (mapping_cache, ttl_seconds).

    Sections are tried longest first so ``mapping_cache`` is not read as
    a ``mapping`` section with a ``cache_ttl_seconds`` key.
    """
    suffix = name[len(_OVERRIDE_PREFIX):].lower()
    for section in sections:
        head = f"{section}_"
        if suffix.startswith(head) and len(suffix) > len(head):
            return section, suffix[len(head):]
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay FULFILLMENT_<SECTION>_<KEY> variables onto parsed config."""
    sections = sorted(FulfillmentConfig.model_fields, key=len, reverse=True)
    for name, raw in os.environ.items():
        if not name.startswith(_OVERRIDE_PREFIX):
            continue
        target = _split_override(name, sections)
        if target is None:
            continue
        section, key = target
        values = data.get(section)
        if values is None:
            values = data[section] = {}
        if isinstance(values, dict):
            values[key] = _coerce(raw)
    return data


def load_config(config_path: str | None = None) -> FulfillmentConfig | None:
    """Parse and validate the config file.

    Returns None when no path is given and none of the search paths
    exist.

    Raises:
        FileNotFoundError: ``config_path`` was given but is missing.
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()
        if path is None:
            return None

    logger.info("config_loaded path=%s", path)
    raw = yaml.safe_load(path.read_text()) or {}
    return FulfillmentConfig(**_apply_env_overrides(_expand(raw)))


def get_config(config_path: str | None = None) -> FulfillmentConfig:
    """Load configuration, falling back to defaults plus env overrides."""
    config = load_config(config_path)
    if config is None:
        config = FulfillmentConfig(**_apply_env_overrides({}))
    return config
