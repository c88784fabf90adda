"""Configuration for vizql-harness.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./vizql_harness.yaml``
  3. ``~/.config/vizql-harness/config.yaml``
  4. Built-in defaults

Environment variables are applied on top of whatever was loaded.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml

_logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_TOKENS = 1024


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class RetrySpec:
    """Exponential backoff settings for the tool service (seconds)."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0


@dataclass
class ToolServiceSpec:
    """Connection settings for the remote tool-execution service."""

    url: str = ""
    auth_token: str = ""
    timeout: float = 10.0
    client_name: str = "vizql-harness"
    client_version: str = "0.1.0"
    protocol_version: str = "2024-11-05"
    retry: RetrySpec = field(default_factory=RetrySpec)


@dataclass
class ModelSpec:
    """Connection settings for the model gateway."""

    gateway_url: str = ""
    api_key: str = ""
    model: str = DEFAULT_MODEL
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float | None = None
    timeout: float = 90.0
    anthropic_version: str = "2023-06-01"


@dataclass
class EngineSpec:
    """Orchestration loop bounds and policies.

    ``clarify_time_range`` enables the pre-flight "missing time range /
    granularity" questions.  Off by default: the model infers temporal
    scope from datasource metadata instead.
    """

    max_rounds: int = 5
    max_query_rows: int = 1000
    max_result_bytes: int = 100_000
    history_limit: int = 10
    clarify: bool = False
    clarify_time_range: bool = False


@dataclass
class DefaultsSpec:
    """Default selection used when the caller does not pin a resource."""

    datasource_luid: str | None = None
    datasource_name: str | None = None
    workbook_id: str | None = None
    workbook_name: str | None = None
    view_id: str | None = None
    view_name: str | None = None


@dataclass
class HarnessConfig:
    """Top-level config for vizql-harness."""

    tool_service: ToolServiceSpec = field(default_factory=ToolServiceSpec)
    model: ModelSpec = field(default_factory=ModelSpec)
    engine: EngineSpec = field(default_factory=EngineSpec)
    defaults: DefaultsSpec = field(default_factory=DefaultsSpec)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./vizql_harness.yaml"),
    Path.home() / ".config" / "vizql-harness" / "config.yaml",
]

# env var -> (section, field)
_ENV_MAP: dict[str, tuple[str, str]] = {
    "MCP_URL": ("tool_service", "url"),
    "MCP_AUTH_TOKEN": ("tool_service", "auth_token"),
    "LLM_GATEWAY_URL": ("model", "gateway_url"),
    "ANTHROPIC_AUTH_TOKEN": ("model", "api_key"),
    "LLM_MODEL": ("model", "model"),
    "DEFAULT_DATASOURCE_LUID": ("defaults", "datasource_luid"),
    "DEFAULT_DATASOURCE_NAME": ("defaults", "datasource_name"),
    "DEFAULT_WORKBOOK_ID": ("defaults", "workbook_id"),
    "DEFAULT_WORKBOOK_NAME": ("defaults", "workbook_name"),
    "DEFAULT_VIEW_ID": ("defaults", "view_id"),
    "DEFAULT_VIEW_NAME": ("defaults", "view_name"),
}


def _build(cls: type, raw: dict[str, Any] | None) -> Any:
    """Instantiate a spec dataclass from a raw mapping, ignoring unknown keys."""
    if not raw:
        return cls()
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in raw.items() if k in known and v is not None}
    unknown = set(raw) - known
    if unknown:
        _logger.warning(
            "Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)),
        )
    return cls(**kwargs)


def _parse_tool_service(raw: dict[str, Any] | None) -> ToolServiceSpec:
    raw = dict(raw or {})
    retry = _build(RetrySpec, raw.pop("retry", None))
    spec = _build(ToolServiceSpec, raw)
    spec.retry = retry
    return spec


def _parse_max_tokens(value: str) -> int | None:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 1 else None


def apply_env_overrides(
    config: HarnessConfig,
    environ: Mapping[str, str] | None = None,
) -> HarnessConfig:
    """Overlay recognised environment variables onto *config* in place."""
    env = os.environ if environ is None else environ

    for var, (section, attr) in _ENV_MAP.items():
        value = env.get(var)
        if value:
            setattr(getattr(config, section), attr, value)

    raw_tokens = env.get("LLM_MAX_TOKENS")
    if raw_tokens:
        parsed = _parse_max_tokens(raw_tokens)
        if parsed is None:
            _logger.warning(
                "Invalid LLM_MAX_TOKENS=%r (must be an integer >= 1); keeping %d",
                raw_tokens, config.model.max_tokens,
            )
        else:
            config.model.max_tokens = parsed

    return config


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> HarnessConfig:
    """Load configuration from YAML, then apply environment overrides.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.
    environ:
        Environment mapping (defaults to ``os.environ``).

    Returns
    -------
    HarnessConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return apply_env_overrides(HarnessConfig(), environ)
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return apply_env_overrides(HarnessConfig(), environ)

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = HarnessConfig(
        tool_service=_parse_tool_service(raw.get("tool_service")),
        model=_build(ModelSpec, raw.get("model")),
        engine=_build(EngineSpec, raw.get("engine")),
        defaults=_build(DefaultsSpec, raw.get("defaults")),
    )
    return apply_env_overrides(config, environ)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_config(config: HarnessConfig) -> list[str]:
    """Return a list of configuration problems (empty when usable)."""
    problems: list[str] = []

    if not config.tool_service.url:
        problems.append("MCP_URL is required (tool_service.url)")
    elif not _is_http_url(config.tool_service.url):
        problems.append(f"MCP_URL is not a valid http(s) URL: {config.tool_service.url}")
    if not config.tool_service.auth_token:
        problems.append("MCP_AUTH_TOKEN is required (tool_service.auth_token)")

    if not config.model.gateway_url:
        problems.append("LLM_GATEWAY_URL is required (model.gateway_url)")
    elif not _is_http_url(config.model.gateway_url):
        problems.append(
            f"LLM_GATEWAY_URL is not a valid http(s) URL: {config.model.gateway_url}"
        )
    if not config.model.api_key:
        problems.append("ANTHROPIC_AUTH_TOKEN is required (model.api_key)")

    if config.model.max_tokens < 1:
        problems.append("model.max_tokens must be >= 1")
    if config.engine.max_rounds < 1:
        problems.append("engine.max_rounds must be >= 1")
    if config.tool_service.retry.max_retries < 0:
        problems.append("tool_service.retry.max_retries must be >= 0")

    return problems
