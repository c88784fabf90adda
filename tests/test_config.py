"""Tests for config loading, env overrides and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from vizql_harness.config import (
    DEFAULT_MAX_TOKENS,
    HarnessConfig,
    apply_env_overrides,
    load_config,
    validate_config,
)

_VALID_ENV = {
    "MCP_URL": "https://mcp.example.com/mcp",
    "MCP_AUTH_TOKEN": "tok",
    "LLM_GATEWAY_URL": "https://llm.example.com",
    "ANTHROPIC_AUTH_TOKEN": "key",
}


@pytest.fixture
def yaml_file(tmp_path: Path) -> Path:
    path = tmp_path / "vizql_harness.yaml"
    path.write_text(
        """
tool_service:
  url: http://localhost:3927/mcp
  auth_token: from-yaml
  timeout: 20
  retry:
    max_retries: 5
    initial_delay: 0.5
model:
  gateway_url: http://localhost:8080
  api_key: yaml-key
  max_tokens: 2048
engine:
  max_rounds: 3
  clarify: true
defaults:
  datasource_luid: ds-yaml
  datasource_name: Superstore
bogus_section:
  ignored: true
"""
    )
    return path


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path):
        cfg = load_config(tmp_path / "missing.yaml", environ={})
        assert isinstance(cfg, HarnessConfig)
        assert cfg.engine.max_rounds == 5
        assert cfg.engine.max_query_rows == 1000
        assert cfg.model.max_tokens == DEFAULT_MAX_TOKENS
        assert cfg.tool_service.retry.max_retries == 3

    def test_yaml_values(self, yaml_file: Path):
        cfg = load_config(yaml_file, environ={})
        assert cfg.tool_service.url == "http://localhost:3927/mcp"
        assert cfg.tool_service.timeout == 20
        assert cfg.tool_service.retry.max_retries == 5
        assert cfg.tool_service.retry.initial_delay == 0.5
        assert cfg.tool_service.retry.max_delay == 10.0
        assert cfg.model.max_tokens == 2048
        assert cfg.engine.max_rounds == 3
        assert cfg.engine.clarify is True
        assert cfg.defaults.datasource_name == "Superstore"

    def test_env_wins_over_yaml(self, yaml_file: Path):
        cfg = load_config(yaml_file, environ={"MCP_AUTH_TOKEN": "from-env", "LLM_MODEL": "m2"})
        assert cfg.tool_service.auth_token == "from-env"
        assert cfg.model.model == "m2"

    def test_empty_env_values_ignored(self, yaml_file: Path):
        cfg = load_config(yaml_file, environ={"MCP_AUTH_TOKEN": ""})
        assert cfg.tool_service.auth_token == "from-yaml"


class TestEnvOverrides:
    def test_max_tokens(self):
        cfg = apply_env_overrides(HarnessConfig(), {"LLM_MAX_TOKENS": "4096"})
        assert cfg.model.max_tokens == 4096

    @pytest.mark.parametrize("raw", ["abc", "0", "-5"])
    def test_invalid_max_tokens_keeps_default(self, raw):
        cfg = apply_env_overrides(HarnessConfig(), {"LLM_MAX_TOKENS": raw})
        assert cfg.model.max_tokens == DEFAULT_MAX_TOKENS

    def test_defaults_from_env(self):
        cfg = apply_env_overrides(HarnessConfig(), {
            "DEFAULT_DATASOURCE_LUID": "ds-env",
            "DEFAULT_VIEW_NAME": "Overview",
        })
        assert cfg.defaults.datasource_luid == "ds-env"
        assert cfg.defaults.view_name == "Overview"


class TestValidateConfig:
    def test_valid(self):
        cfg = apply_env_overrides(HarnessConfig(), _VALID_ENV)
        assert validate_config(cfg) == []

    def test_missing_required(self):
        problems = validate_config(HarnessConfig())
        joined = "\n".join(problems)
        assert "MCP_URL is required" in joined
        assert "MCP_AUTH_TOKEN is required" in joined
        assert "LLM_GATEWAY_URL is required" in joined
        assert "ANTHROPIC_AUTH_TOKEN is required" in joined

    def test_bad_url(self):
        cfg = apply_env_overrides(HarnessConfig(), {**_VALID_ENV, "MCP_URL": "ftp://x"})
        assert any("not a valid http(s) URL" in p for p in validate_config(cfg))

    def test_bad_bounds(self):
        cfg = apply_env_overrides(HarnessConfig(), _VALID_ENV)
        cfg.engine.max_rounds = 0
        assert validate_config(cfg) == ["engine.max_rounds must be >= 1"]
