"""設定ローダーのテスト。"""

from __future__ import annotations

from pathlib import Path
import textwrap

import pytest

from llm_collab.errors import ConfigError
from llm_collab.loader import expand_env, load_config, load_config_data, merge_overlay

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _write(path: Path, body: str) -> Path:
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_expand_env_supports_defaults_and_missing_values() -> None:
    environ = {"KEY": "secret"}
    data = {
        "a": "${KEY}",
        "b": "${MISSING:-fallback}",
        "c": ["x-${MISSING}-y"],
        "d": 3,
    }

    assert expand_env(data, environ) == {"a": "secret", "b": "fallback", "c": ["x--y"], "d": 3}


def test_merge_overlay_merges_providers_by_name() -> None:
    base = {
        "providers": [
            {"name": "deepseek", "timeout": 30000, "api_key": "k"},
            {"name": "openai", "enabled": True},
        ],
        "cache": {"ttl": 3600, "max_size": 1000},
    }
    overlay = {
        "providers": [{"name": "deepseek", "timeout": 10000}, {"name": "mock"}],
        "cache": {"ttl": 1800},
    }

    merged = merge_overlay(base, overlay)

    assert merged["providers"] == [
        {"name": "deepseek", "timeout": 10000, "api_key": "k"},
        {"name": "openai", "enabled": True},
        {"name": "mock"},
    ]
    assert merged["cache"] == {"ttl": 1800, "max_size": 1000}


def test_load_config_data_converts_milliseconds() -> None:
    config = load_config_data(
        {
            "providers": [{"name": "mock", "timeout": 1500, "retry": {"base_delay": 250}}],
            "strategies": {"timeout": 45000},
            "performance": {"timeouts": {"provider": 2000}},
            "tools": {"collaborate": {"timeout": 120000, "max_providers": 3}},
        },
        environ={},
    )

    provider = config.providers[0]
    assert provider.id == "mock"
    assert provider.timeout_s == pytest.approx(1.5)
    assert provider.retry.base_delay_s == pytest.approx(0.25)
    assert config.strategies.timeout_s == pytest.approx(45.0)
    assert config.timeouts.provider_s == pytest.approx(2.0)
    assert config.timeouts.total_s is None
    settings = config.tools.settings_for("collaborate")
    assert settings.timeout_s == pytest.approx(120.0)
    assert settings.max_providers == 3
    assert config.tools.settings_for("review").min_reviewers == 1


def test_load_config_data_reports_every_violation() -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config_data(
            {
                "providers": [{"name": "mock", "timeout": 0}],
                "strategies": {"consensus_threshold": 1.5},
                "cache": {"eviction": "random"},
            },
            source="broken.yaml",
            environ={},
        )

    message = str(excinfo.value)
    assert message.startswith("configuration validation failed (broken.yaml):")
    assert "providers.0.timeout" in message
    assert "strategies.consensus_threshold" in message
    assert "cache.eviction" in message


def test_load_config_data_rejects_unknown_leaf_keys_and_duplicates() -> None:
    with pytest.raises(ConfigError, match="Extra inputs are not permitted"):
        load_config_data({"cache": {"ttl": 10, "colour": "blue"}}, environ={})
    with pytest.raises(ConfigError, match="duplicate provider id"):
        load_config_data({"providers": [{"name": "mock"}, {"name": "mock"}]}, environ={})


def test_load_config_data_rejects_bad_quality_weights() -> None:
    with pytest.raises(ConfigError, match="synthesis.weights"):
        load_config_data({"synthesis": {"weights": {"accuracy": 0.5}}}, environ={})


def test_log_level_falls_back_to_server_section() -> None:
    config = load_config_data({"server": {"log_level": "DEBUG"}}, environ={})
    assert config.logging.level == "debug"

    explicit = load_config_data(
        {"server": {"log_level": "debug"}, "logging": {"level": "warning"}}, environ={}
    )
    assert explicit.logging.level == "warning"


def test_load_config_reads_yaml_with_overlay(tmp_path: Path) -> None:
    base = _write(
        tmp_path / "base.yaml",
        """
        server:
          name: demo
          port: 3000
        providers:
          - name: openai
            api_key: ${OPENAI_KEY}
            base_url: https://api.example.com/v1
            timeout: 30000
        search:
          enabled: true
        """,
    )
    overlay = _write(
        tmp_path / "dev.yaml",
        """
        providers:
          - name: openai
            timeout: 5000
        cache:
          max_size: 10
        """,
    )

    config = load_config(base, overlay, environ={"OPENAI_KEY": "sk-test"})

    assert config.server.name == "demo"
    assert config.providers[0].api_key == "sk-test"
    assert config.providers[0].timeout_s == pytest.approx(5.0)
    assert config.cache.max_size == 10
    assert config.path == base


def test_load_config_wraps_yaml_and_io_errors(tmp_path: Path) -> None:
    broken = _write(tmp_path / "broken.yaml", "providers: [unclosed\n")
    listing = _write(tmp_path / "list.yaml", "- a\n- b\n")

    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(broken)
    with pytest.raises(ConfigError, match="not a mapping"):
        load_config(listing)
    with pytest.raises(ConfigError, match="cannot read"):
        load_config(tmp_path / "missing.yaml")


def test_shipped_configuration_files_load() -> None:
    config = load_config(
        CONFIG_DIR / "default.yaml",
        CONFIG_DIR / "development.yaml",
        environ={"DEEPSEEK_API_KEY": "ds", "ANTHROPIC_API_KEY": "an"},
    )

    assert [provider.id for provider in config.enabled_providers()] == ["deepseek", "anthropic"]
    deepseek = config.providers[0]
    assert deepseek.api_key == "ds"
    assert deepseek.base_url == "https://api.deepseek.com"
    assert deepseek.timeout_s == pytest.approx(10.0)
    assert deepseek.max_retries == 1
    assert deepseek.pricing is not None
    assert config.logging.level == "debug"
    assert config.logging.file.enabled
    assert config.strategies.max_iterations == 2
    assert config.synthesis.quality_threshold == pytest.approx(0.5)
    assert config.tools.settings_for("review").require_consensus is False
    assert config.timeouts.total_s == pytest.approx(60.0)
