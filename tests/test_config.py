"""Tests for runtime configuration."""

import pytest

from llmloop.adapters.anthropic_adapter import AnthropicAdapter
from llmloop.adapters.fallback import FallbackProvider
from llmloop.adapters.openai_adapter import OpenAIAdapter
from llmloop.config import ProviderConfig, RuntimeConfig, create_adapter
from llmloop.exceptions import ConfigError
from llmloop.models import EndpointType
from llmloop.tools import ToolMode

CONFIG_YAML = """
default_provider: local
providers:
  local:
    endpoint_type: local
    model: llama3.1:8b
    fallback: cloud
  cloud:
    model: gpt-4o-mini
    api_key_env: TEST_OPENAI_KEY
  claude:
    endpoint_type: anthropic
    model: claude-sonnet-4
    api_key: sk-ant-inline-key
    enabled: false
agent:
  max_turns: 10
  system_prompt: You are a careful assistant.
retry:
  max_retries: 2
  base_delay_ms: 500
circuit_breaker:
  failure_threshold: 3
  cooldown: 30
tool_mode: read_only
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "llmloop.yaml"
    path.write_text(CONFIG_YAML)
    return path


# ---------------------------------------------------------------------------
# ProviderConfig
# ---------------------------------------------------------------------------


class TestProviderConfig:
    def test_endpoint_type_coerced(self):
        provider = ProviderConfig(name="x", model="m", endpoint_type="anthropic")
        assert provider.endpoint_type == EndpointType.ANTHROPIC

    def test_unknown_endpoint_type(self):
        with pytest.raises(ConfigError, match="unknown endpoint_type"):
            ProviderConfig(name="x", model="m", endpoint_type="carrier-pigeon")

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("MY_KEY", "sk-from-env-123456")
        provider = ProviderConfig(name="x", model="m", api_key_env="MY_KEY")
        assert provider.api_key == "sk-from-env-123456"

    def test_api_key_kept_out_of_repr_and_dict(self):
        provider = ProviderConfig(name="x", model="m", api_key="sk-secret-value")
        assert "sk-secret-value" not in repr(provider)
        assert "api_key" not in provider.to_dict()

    def test_default_base_urls(self):
        assert ProviderConfig(name="a", model="m").resolved_base_url.startswith("https://")
        local = ProviderConfig(name="l", model="m", endpoint_type="local")
        assert local.resolved_base_url == "http://localhost:11434"
        custom = ProviderConfig(name="c", model="m", base_url="http://gpu-box:8000/")
        assert custom.resolved_base_url == "http://gpu-box:8000"

    def test_custom_requires_base_url(self):
        with pytest.raises(ConfigError, match="base_url is required"):
            ProviderConfig(name="c", model="m", endpoint_type="custom").validate()

    def test_model_required(self):
        with pytest.raises(ConfigError, match="model is required"):
            ProviderConfig(name="c").validate()


class TestCreateAdapter:
    def test_openai(self):
        adapter = create_adapter(ProviderConfig(name="cloud", model="gpt-4o", api_key="k"))
        assert isinstance(adapter, OpenAIAdapter)
        assert adapter.name == "cloud"
        assert adapter.profile.name == "openai"

    def test_local_defaults_to_ollama_profile(self):
        adapter = create_adapter(ProviderConfig(name="box", model="llama3", endpoint_type="local"))
        assert isinstance(adapter, OpenAIAdapter)
        assert adapter.profile.name == "ollama"
        assert adapter.base_url == "http://localhost:11434"

    def test_explicit_profile(self):
        adapter = create_adapter(
            ProviderConfig(name="ds", model="deepseek-reasoner", profile="deepseek")
        )
        assert adapter.profile.name == "deepseek"

    def test_anthropic(self):
        adapter = create_adapter(
            ProviderConfig(
                name="claude",
                model="claude-sonnet-4",
                endpoint_type="anthropic",
                api_version="2024-01-01",
            )
        )
        assert isinstance(adapter, AnthropicAdapter)
        assert adapter.api_version == "2024-01-01"

    def test_invalid_api_mode(self):
        with pytest.raises(ConfigError, match="api_mode"):
            create_adapter(ProviderConfig(name="x", model="m", api_mode="batch"))


# ---------------------------------------------------------------------------
# RuntimeConfig
# ---------------------------------------------------------------------------


class TestRuntimeConfig:
    def test_from_yaml(self, config_file, monkeypatch):
        monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test-abcdefgh")
        config = RuntimeConfig.from_yaml(config_file)

        assert config.default_provider == "local"
        assert set(config.providers) == {"local", "cloud", "claude"}
        assert config.providers["cloud"].api_key == "sk-test-abcdefgh"
        assert config.agent.max_turns == 10
        assert config.agent.system_prompt == "You are a careful assistant."
        assert config.retry.max_retries == 2
        assert config.retry.base_delay_ms == 500
        assert config.failure_threshold == 3
        assert config.cooldown == 30
        assert config.tool_mode == ToolMode.READ_ONLY

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            RuntimeConfig.from_yaml(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("providers: [unclosed")
        with pytest.raises(ConfigError, match="invalid YAML"):
            RuntimeConfig.from_yaml(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config = RuntimeConfig.from_yaml(path)
        assert config.providers == {}
        assert config.default_provider is None

    def test_unknown_agent_setting(self):
        with pytest.raises(ConfigError, match="unknown agent setting"):
            RuntimeConfig.from_dict({"agent": {"max_turnz": 3}})

    def test_unknown_tool_mode(self):
        with pytest.raises(ConfigError, match="unknown tool_mode"):
            RuntimeConfig.from_dict({"tool_mode": "god_mode"})

    def test_first_provider_is_default(self):
        config = RuntimeConfig.from_dict({"providers": {"b": {"model": "x"}, "a": {"model": "y"}}})
        assert config.default_provider == "b"

    def test_env_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv("LLMLOOP_PROVIDER", "cloud")
        monkeypatch.setenv("LLMLOOP_TOOL_MODE", "full")
        monkeypatch.setenv("LLMLOOP_MAX_TURNS", "4")
        monkeypatch.setenv("LLMLOOP_LOG_LEVEL", "DEBUG")
        config = RuntimeConfig.from_yaml(config_file)

        assert config.default_provider == "cloud"
        assert config.tool_mode == ToolMode.FULL
        assert config.agent.max_turns == 4
        assert config.agent.system_prompt == "You are a careful assistant."
        assert config.log_level == "DEBUG"

    def test_bad_max_turns_env(self, monkeypatch):
        monkeypatch.setenv("LLMLOOP_MAX_TURNS", "many")
        with pytest.raises(ConfigError, match="must be an integer"):
            RuntimeConfig()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LLMLOOP_MODEL", "qwen2.5")
        monkeypatch.setenv("LLMLOOP_ENDPOINT_TYPE", "local")
        monkeypatch.setenv("LLMLOOP_PROFILE", "vllm")
        config = RuntimeConfig.from_env()

        provider = config.get_provider()
        assert provider.name == "default"
        assert provider.model == "qwen2.5"
        assert provider.endpoint_type == EndpointType.LOCAL
        assert create_adapter(provider).profile.name == "vllm"

    def test_from_env_requires_model(self):
        with pytest.raises(ConfigError, match="LLMLOOP_MODEL"):
            RuntimeConfig.from_env()

    def test_get_provider_errors(self, config_file):
        config = RuntimeConfig.from_yaml(config_file)
        with pytest.raises(ConfigError, match="unknown provider 'ghost'"):
            config.get_provider("ghost")
        with pytest.raises(ConfigError, match="disabled"):
            config.get_provider("claude")
        with pytest.raises(ConfigError, match="no provider configured"):
            RuntimeConfig().get_provider()

    def test_build_provider_with_fallback(self, config_file):
        config = RuntimeConfig.from_yaml(config_file)
        provider = config.build_provider()

        assert isinstance(provider, FallbackProvider)
        assert provider.primary.name == "local"
        assert provider.fallback.name == "cloud"
        assert provider.name == "local+cloud"

    def test_build_provider_without_fallback(self, config_file):
        provider = RuntimeConfig.from_yaml(config_file).build_provider("cloud")
        assert isinstance(provider, OpenAIAdapter)

    def test_self_fallback_rejected(self):
        config = RuntimeConfig.from_dict(
            {"providers": {"a": {"model": "m", "fallback": "a"}}}
        )
        with pytest.raises(ConfigError, match="itself"):
            config.build_provider()

    def test_create_breakers(self, config_file):
        breakers = RuntimeConfig.from_yaml(config_file).create_breakers()
        breaker = breakers.get("local")
        assert breaker.failure_threshold == 3
        assert breaker.cooldown == 30
