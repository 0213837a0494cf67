"""
llmloop - Runtime configuration.

Configuration comes from a YAML file, a plain dict, or environment
variables. Environment variables override file values:

    LLMLOOP_PROVIDER        default provider name
    LLMLOOP_MODEL           model id (from_env only)
    LLMLOOP_BASE_URL        endpoint root (from_env only)
    LLMLOOP_API_KEY         credential (from_env only)
    LLMLOOP_ENDPOINT_TYPE   openai | anthropic | local | custom (from_env only)
    LLMLOOP_PROFILE         compatibility profile name (from_env only)
    LLMLOOP_TOOL_MODE       read_only | full
    LLMLOOP_MAX_TURNS       agent turn limit
    LLMLOOP_LOG_LEVEL       logging level

Example file:

    default_provider: local
    providers:
      local:
        endpoint_type: local
        model: llama3.1:8b
        profile: ollama
        fallback: openai
      openai:
        model: gpt-4o-mini
        api_key_env: OPENAI_API_KEY
    agent:
      max_turns: 10
      system_prompt: You are a careful assistant.
    retry:
      max_retries: 2
    circuit_breaker:
      failure_threshold: 3
      cooldown: 30
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml  # type: ignore[import-untyped]

from .adapters.anthropic_adapter import DEFAULT_ANTHROPIC_URL, AnthropicAdapter
from .adapters.base import AdapterConfig, ProviderAdapter
from .adapters.fallback import FallbackProvider
from .adapters.local_probe import DEFAULT_LOCAL_ENDPOINT
from .adapters.openai_adapter import DEFAULT_OPENAI_URL, OpenAIAdapter
from .agent import AgentConfig
from .exceptions import ConfigError
from .models import EndpointType
from .resilience import (
    DEFAULT_COOLDOWN,
    DEFAULT_FAILURE_THRESHOLD,
    CircuitBreakerRegistry,
    RetryPolicy,
)
from .tools import ToolMode

_DEFAULT_BASE_URLS = {
    EndpointType.OPENAI: DEFAULT_OPENAI_URL,
    EndpointType.ANTHROPIC: DEFAULT_ANTHROPIC_URL,
    EndpointType.LOCAL: DEFAULT_LOCAL_ENDPOINT,
}

_AGENT_FIELDS = {f.name for f in dataclasses.fields(AgentConfig)}


def _endpoint_type(value: Any) -> EndpointType:
    try:
        return EndpointType(value)
    except ValueError:
        allowed = ", ".join(e.value for e in EndpointType)
        raise ConfigError(f"unknown endpoint_type '{value}' (expected one of: {allowed})")


def _tool_mode(value: Any) -> ToolMode:
    try:
        return ToolMode(value)
    except ValueError:
        raise ConfigError(f"unknown tool_mode '{value}' (expected read_only or full)")


@dataclass
class ProviderConfig:
    """One configured LLM backend."""

    name: str
    model: str = ""
    endpoint_type: EndpointType = EndpointType.OPENAI
    base_url: Optional[str] = None
    api_key: Optional[str] = field(default=None, repr=False)
    api_key_env: Optional[str] = None
    profile: Optional[str] = None
    api_mode: str = "chat"
    api_version: Optional[str] = None
    fallback: Optional[str] = None
    enabled: bool = True

    def __post_init__(self):
        if not isinstance(self.endpoint_type, EndpointType):
            self.endpoint_type = _endpoint_type(self.endpoint_type)
        if self.api_key is None and self.api_key_env:
            self.api_key = os.environ.get(self.api_key_env)

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        default = _DEFAULT_BASE_URLS.get(self.endpoint_type)
        if default is None:
            raise ConfigError(f"provider '{self.name}': base_url is required for custom endpoints")
        return default

    def validate(self) -> None:
        if not self.model:
            raise ConfigError(f"provider '{self.name}': model is required")
        self.resolved_base_url

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "ProviderConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"provider '{name}' must be a mapping")
        return cls(
            name=name,
            model=str(data.get("model", "")),
            endpoint_type=data.get("endpoint_type", EndpointType.OPENAI.value),
            base_url=data.get("base_url"),
            api_key=data.get("api_key"),
            api_key_env=data.get("api_key_env"),
            profile=data.get("profile"),
            api_mode=data.get("api_mode", "chat"),
            api_version=data.get("api_version"),
            fallback=data.get("fallback"),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serializable form. The resolved credential is never included."""
        return {
            "model": self.model,
            "endpoint_type": self.endpoint_type.value,
            "base_url": self.base_url,
            "api_key_env": self.api_key_env,
            "profile": self.profile,
            "api_mode": self.api_mode,
            "api_version": self.api_version,
            "fallback": self.fallback,
            "enabled": self.enabled,
        }


def create_adapter(
    provider: ProviderConfig, adapter_config: Optional[AdapterConfig] = None
) -> ProviderAdapter:
    """Build the adapter for a provider's endpoint type."""
    provider.validate()
    if provider.endpoint_type == EndpointType.ANTHROPIC:
        kwargs: dict[str, Any] = {}
        if provider.api_version:
            kwargs["api_version"] = provider.api_version
        return AnthropicAdapter(
            provider.model,
            base_url=provider.resolved_base_url,
            api_key=provider.api_key,
            name=provider.name,
            config=adapter_config,
            **kwargs,
        )

    profile = provider.profile
    if profile is None and provider.endpoint_type == EndpointType.LOCAL:
        profile = "ollama"
    return OpenAIAdapter(
        provider.model,
        base_url=provider.resolved_base_url,
        api_key=provider.api_key,
        profile=profile,
        api_mode=provider.api_mode,
        name=provider.name,
        config=adapter_config,
    )


@dataclass
class RuntimeConfig:
    """Providers plus agent, retry and circuit-breaker settings."""

    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    default_provider: Optional[str] = None
    agent: AgentConfig = field(default_factory=AgentConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    cooldown: float = DEFAULT_COOLDOWN
    tool_mode: ToolMode = ToolMode.FULL
    log_level: str = "INFO"

    def __post_init__(self):
        if not isinstance(self.tool_mode, ToolMode):
            self.tool_mode = _tool_mode(self.tool_mode)

        env_provider = os.environ.get("LLMLOOP_PROVIDER")
        if env_provider:
            self.default_provider = env_provider

        env_mode = os.environ.get("LLMLOOP_TOOL_MODE")
        if env_mode:
            self.tool_mode = _tool_mode(env_mode)

        env_turns = os.environ.get("LLMLOOP_MAX_TURNS")
        if env_turns:
            try:
                max_turns = int(env_turns)
            except ValueError:
                raise ConfigError(f"LLMLOOP_MAX_TURNS must be an integer, got '{env_turns}'")
            self.agent = dataclasses.replace(self.agent, max_turns=max_turns)

        env_level = os.environ.get("LLMLOOP_LOG_LEVEL")
        if env_level:
            self.log_level = env_level

        if self.default_provider is None and self.providers:
            self.default_provider = next(iter(self.providers))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuntimeConfig":
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a mapping")

        providers_data = data.get("providers") or {}
        if not isinstance(providers_data, dict):
            raise ConfigError("'providers' must be a mapping of name to provider settings")
        providers = {
            name: ProviderConfig.from_dict(name, settings)
            for name, settings in providers_data.items()
        }

        agent_data = data.get("agent") or {}
        unknown = set(agent_data) - _AGENT_FIELDS
        if unknown:
            raise ConfigError(f"unknown agent setting(s): {', '.join(sorted(unknown))}")

        breaker_data = data.get("circuit_breaker") or {}
        return cls(
            providers=providers,
            default_provider=data.get("default_provider"),
            agent=AgentConfig(**agent_data),
            retry=RetryPolicy.from_dict(data.get("retry") or {}),
            failure_threshold=breaker_data.get("failure_threshold", DEFAULT_FAILURE_THRESHOLD),
            cooldown=breaker_data.get("cooldown", DEFAULT_COOLDOWN),
            tool_mode=data.get("tool_mode", ToolMode.FULL.value),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RuntimeConfig":
        """Load configuration from a YAML file.

        Raises:
            ConfigError: If the file is missing, unparsable or invalid.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"config file not found: {path}")
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e
        return cls.from_dict(data or {})

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        """Single-provider configuration from ``LLMLOOP_*`` variables."""
        model = os.environ.get("LLMLOOP_MODEL")
        if not model:
            raise ConfigError("LLMLOOP_MODEL is not set")
        name = os.environ.get("LLMLOOP_PROVIDER", "default")
        provider = ProviderConfig(
            name=name,
            model=model,
            endpoint_type=os.environ.get("LLMLOOP_ENDPOINT_TYPE", EndpointType.OPENAI.value),
            base_url=os.environ.get("LLMLOOP_BASE_URL"),
            api_key=os.environ.get("LLMLOOP_API_KEY"),
            profile=os.environ.get("LLMLOOP_PROFILE"),
        )
        return cls(providers={name: provider}, default_provider=name)

    def get_provider(self, name: Optional[str] = None) -> ProviderConfig:
        name = name or self.default_provider
        if not name:
            raise ConfigError("no provider configured")
        provider = self.providers.get(name)
        if provider is None:
            raise ConfigError(f"unknown provider '{name}'")
        if not provider.enabled:
            raise ConfigError(f"provider '{name}' is disabled")
        return provider

    def build_provider(
        self, name: Optional[str] = None, adapter_config: Optional[AdapterConfig] = None
    ) -> ProviderAdapter:
        """Adapter for a provider, wrapped with its fallback when one is set."""
        provider = self.get_provider(name)
        adapter = create_adapter(provider, adapter_config)
        if provider.fallback:
            if provider.fallback == provider.name:
                raise ConfigError(f"provider '{provider.name}' cannot fall back to itself")
            backup = create_adapter(self.get_provider(provider.fallback), adapter_config)
            return FallbackProvider(adapter, backup)
        return adapter

    def create_breakers(self) -> CircuitBreakerRegistry:
        return CircuitBreakerRegistry(
            failure_threshold=self.failure_threshold, cooldown=self.cooldown
        )
