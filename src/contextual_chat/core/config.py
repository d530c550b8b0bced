# src/contextual_chat/core/config.py
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()

ENV_PREFIX = "CTXCHAT_"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_str(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


@dataclass
class AgentConfig:
    """Connection settings for the agents backend (streaming chat over HTTP)."""
    enabled: bool = False
    base_url: str = "http://localhost:8000"
    timeout_ms: int = 300_000 # 5 minutes
    health_check_interval_ms: int = 60_000
    stream_endpoint: str = "/api/v1/chat/stream"
    chat_endpoint: str = "/api/v1/chat"

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass
class OllamaConfig:
    """Connection settings for a local Ollama server used when the agents backend is off."""
    host: str = "http://localhost:11434"
    model: str = "llama3.1"
    system_prompt: str = "You are a helpful assistant for an analytics dashboard."
    timeout_ms: int = 120_000
    max_conversations: int = 500  # histories kept for regenerate

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass
class ContextualChatConfig:
    """
    Settings of the contextual chat feature.

    Defaults mirror the dashboards add-on schema. Values arrive already
    validated by the configuration collaborator, so nothing is checked here.
    """
    # --- Feature switch ---
    enabled: bool = True

    # --- Selection budget ---
    max_visualizations: int = 20
    max_content_elements: int = 50

    # --- Opaque extraction-side settings (passed through, used by the UI collaborator) ---
    context_cache_ttl: int = 300 # seconds
    extraction_timeout_ms: int = 5000
    debounce_ms: int = 500
    enable_lazy_loading: bool = True

    # --- Security ---
    respect_permissions: bool = True
    audit_access: bool = True

    # --- Resilience ---
    enable_standard_chat_fallback: bool = True
    max_retry_attempts: int = 2
    retry_backoff_ms: int = 1000

    # --- Prompt assembly ---
    include_page_context: bool = True
    include_user_actions: bool = True

    # --- Scoring table overrides (empty means the built-in defaults) ---
    keyword_weights: Dict[str, float] = field(default_factory=dict)
    type_weights: Dict[str, float] = field(default_factory=dict)

    @property
    def retry_backoff_s(self) -> float:
        return self.retry_backoff_ms / 1000.0


@dataclass
class ChatBackendConfig:
    """Top-level configuration consumed by ChatServiceSelector."""
    contextual_chat: ContextualChatConfig = field(default_factory=ContextualChatConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ChatBackendConfig":
        """
        Build a config from the collaborator's nested mapping.

        Accepts the add-on's camelCase layout, e.g.::

            {
                "contextualChat": {
                    "enabled": True,
                    "maxVisualizations": 20,
                    "security": {"respectPermissions": True},
                    "performance": {"maxContentElements": 50}
                },
                "aiAgent": {"enabled": True, "baseUrl": "http://agents:8000"}
            }

        snake_case keys are accepted as well.
        """
        data = data or {}
        ctx_raw = dict(data.get("contextualChat") or data.get("contextual_chat") or {})
        # security/performance sub-objects are flattened into the feature config
        for nested in ("security", "performance"):
            ctx_raw.update(ctx_raw.pop(nested, None) or {})
        agent_raw = data.get("aiAgent") or data.get("agent") or {}
        ollama_raw = data.get("ollama") or {}
        return cls(
            contextual_chat=_build(ContextualChatConfig, ctx_raw, {
                "extractionTimeout": "extraction_timeout_ms",
                "contextCacheTTL": "context_cache_ttl",
                "debounceMs": "debounce_ms",
                "retryBackoffMs": "retry_backoff_ms",
            }),
            agent=_build(AgentConfig, agent_raw, {
                "timeout": "timeout_ms",
                "healthCheckInterval": "health_check_interval_ms",
            }),
            ollama=_build(OllamaConfig, ollama_raw, {"timeout": "timeout_ms"}),
        )

    @classmethod
    def from_env(cls) -> "ChatBackendConfig":
        """Build a config from CTXCHAT_* environment variables (a .env file is loaded first)."""
        defaults = ContextualChatConfig()
        contextual = ContextualChatConfig(
            enabled=_env_bool("ENABLED", defaults.enabled),
            max_visualizations=_env_int("MAX_VISUALIZATIONS", defaults.max_visualizations),
            max_content_elements=_env_int("MAX_CONTENT_ELEMENTS", defaults.max_content_elements),
            context_cache_ttl=_env_int("CONTEXT_CACHE_TTL", defaults.context_cache_ttl),
            extraction_timeout_ms=_env_int("EXTRACTION_TIMEOUT_MS", defaults.extraction_timeout_ms),
            debounce_ms=_env_int("DEBOUNCE_MS", defaults.debounce_ms),
            enable_lazy_loading=_env_bool("ENABLE_LAZY_LOADING", defaults.enable_lazy_loading),
            respect_permissions=_env_bool("RESPECT_PERMISSIONS", defaults.respect_permissions),
            audit_access=_env_bool("AUDIT_ACCESS", defaults.audit_access),
            enable_standard_chat_fallback=_env_bool("ENABLE_STANDARD_CHAT_FALLBACK", defaults.enable_standard_chat_fallback),
            max_retry_attempts=_env_int("MAX_RETRY_ATTEMPTS", defaults.max_retry_attempts),
            retry_backoff_ms=_env_int("RETRY_BACKOFF_MS", defaults.retry_backoff_ms),
        )
        agent_defaults = AgentConfig()
        agent = AgentConfig(
            enabled=_env_bool("AGENT_ENABLED", agent_defaults.enabled),
            base_url=_env_str("AGENT_BASE_URL", agent_defaults.base_url),
            timeout_ms=_env_int("AGENT_TIMEOUT_MS", agent_defaults.timeout_ms),
        )
        ollama_defaults = OllamaConfig()
        ollama = OllamaConfig(
            host=_env_str("OLLAMA_HOST", ollama_defaults.host),
            model=_env_str("OLLAMA_MODEL", ollama_defaults.model),
            max_conversations=_env_int("OLLAMA_MAX_CONVERSATIONS", ollama_defaults.max_conversations),
        )
        return cls(contextual_chat=contextual, agent=agent, ollama=ollama)


def _camel_to_snake(name: str) -> str:
    out = []
    for char in name:
        if char.isupper():
            out.append("_" + char.lower())
        else:
            out.append(char)
    return "".join(out)


def _build(config_cls, raw: Mapping[str, Any], aliases: Dict[str, str]):
    """Instantiate a config dataclass from a camelCase/snake_case mapping, ignoring unknown keys."""
    known = {f.name for f in fields(config_cls)}
    kwargs = {}
    for key, value in raw.items():
        name = aliases.get(key) or _camel_to_snake(key)
        if name in known:
            kwargs[name] = value
    return config_cls(**kwargs)


APP_CONFIG = ChatBackendConfig.from_env()

APP_STATE = {
    # Live service instances, populated at startup by main.create_app()
    "chat_service": None,
    "server_host": None,
    "server_port": None,
}
