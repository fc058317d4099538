from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from turnflow.errors import ConfigError
from turnflow.types import ErrorPolicy, ExecutionPolicy, ProviderName


class ProviderConfig(BaseModel):
    api_key_env: str
    auth_token_env: str | None = None


class ModelConfig(BaseModel):
    provider: ProviderName = "anthropic"
    name: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    max_context_tokens: int = 32000
    response_headroom_tokens: int = 2000
    providers: dict[ProviderName, ProviderConfig] = Field(
        default_factory=lambda: {
            "anthropic": ProviderConfig(
                api_key_env="ANTHROPIC_API_KEY",
                auth_token_env="ANTHROPIC_AUTH_TOKEN",
            ),
            "gemini": ProviderConfig(api_key_env="GEMINI_API_KEY"),
        }
    )


class RuntimeConfig(BaseModel):
    max_cycles: int = 8
    max_llm_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0
    tool_call_mode: Literal["sequential", "parallel"] = "sequential"
    max_parallel_tool_calls: int = 4
    max_tool_calls_per_response: int = 8
    dispatch_profile: Literal["publish", "queue"] = "publish"
    max_chain_depth: int = 5
    followup_mode: Literal["inline", "handoff"] = "inline"
    processing_timeout_seconds: int = 600
    final_answer_hint: bool = False
    worker_poll_interval_seconds: float = 1.0


class StorageConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = "sqlite"
    sqlite_path: str = "./turnflow.db"


class LoggingConfig(BaseModel):
    level: str = "info"
    jsonl_dir: str = "./runs"
    sanitize_control_chars: bool = True
    redact_secrets: bool = True
    llm_transcript_enabled: bool = True
    llm_transcript_filename: str = "llm_transcript.log"


class NotificationsConfig(BaseModel):
    enabled: bool = True
    transient_messages: bool = False


class AgentProfile(BaseModel):
    system_prompt: str = "You are a helpful assistant. Use the available tools when needed."
    welcome_message: str | None = None
    capabilities: list[str] | None = None


class CapabilityConfig(BaseModel):
    handler: str
    description: str = ""
    execution: ExecutionPolicy = ExecutionPolicy.SYNCHRONOUS
    on_error: ErrorPolicy = ErrorPolicy.CONTINUE_WITH_CONTEXT
    requires_approval: bool = False
    approvers: list[str] = Field(default_factory=list)
    max_attempts: int = 1


class AgentConfig(BaseModel):
    model: ModelConfig = Field(default_factory=ModelConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    agents: dict[str, AgentProfile] = Field(
        default_factory=lambda: {"default": AgentProfile()}
    )
    capabilities: dict[str, CapabilityConfig] = Field(default_factory=dict)

    def agent_profile(self, agent_name: str) -> AgentProfile:
        profile = self.agents.get(agent_name)
        if profile is None:
            raise ConfigError(f"Unknown agent configuration: {agent_name}")
        return profile


def _parse_dotenv_line(line: str) -> tuple[str, str] | None:
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith("export "):
        text = text[len("export ") :].strip()
    if "=" not in text:
        return None

    key, raw_value = text.split("=", 1)
    key = key.strip()
    if not key:
        return None

    value = raw_value.strip()
    if value and value[0] in {"'", '"'} and value[-1:] == value[0]:
        value = value[1:-1]
    elif " #" in value:
        value = value.split(" #", 1)[0].rstrip()

    return key, value.strip()


def _read_dotenv(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}

    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        parsed = _parse_dotenv_line(line)
        if parsed is None:
            continue
        key, value = parsed
        values[key] = value
    return values


def discover_config_path(config_override: Path | None = None) -> Path | None:
    if config_override is not None:
        return config_override.resolve()

    candidates = [
        Path("./turnflow.yaml"),
        Path("~/.config/turnflow/turnflow.yaml").expanduser(),
    ]

    for candidate in candidates:
        if candidate.exists():
            return candidate.resolve()
    return None


def _load_yaml(path: Path) -> dict[str, Any]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return raw


def load_config(config_override: Path | None = None) -> AgentConfig:
    path = discover_config_path(config_override)
    if path is None:
        return AgentConfig()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    data = _load_yaml(path)
    try:
        return AgentConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config at {path}: {exc}") from exc


def write_default_config(path: Path, overwrite: bool = False) -> None:
    if path.exists() and not overwrite:
        raise ConfigError(f"Config file already exists: {path}")

    config = AgentConfig()
    serialized = yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(serialized, encoding="utf-8")


def _get_env_or_dotenv(env_name: str | None) -> str | None:
    if not env_name:
        return None
    value = os.getenv(env_name)
    if value is None:
        dotenv_values = _read_dotenv(Path(".env"))
        value = dotenv_values.get(env_name)
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def get_provider_api_key(config: AgentConfig, provider: ProviderName) -> str | None:
    env_name = config.model.providers[provider].api_key_env
    return _get_env_or_dotenv(env_name)


def get_provider_auth_token(config: AgentConfig, provider: ProviderName) -> str | None:
    env_name = config.model.providers[provider].auth_token_env
    return _get_env_or_dotenv(env_name)


def provider_has_credentials(config: AgentConfig, provider: ProviderName) -> bool:
    return bool(
        get_provider_api_key(config, provider) or get_provider_auth_token(config, provider)
    )
