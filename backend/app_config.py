"""
Process configuration for the memory engine.

One JSON document per process. Missing keys fall back to defaults; saves are
atomic (temp file + replace) and keep the previous document as ``<path>.bak``.
Writers on the same file are serialized across processes with a file lock.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from dotenv import find_dotenv, load_dotenv
from filelock import FileLock
from pydantic import BaseModel, Field, ValidationError, field_validator

from memory_errors import InvalidInputError

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

CONFIG_PATH_ENV = "MEMORY_CONFIG_PATH"
AGENTS_DIR_ENV = "MEMORY_AGENTS_DIR"
DEFAULT_CONFIG_PATH = Path(".memory") / "config.json"
DEFAULT_AGENTS_DIR = Path(".memory") / "agents"

KNOWN_PROVIDERS = ("openai", "openrouter", "requesty", "zai", "generic")

_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "requesty": "https://router.requesty.ai/v1",
    "zai": "https://api.z.ai/api/paas/v4",
    "generic": "",
}
_DEFAULT_KEY_ENVS = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "requesty": "REQUESTY_API_KEY",
    "zai": "ZAI_API_KEY",
    "generic": "",
}


class ProviderEndpoint(BaseModel):
    base_url: str = ""
    api_key: str = ""
    api_key_env: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)


def _endpoint(name: str) -> ProviderEndpoint:
    return ProviderEndpoint(
        base_url=_DEFAULT_BASE_URLS[name], api_key_env=_DEFAULT_KEY_ENVS[name]
    )


class ProvidersConfig(BaseModel):
    openai: ProviderEndpoint = Field(default_factory=lambda: _endpoint("openai"))
    openrouter: ProviderEndpoint = Field(default_factory=lambda: _endpoint("openrouter"))
    requesty: ProviderEndpoint = Field(default_factory=lambda: _endpoint("requesty"))
    zai: ProviderEndpoint = Field(default_factory=lambda: _endpoint("zai"))
    generic: ProviderEndpoint = Field(default_factory=lambda: _endpoint("generic"))


class ModelConfig(BaseModel):
    provider: str = "openai"
    name: str = "gpt-4o-mini"

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in KNOWN_PROVIDERS:
            raise ValueError(f"unsupported model provider: {value!r}")
        return normalized


class MemoryConfig(BaseModel):
    enabled: bool = True
    event_buffer_size: int = Field(default=256, ge=1)
    embeddings_enabled: bool = False
    embedding_provider: str = ""
    embedding_model: str = "text-embedding-3-small"
    operation_timeout_sec: float = Field(default=120.0, gt=0)


class LoggingConfig(BaseModel):
    structured: bool = False
    level: str = "INFO"


class PolicyConfig(BaseModel):
    # agent_id -> tool names; "*" as agent or tool is a wildcard.
    capabilities: Dict[str, List[str]] = Field(
        default_factory=lambda: {"*": ["*"]}
    )


class AppConfig(BaseModel):
    model: ModelConfig = Field(default_factory=ModelConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)

    def provider_endpoint(self, name: str) -> ProviderEndpoint:
        normalized = (name or "").strip().lower()
        if normalized not in KNOWN_PROVIDERS:
            raise InvalidInputError(
                f"unsupported provider: {name!r}", code="unsupported_provider"
            )
        return getattr(self.providers, normalized)


def default_config() -> AppConfig:
    return AppConfig()


def resolve_config_path(path: Optional[Union[str, Path]] = None) -> Path:
    if path:
        return Path(path)
    raw = os.getenv(CONFIG_PATH_ENV, "").strip()
    return Path(raw) if raw else DEFAULT_CONFIG_PATH


def resolve_agents_dir(path: Optional[Union[str, Path]] = None) -> Path:
    if path:
        return Path(path)
    raw = os.getenv(AGENTS_DIR_ENV, "").strip()
    return Path(raw) if raw else DEFAULT_AGENTS_DIR


def parse_config(raw: Union[str, bytes, dict]) -> AppConfig:
    try:
        if isinstance(raw, dict):
            return AppConfig.model_validate(raw)
        return AppConfig.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidInputError(
            f"invalid config: {exc.errors()[0].get('msg', 'validation failed')}",
            code="invalid_config",
        ) from exc


def load_or_default(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load the config file, or defaults when it does not exist."""
    config_path = resolve_config_path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default_config()
    if not raw.strip():
        return default_config()
    return parse_config(raw)


def save(config: AppConfig, path: Optional[Union[str, Path]] = None) -> Path:
    config_path = resolve_config_path(path)
    # Round-trip through validation before anything touches disk.
    validated = parse_config(config.model_dump())
    payload = json.dumps(validated.model_dump(), indent=2, ensure_ascii=False) + "\n"

    config_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(config_path) + ".lock", timeout=10)
    with lock:
        if config_path.exists():
            shutil.copy2(config_path, str(config_path) + ".bak")
        fd, tmp_name = tempfile.mkstemp(
            dir=str(config_path.parent), prefix=config_path.name + ".", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, config_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    return config_path
