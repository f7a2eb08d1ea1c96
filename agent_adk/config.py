import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables and the YAML config file."""

    provider_name: str
    default_model: Optional[str]
    auth_token: Optional[str]
    clerk_jwks_url: Optional[str]
    clerk_jwt_key: Optional[str]
    clerk_issuer: Optional[str]
    clerk_audience: Optional[str]
    clerk_authorized_parties: List[str]
    db_path: str = "./data/agent_adk.db"
    cors_origins: str = "*"
    config_file: str = "./agent_adk.yaml"
    agent_modules: List[str] = Field(default_factory=list)

    max_delegation_depth: int = 5
    mcp_discovery_cache_ttl: int = 300
    interrupt_ttl_hours: int = 24
    tracing_enabled: bool = True
    default_queue: str = "default"
    media_storage_path: str = "./data/media"

    mcp_servers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    tool_permissions: Dict[str, Any] = Field(default_factory=dict)
    agents: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    service_name: str = "agent-adk"
    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    Only defaults live here; `get_settings` re-reads the environment on every
    call so tests can flip values with monkeypatch.
    """

    return Settings(
        provider_name="stub",
        default_model=None,
        auth_token=None,
        clerk_jwks_url=None,
        clerk_jwt_key=None,
        clerk_issuer=None,
        clerk_audience=None,
        clerk_authorized_parties=[],
    )


class ConfigFileError(RuntimeError):
    """Raised when the YAML config file exists but cannot be parsed."""


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Read the YAML config file (mcp_servers, tool_permissions, agents).

    A missing file is an empty config; a malformed one is an error.
    """
    config_path = Path(path)
    if not config_path.exists():
        return {}
    with config_path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigFileError(f"Invalid YAML in config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFileError(f"Config file {path} must deserialize to a mapping")
    return data


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime, and the YAML file can change between
    runs, so both are read on each call instead of caching.
    """

    base = _base_settings()
    provider_name = (os.getenv("PROVIDER") or base.provider_name).lower()
    config_file = os.getenv("ADK_CONFIG_FILE") or base.config_file
    file_config = load_config_file(config_file)

    return Settings(
        provider_name=provider_name,
        default_model=os.getenv("DEFAULT_MODEL") or None,
        auth_token=os.getenv("AUTH_TOKEN") or None,
        clerk_jwks_url=os.getenv("CLERK_JWKS_URL") or None,
        clerk_jwt_key=os.getenv("CLERK_JWT_KEY") or None,
        clerk_issuer=os.getenv("CLERK_ISSUER") or None,
        clerk_audience=os.getenv("CLERK_AUDIENCE") or None,
        clerk_authorized_parties=_split_csv(os.getenv("CLERK_AUTHORIZED_PARTIES") or ""),
        db_path=os.getenv("DB_PATH") or base.db_path,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        config_file=config_file,
        agent_modules=_split_csv(os.getenv("AGENT_MODULES") or ""),
        max_delegation_depth=_env_int("MAX_DELEGATION_DEPTH", base.max_delegation_depth),
        mcp_discovery_cache_ttl=_env_int("MCP_DISCOVERY_CACHE_TTL", base.mcp_discovery_cache_ttl),
        interrupt_ttl_hours=_env_int("INTERRUPT_TTL_HOURS", base.interrupt_ttl_hours),
        tracing_enabled=_env_bool("TRACING_ENABLED", base.tracing_enabled),
        default_queue=os.getenv("DEFAULT_QUEUE") or base.default_queue,
        media_storage_path=os.getenv("MEDIA_STORAGE_PATH") or base.media_storage_path,
        mcp_servers=file_config.get("mcp_servers") or {},
        tool_permissions=file_config.get("tool_permissions") or {},
        agents=file_config.get("agents") or {},
        service_name=base.service_name,
        http_port=_env_int("PORT", base.http_port),
    )
