import os
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
import yaml

from agent_adk.runtime import set_runtime

_CLEARED_ENV = (
    "DATABASE_URL",
    "AUTH_TOKEN",
    "CLERK_JWKS_URL",
    "CLERK_JWT_KEY",
    "CLERK_ISSUER",
    "CLERK_AUDIENCE",
    "CLERK_AUTHORIZED_PARTIES",
    "AGENT_MODULES",
    "DEFAULT_MODEL",
    "DEFAULT_QUEUE",
    "MAX_DELEGATION_DEPTH",
    "INTERRUPT_TTL_HOURS",
    "TRACING_ENABLED",
    "OPENAI_API_KEY",
    "OPENROUTER_API_KEY",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """
    Every test gets its own SQLite file, config path and media directory,
    and the stub provider. The process-wide default runtime is reset.
    """
    monkeypatch.setenv("DB_PATH", str(tmp_path / "agent_adk.db"))
    monkeypatch.setenv("ADK_CONFIG_FILE", str(tmp_path / "agent_adk.yaml"))
    monkeypatch.setenv("MEDIA_STORAGE_PATH", str(tmp_path / "media"))
    monkeypatch.setenv("PROVIDER", "stub")
    for name in _CLEARED_ENV:
        monkeypatch.delenv(name, raising=False)
    set_runtime(None)
    yield tmp_path
    set_runtime(None)


@pytest.fixture
def write_config() -> Callable[[Dict[str, Any]], Path]:
    """Write the YAML config file read by get_settings()."""

    def _write(data: Dict[str, Any]) -> Path:
        path = Path(os.environ["ADK_CONFIG_FILE"])
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write
