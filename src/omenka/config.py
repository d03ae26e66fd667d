"""Configuration loading from environment variables and omenka.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_CACHE_DIR = Path.home() / ".omenka" / "cache"
_CONFIG_FILENAME = "omenka.toml"


@dataclass
class SyncConfig:
    """Debounced remote commit settings."""

    debounce_ms: int = 1000

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000


@dataclass
class CacheConfig:
    """Local snapshot cache settings."""

    dir: Path = _DEFAULT_CACHE_DIR
    key: str = "omenka.projects.v1"


@dataclass
class RemoteConfig:
    """Remote document store settings. An empty url selects the in-process store."""

    url: str = ""
    token: str = ""
    timeout: float = 15.0


@dataclass
class AssistConfig:
    """Text-generation assist service settings."""

    enabled: bool = False
    endpoint: str = ""
    timeout: float = 60.0


@dataclass
class ProjectConfig:
    """Templated values for newly created projects."""

    default_author: str = "Omenka Writer"
    default_country: str = "Nigeria"


@dataclass
class OmenkaConfig:
    """Top-level Omenka configuration."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    assist: AssistConfig = field(default_factory=AssistConfig)
    project: ProjectConfig = field(default_factory=ProjectConfig)
    owner_id: str = "local"
    log_level: str = "INFO"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() == "true"


def load_config(config_path: Path | None = None) -> OmenkaConfig:
    """Load configuration from environment variables and optional omenka.toml.

    Priority: environment variables > omenka.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.omenka/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, Path.home() / ".omenka" / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    sync_data = file_data.get("sync", {})
    cache_data = file_data.get("cache", {})
    remote_data = file_data.get("remote", {})
    assist_data = file_data.get("assist", {})
    project_data = file_data.get("project", {})

    config = OmenkaConfig(
        sync=SyncConfig(
            debounce_ms=int(os.getenv("OMENKA_DEBOUNCE_MS", sync_data.get("debounce_ms", 1000))),
        ),
        cache=CacheConfig(
            dir=Path(os.getenv("OMENKA_CACHE_DIR", str(cache_data.get("dir", _DEFAULT_CACHE_DIR)))).expanduser(),
            key=cache_data.get("key", "omenka.projects.v1"),
        ),
        remote=RemoteConfig(
            url=os.getenv("OMENKA_REMOTE_URL", remote_data.get("url", "")),
            token=os.getenv("OMENKA_REMOTE_TOKEN", remote_data.get("token", "")),
            timeout=float(os.getenv("OMENKA_REMOTE_TIMEOUT", remote_data.get("timeout", 15))),
        ),
        assist=AssistConfig(
            enabled=_env_flag("OMENKA_AI_ENABLED", bool(assist_data.get("enabled", False))),
            endpoint=os.getenv("OMENKA_AI_ENDPOINT", assist_data.get("endpoint", "")),
            timeout=float(os.getenv("OMENKA_AI_TIMEOUT", assist_data.get("timeout", 60))),
        ),
        project=ProjectConfig(
            default_author=project_data.get("default_author", "Omenka Writer"),
            default_country=project_data.get("default_country", "Nigeria"),
        ),
        owner_id=os.getenv("OMENKA_OWNER_ID", file_data.get("owner_id", "local")),
        log_level=os.getenv("OMENKA_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
