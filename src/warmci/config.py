# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from .errors import ConfigError

DEFAULT_CACHE_DIR = ".warmci/cache"
DEFAULT_PROTOC_INSTALL = "sudo apt-get update && sudo apt-get install -y protobuf-compiler"


@dataclass(frozen=True)
class Settings:
    cache_dir: str = DEFAULT_CACHE_DIR
    probe_timeout: float = 30.0
    workers: Optional[int] = None  # None -> one worker per job
    main_branch: str = "main"
    protoc_install: str = DEFAULT_PROTOC_INSTALL

    def override(self, **values) -> "Settings":
        """Return a copy with every non-None value applied (CLI flags win over env)."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})


def _number(env: Mapping[str, str], name: str, cast, default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(name, raw, f"{name} must be a {cast.__name__}") from None
    if value <= 0:
        raise ConfigError(name, raw, f"{name} must be positive")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build settings from WARMCI_* environment variables."""
    env = os.environ if env is None else env
    return Settings(
        cache_dir=env.get("WARMCI_CACHE_DIR", DEFAULT_CACHE_DIR),
        probe_timeout=_number(env, "WARMCI_PROBE_TIMEOUT", float, 30.0),
        workers=_number(env, "WARMCI_WORKERS", int, None),
        main_branch=env.get("WARMCI_MAIN_BRANCH", "main"),
        protoc_install=env.get("WARMCI_PROTOC_INSTALL", DEFAULT_PROTOC_INSTALL),
    )
