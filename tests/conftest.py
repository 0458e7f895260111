"""Shared fixtures: an in-memory cache store and fast settings."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from warmci.cache import Artifact
from warmci.config import Settings
from warmci.errors import CacheProbeError, CacheStoreError
from warmci.model import CacheState
from warmci.ui.console import Console, set_console


@dataclass
class FakeCacheStore:
    """Cache store test double: records every call, answers from `states`."""

    default: CacheState = CacheState.MISS
    states: Dict[str, CacheState] = field(default_factory=dict)
    probe_delay: float = 0.0
    fail_probe: bool = False
    fail_store: bool = False
    fail_restore: bool = False
    probes: List[str] = field(default_factory=list)
    stored: Dict[str, Artifact] = field(default_factory=dict)
    restored: List[str] = field(default_factory=list)
    pruned: List[Tuple[str, int]] = field(default_factory=list)

    def probe(self, key: str) -> CacheState:
        self.probes.append(key)
        if self.probe_delay:
            time.sleep(self.probe_delay)
        if self.fail_probe:
            raise CacheProbeError(key, "connection refused")
        return self.states.get(key, self.default)

    def store(self, key: str, artifact: Artifact) -> None:
        if self.fail_store:
            raise CacheStoreError(key, "disk full")
        self.stored[key] = artifact
        self.states[key] = CacheState.HIT

    def restore(self, key: str, repo_root: Path) -> None:
        if self.fail_restore:
            raise CacheProbeError(key, "archive truncated")
        self.restored.append(key)

    def prune(self, job_name: str, keep: int = 3) -> None:
        self.pruned.append((job_name, keep))


@pytest.fixture(autouse=True)
def _fresh_console():
    set_console(Console(debug=False))


@pytest.fixture
def store() -> FakeCacheStore:
    return FakeCacheStore()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(cache_dir=str(tmp_path / "cache"), probe_timeout=2.0, protoc_install="exit 0")
