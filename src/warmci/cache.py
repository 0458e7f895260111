# cache.py
from __future__ import annotations

import hashlib
import json
import os
import subprocess
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .errors import CacheProbeError, CacheStoreError
from .model import CacheState, Job

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Job-level caching:
#   cache_key = "<job>-" + hash(
#       job.name,
#       step commands + cwd,
#       job.env,
#       protocol compiler flag,
#       tool versions (toolchain identity),
#       contents of declared input files (dependency manifests),
#   )
#
# Cache artifact:
#   a tar.gz containing the job's cache_dirs plus a manifest.json.
#
# A store only has to answer probe(key) and accept store(key, artifact).
# Everything else (timeouts, memoization, Unknown) lives in CacheProbe.
# ---------------------------------------------------------------------

KEY_FORMAT_VERSION = 1
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".warmci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _input_relpath(p: Path, root: Path) -> str:
    # inputs are named by where they sit in the repo, not where a symlink points
    try:
        return p.relative_to(root).as_posix()
    except ValueError:
        return _relpath(p, root)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand job.inputs patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "crates/"
      - glob:      "crates/*/Cargo.toml"
    Patterns that match nothing are simply absent from the fingerprint.
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(sorted(repo_root.glob(pat)))

    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _tool_version(tool: str) -> Optional[str]:
    """Best-effort version discovery; None when the tool is not installed."""
    for cmd in ([tool, "--version"], [tool, "-V"], [tool, "version"]):
        try:
            completed = subprocess.run(cmd, text=True, capture_output=True, check=False, timeout=30)
        except (OSError, subprocess.TimeoutExpired):
            continue
        text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
        if completed.returncode == 0 and text:
            # Normalize whitespace to make hashing stable
            return " ".join(text.split())
    return None


def _hash_inputs(repo_root: Path, inputs: List[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    file_fps: List[Tuple[str, str, int]] = []
    for p in _resolve_globs(repo_root, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _input_relpath(f, repo_root)
            if _matches_any_glob(rel, excludes):
                continue
            file_fps.append((rel, _hash_file_contents(f), f.stat().st_size))

    file_fps.sort(key=lambda t: t[0])
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), payload


def compute_cache_key(
    job: Job,
    *,
    repo_root: str | Path = ".",
    excludes: Optional[List[str]] = None,
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest). Equal keys mean equivalent cached artifacts.
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    steps = [{"name": s.name, "run": s.run, "cwd": s.cwd or "."} for s in job.steps]

    if job.tool_versions is not None:
        # pinned by the workflow author
        tool_versions = {t: job.tool_versions.get(t) for t in job.requires}
    else:
        tool_versions = {t: _tool_version(t) for t in job.requires}

    inputs_hash, inputs_manifest = _hash_inputs(root, list(job.inputs), excludes=exclude_globs)

    payload = {
        "v": KEY_FORMAT_VERSION,
        "job": job.name,
        "steps": steps,
        "env": dict(job.env),
        "protoc": job.requires_protocol_compiler,
        "requires": list(job.requires),
        "tool_versions": tool_versions,
        "inputs_hash": inputs_hash,
    }
    key = f"{job.name}-{_sha256_str(_json_dumps_stable(payload))}"
    manifest = {
        "key": key,
        "job": job.name,
        "payload": payload,
        "inputs": inputs_manifest,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


# ---------------------------------------------------------------------
# Store boundary
# ---------------------------------------------------------------------

@dataclass
class Artifact:
    """What a job leaves behind for the next run with the same key."""
    job: str
    root: Path
    paths: List[Path] = field(default_factory=list)
    manifest: Dict = field(default_factory=dict)


def pack_artifact(job: Job, manifest: Dict, *, repo_root: str | Path = ".") -> Artifact:
    root = Path(repo_root).resolve()
    paths = [(root / entry).resolve() for entry in job.cache_dirs]
    return Artifact(job=job.name, root=root, paths=[p for p in paths if p.exists()], manifest=manifest)


class CacheBackend(Protocol):
    def probe(self, key: str) -> CacheState: ...

    def store(self, key: str, artifact: Artifact) -> None: ...

    def restore(self, key: str, repo_root: Path) -> None: ...

    def prune(self, job_name: str, keep: int = 3) -> None: ...


class FileCacheStore:
    """
    File-based cache store:
      root/
        <key>.tar.gz
        <key>.manifest.json
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def probe(self, key: str) -> CacheState:
        try:
            present = self.artifact_path(key).is_file() and self.manifest_path(key).is_file()
        except OSError as e:
            raise CacheProbeError(key, f"cache store unreachable: {e}") from e
        return CacheState.HIT if present else CacheState.MISS

    def _write_atomic(self, dest: Path, write) -> None:
        # unique temp per writer, then rename: concurrent writers end up last-writer-wins
        fd, tmp = tempfile.mkstemp(dir=str(self.root), prefix=f".{dest.name}.", suffix=".tmp")
        os.close(fd)
        try:
            write(Path(tmp))
            os.replace(tmp, dest)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def store(self, key: str, artifact: Artifact) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)

            def write_tar(tmp: Path) -> None:
                with tarfile.open(str(tmp), mode="w:gz") as tar:
                    for src in artifact.paths:
                        files = [src] if src.is_file() else list(_iter_files_under(src))
                        for f in files:
                            rel = _relpath(f, artifact.root)
                            if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                                continue
                            tar.add(str(f), arcname=rel, recursive=False)

            def write_manifest(tmp: Path) -> None:
                tmp.write_text(json.dumps(artifact.manifest, sort_keys=True, indent=2), encoding="utf-8")

            # archive first: a manifest without its archive never counts as a hit
            self._write_atomic(self.artifact_path(key), write_tar)
            self._write_atomic(self.manifest_path(key), write_manifest)
        except (OSError, ValueError, tarfile.TarError) as e:
            raise CacheStoreError(key, f"could not write cache entry: {e}") from e

    def restore(self, key: str, repo_root: Path) -> None:
        """Extract the archive over the working tree (overwrite by extraction)."""
        try:
            with tarfile.open(str(self.artifact_path(key)), mode="r:gz") as tar:
                tar.extractall(path=str(repo_root), filter="data")
        except (OSError, tarfile.TarError) as e:
            raise CacheProbeError(key, f"cache exists but restore failed: {e}") from e

    def _manifest_job(self, path: Path) -> Optional[str]:
        try:
            return json.loads(path.read_text(encoding="utf-8")).get("job")
        except (OSError, ValueError):
            return None

    def prune(self, job_name: str, keep: int = 3) -> None:
        """
        Keep only the newest N entries for a job.
        Uses manifest mtime as "newest".
        """
        if not self.root.exists():
            return
        manifests = [m for m in self.root.glob("*.manifest.json") if self._manifest_job(m) == job_name]
        manifests.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        for man in manifests[keep:]:
            key = man.name[: -len(".manifest.json")]
            self.artifact_path(key).unlink(missing_ok=True)
            man.unlink(missing_ok=True)


# ---------------------------------------------------------------------
# Probe (memoized per job, bounded by a timeout)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheLookup:
    state: CacheState
    key: str
    reason: str

    @property
    def handle(self) -> Optional[str]:
        """Restore handle, only meaningful on a hit."""
        return self.key if self.state is CacheState.HIT else None


class CacheProbe:
    """
    Asks the store about one key at most once.

    Any store error or a timeout resolves to UNKNOWN, which callers treat
    exactly like MISS.
    """

    def __init__(self, backend: CacheBackend, key: str, *, timeout: float = 30.0):
        self.backend = backend
        self.key = key
        self.timeout = timeout
        self.calls = 0
        self._result: Optional[CacheLookup] = None
        self._lock = threading.Lock()

    def _query(self) -> CacheLookup:
        self.calls += 1
        outcome: Dict[str, object] = {}

        def ask() -> None:
            try:
                outcome["state"] = self.backend.probe(self.key)
            except Exception as e:
                outcome["error"] = e

        # daemon: a hung store must not keep the process alive at exit
        worker = threading.Thread(target=ask, name=f"cache-probe-{self.key}", daemon=True)
        worker.start()
        worker.join(self.timeout)

        if worker.is_alive():
            return CacheLookup(CacheState.UNKNOWN, self.key, f"probe timed out after {self.timeout:g}s")
        error = outcome.get("error")
        if isinstance(error, CacheProbeError):
            return CacheLookup(CacheState.UNKNOWN, self.key, error.message)
        if error is not None:
            return CacheLookup(CacheState.UNKNOWN, self.key, f"probe failed: {type(error).__name__}: {error}")
        try:
            state = CacheState(outcome.get("state"))
        except ValueError:
            return CacheLookup(CacheState.UNKNOWN, self.key, f"probe returned {outcome.get('state')!r}")

        reason = "cache hit" if state is CacheState.HIT else "cache miss"
        return CacheLookup(state, self.key, reason)

    def probe(self) -> CacheLookup:
        with self._lock:
            if self._result is None:
                self._result = self._query()
            return self._result
