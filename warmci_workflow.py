# warmci_workflow.py
# The project's own pipeline: the same four jobs serve the pre-merge check
# and the post-merge cache refresh. Only the trigger's policy differs: after a
# merge, the cargo validation steps are skipped when the job's cache is warm.
from __future__ import annotations

from warmci.dsl import check, job, sh, wf

# dependency manifests + toolchain identity: what the cache key is made of
RUST_INPUTS = ["Cargo.toml", "Cargo.lock", "rust-toolchain", "rust-toolchain.toml"]
RUST_TOOLS = ["rustc", "cargo"]
RUST_CACHE = ["target"]


def rust_job(name: str, *steps, requires_protoc: bool = True):
    return job(
        name,
        *steps,
        requires_protoc=requires_protoc,
        inputs=RUST_INPUTS,
        requires=RUST_TOOLS,
        cache_dirs=RUST_CACHE,
    )


def workflow():
    return wf(
        rust_job(
            "fmt",
            sh("Install toolchain", "rustup component add rustfmt"),
            check("cargo fmt", "cargo fmt --check"),
            requires_protoc=False,
        ),
        rust_job(
            "check",
            sh("Install toolchain", "rustup show active-toolchain"),
            check("cargo check", "cargo check"),
        ),
        rust_job(
            "clippy",
            sh("Install toolchain", "rustup component add clippy"),
            check("cargo clippy", "cargo clippy"),
        ),
        rust_job(
            "test",
            sh("Install toolchain", "rustup show active-toolchain"),
            sh("Install nextest", "cargo install cargo-nextest --locked"),
            check("cargo nextest", "cargo nextest run --all-features"),
        ),
    )
