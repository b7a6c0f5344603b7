"""
Shared fixtures for mirror tests.

Builds throwaway upstream repositories with the git CLI so that clone,
fetch and fast-forward run against real history.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from index_mirror.config import Config, RepoConfig, WebConfig
from index_mirror.git_sync import initialize

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

_IDENTITY = [
    "-c", "user.name=Mirror Tests",
    "-c", "user.email=mirror-tests@example.com",
    "-c", "commit.gpgsign=false",
]


def git(repo: Path, *args: str) -> str:
    """Run git in ``repo`` and return stripped stdout; fail the test on error."""
    result = subprocess.run(
        ["git", *_IDENTITY, *args],
        cwd=str(repo),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def init_repo(path: Path, branch: str = "master") -> Path:
    path.mkdir(parents=True)
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", f"refs/heads/{branch}")
    return path


def commit_file(repo: Path, name: str, content: str, message: str | None = None) -> str:
    """Write ``name`` and commit it; return the new commit id."""
    target = repo / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message or f"update {name}")
    return git(repo, "rev-parse", "HEAD")


def head_of(repo: Path, ref: str = "refs/heads/master") -> str:
    return git(repo, "rev-parse", ref)


def make_config(upstream: Path, mirror: Path, interval: int = 60, **repo_kwargs) -> Config:
    return Config(
        repo=RepoConfig(
            git_url=str(upstream),
            path=mirror,
            update_interval=interval,
            **repo_kwargs,
        ),
        web=WebConfig(address="127.0.0.1", port=8080),
    )


@pytest.fixture
def upstream(tmp_path: Path) -> Path:
    """An upstream repository with three commits on master."""
    repo = init_repo(tmp_path / "upstream")
    commit_file(repo, "config.json", '{"dl": "https://example.com/api/v1/crates"}\n')
    commit_file(repo, "se/rd/serde", '{"name":"serde","vers":"1.0.0"}\n')
    commit_file(repo, "to/ki/tokio", '{"name":"tokio","vers":"1.0.0"}\n')
    return repo


@pytest.fixture
def mirror(tmp_path: Path, upstream: Path) -> Path:
    """A fresh clone of ``upstream``."""
    path = tmp_path / "mirror"
    initialize(str(upstream), path)
    return path
