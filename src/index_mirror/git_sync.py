import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from index_mirror.config import Config, RepoConfig
from index_mirror.credentials import (
    CredentialError,
    CredentialProvider,
    DefaultCredentials,
    SshKeyCredentials,
)

REMOTE_NAME = "origin"
DEFAULT_BRANCH = "master"
FETCH_REFSPEC = f"+refs/heads/*:refs/remotes/{REMOTE_NAME}/*"
EXIT_TIMEOUT = 124
EXIT_SPAWN = 127


class MirrorError(Exception):
    pass


class StartupError(MirrorError):
    pass


class SyncStage(str, Enum):
    OPEN = "open"
    REMOTE = "remote"
    FETCH = "fetch"
    RESOLVE_FETCH_HEAD = "resolve_fetch_head"
    MERGE_ANALYSIS = "merge_analysis"
    UPDATE_REF = "update_ref"
    SET_HEAD = "set_head"
    CHECKOUT = "checkout"


class SyncError(MirrorError):
    def __init__(self, stage: SyncStage, detail: str) -> None:
        super().__init__(f"{stage.value}: {detail}")
        self.stage = stage
        self.detail = detail


class SyncOutcome(str, Enum):
    UP_TO_DATE = "up_to_date"
    FAST_FORWARDED = "fast_forwarded"
    DIVERGED = "diverged"
    FAILED = "failed"


@dataclass(frozen=True)
class PullResult:
    outcome: SyncOutcome
    local: str | None = None
    fetched: str | None = None
    stage: SyncStage | None = None
    error: str | None = None


def _run_git(
    args: list[str],
    cwd: Path,
    timeout_seconds: int | None = None,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            env=env,
        )
        return result.returncode, result.stdout.strip(), result.stderr.strip()
    except subprocess.TimeoutExpired:
        return EXIT_TIMEOUT, "", f"timeout after {timeout_seconds}s"
    except OSError as exc:
        return EXIT_SPAWN, "", str(exc)


def _git_or_raise(
    stage: SyncStage,
    args: list[str],
    cwd: Path,
    timeout_seconds: int | None = None,
    env: dict[str, str] | None = None,
) -> str:
    code, out, err = _run_git(args, cwd, timeout_seconds, env)
    if code != 0:
        raise SyncError(stage, f"git {args[0]} exited with {code}: {err}")
    return out


def initialize(
    git_url: str,
    repo_path: Path,
    credentials: CredentialProvider | None = None,
    retry_count: int = 1,
    retry_delay_seconds: int = 0,
    timeout_seconds: int | None = None,
) -> None:
    """Clone ``git_url`` into ``repo_path``, which must not exist yet.

    Raises :class:`StartupError` once every attempt has failed.
    """
    credentials = credentials or SshKeyCredentials()
    try:
        env = credentials.environment(git_url)
    except CredentialError as exc:
        raise StartupError(f"cannot resolve credentials for {git_url}: {exc}") from exc

    repo_path.parent.mkdir(parents=True, exist_ok=True)
    err = ""
    for attempt in range(1, retry_count + 1):
        # Only a tree this attempt created may be removed.
        if repo_path.exists():
            raise StartupError(f"refusing to clone into existing path {repo_path}")
        code, _, err = _run_git(
            ["clone", git_url, str(repo_path.absolute())],
            repo_path.parent,
            timeout_seconds,
            env,
        )
        if code == 0:
            logging.info("[%s] Cloned into %s", git_url, repo_path)
            return
        logging.error(
            "[%s] git clone failed (attempt %s/%s): %s",
            git_url,
            attempt,
            retry_count,
            err,
        )
        if repo_path.exists():
            logging.warning("[%s] Removing partial clone at %s", git_url, repo_path)
            try:
                shutil.rmtree(repo_path)
            except OSError as exc:
                raise StartupError(
                    f"cannot remove partial clone at {repo_path}: {exc}"
                ) from exc
        if attempt < retry_count:
            time.sleep(retry_delay_seconds)
    raise StartupError(f"failed to clone {git_url} into {repo_path}: {err}")


def ensure_mirror(repo: RepoConfig) -> bool:
    if repo.path.exists():
        logging.info("Using existing directory at %s", repo.path)
        return False
    logging.info("[%s] Cloning repository...", repo.git_url)
    initialize(
        repo.git_url,
        repo.path,
        retry_count=repo.clone_retry_count,
        retry_delay_seconds=repo.clone_retry_delay,
        timeout_seconds=repo.git_timeout,
    )
    return True


def open_mirror(repo_path: Path, timeout_seconds: int | None = None) -> Path:
    if not repo_path.is_dir():
        raise SyncError(SyncStage.OPEN, f"mirror directory missing: {repo_path}")
    out = _git_or_raise(
        SyncStage.OPEN,
        ["rev-parse", "--show-toplevel"],
        repo_path,
        timeout_seconds,
    )
    # A plain directory nested inside some other checkout is not a mirror.
    if Path(out).resolve() != repo_path.resolve():
        raise SyncError(SyncStage.OPEN, f"not the root of a git work tree: {repo_path}")
    return repo_path


def ensure_remote(repo_path: Path, git_url: str, timeout_seconds: int | None = None) -> str:
    code, current_url, _ = _run_git(
        ["remote", "get-url", REMOTE_NAME], repo_path, timeout_seconds
    )
    if code == 0:
        if current_url != git_url:
            logging.warning(
                "[%s] Remote %s points at %s, keeping it",
                git_url,
                REMOTE_NAME,
                current_url,
            )
        return current_url
    _git_or_raise(
        SyncStage.REMOTE,
        ["remote", "add", REMOTE_NAME, git_url],
        repo_path,
        timeout_seconds,
    )
    logging.info("[%s] Added remote %s", git_url, REMOTE_NAME)
    return git_url


def current_branch(repo_path: Path, timeout_seconds: int | None = None) -> str:
    code, out, _ = _run_git(
        ["symbolic-ref", "--quiet", "--short", "HEAD"], repo_path, timeout_seconds
    )
    if code == 0 and out:
        return out
    return DEFAULT_BRANCH


def _rev_parse(repo_path: Path, ref: str, timeout_seconds: int | None) -> str | None:
    code, out, _ = _run_git(
        ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"],
        repo_path,
        timeout_seconds,
    )
    return out if code == 0 and out else None


def _is_ancestor(
    repo_path: Path, ancestor: str, descendant: str, timeout_seconds: int | None
) -> bool:
    code, _, err = _run_git(
        ["merge-base", "--is-ancestor", ancestor, descendant],
        repo_path,
        timeout_seconds,
    )
    if code == 0:
        return True
    if code == 1:
        return False
    raise SyncError(SyncStage.MERGE_ANALYSIS, f"git merge-base exited with {code}: {err}")


def analyze_merge(
    repo_path: Path, local: str | None, fetched: str, timeout_seconds: int | None = None
) -> SyncOutcome:
    if local is None:
        return SyncOutcome.FAST_FORWARDED
    if local == fetched or _is_ancestor(repo_path, fetched, local, timeout_seconds):
        return SyncOutcome.UP_TO_DATE
    if _is_ancestor(repo_path, local, fetched, timeout_seconds):
        return SyncOutcome.FAST_FORWARDED
    return SyncOutcome.DIVERGED


def fast_forward(
    repo_path: Path,
    branch: str,
    local: str | None,
    fetched: str,
    timeout_seconds: int | None = None,
) -> None:
    ref = f"refs/heads/{branch}"
    # An empty old value makes update-ref insist the branch does not exist yet.
    _git_or_raise(
        SyncStage.UPDATE_REF,
        ["update-ref", "-m", "Fast-forward", ref, fetched, local or ""],
        repo_path,
        timeout_seconds,
    )
    _git_or_raise(
        SyncStage.SET_HEAD, ["symbolic-ref", "HEAD", ref], repo_path, timeout_seconds
    )
    _git_or_raise(
        SyncStage.CHECKOUT, ["reset", "--hard", "HEAD"], repo_path, timeout_seconds
    )


def pull(
    repo_path: Path,
    git_url: str,
    branch: str | None = None,
    credentials: CredentialProvider | None = None,
    timeout_seconds: int | None = None,
) -> PullResult:
    """Fetch ``git_url`` and fast-forward the mirror's branch if possible.

    Raises :class:`SyncError` naming the stage that failed.
    """
    credentials = credentials or DefaultCredentials()
    open_mirror(repo_path, timeout_seconds)
    ensure_remote(repo_path, git_url, timeout_seconds)
    branch = branch or current_branch(repo_path, timeout_seconds)

    try:
        env = credentials.environment(git_url)
    except CredentialError as exc:
        raise SyncError(SyncStage.FETCH, str(exc)) from exc
    _git_or_raise(
        SyncStage.FETCH,
        ["fetch", "--no-tags", REMOTE_NAME, branch, FETCH_REFSPEC],
        repo_path,
        timeout_seconds,
        env,
    )

    fetched = _rev_parse(repo_path, "FETCH_HEAD", timeout_seconds)
    if fetched is None:
        raise SyncError(SyncStage.RESOLVE_FETCH_HEAD, "FETCH_HEAD does not name a commit")
    local = _rev_parse(repo_path, f"refs/heads/{branch}", timeout_seconds)

    outcome = analyze_merge(repo_path, local, fetched, timeout_seconds)
    if outcome is SyncOutcome.FAST_FORWARDED:
        logging.info("[%s] Performing fast-forward merge", git_url)
        fast_forward(repo_path, branch, local, fetched, timeout_seconds)
    return PullResult(outcome=outcome, local=local, fetched=fetched)


def run_cycle(config: Config) -> PullResult:
    repo = config.repo
    logging.info("[%s] Pulling repository updates...", repo.git_url)
    try:
        result = pull(
            repo.path,
            repo.git_url,
            branch=repo.branch,
            timeout_seconds=repo.git_timeout,
        )
    except SyncError as exc:
        logging.error(
            "[%s] Pull failed at %s: %s", repo.git_url, exc.stage.value, exc.detail
        )
        return PullResult(outcome=SyncOutcome.FAILED, stage=exc.stage, error=exc.detail)

    if result.outcome is SyncOutcome.UP_TO_DATE:
        logging.info("[%s] Already up-to-date", repo.git_url)
    elif result.outcome is SyncOutcome.FAST_FORWARDED:
        logging.info(
            "[%s] Fast-forwarded %s -> %s",
            repo.git_url,
            result.local or "(unborn)",
            result.fetched,
        )
    else:
        logging.warning(
            "[%s] Merge required but not supported (local %s, fetched %s)",
            repo.git_url,
            result.local,
            result.fetched,
        )
    return result
