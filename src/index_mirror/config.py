import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = "config.toml"
DEFAULT_CLONE_RETRY_COUNT = 3
DEFAULT_CLONE_RETRY_DELAY = 10
DEFAULT_WEB_WORKERS = 8
DEFAULT_LOG_LEVEL = "INFO"
MIN_PORT = 1
MAX_PORT = 65535
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

SAMPLE_CONFIG = """\
[repo]
git_url = "https://github.com/rust-lang/crates.io-index.git"
path = "crates.io-index"
update_interval = 3600
# branch = "master"
# clone_retry_count = 3
# clone_retry_delay = 10
# git_timeout = 600

[web]
address = "0.0.0.0"
port = 8080
# workers = 8

# [log]
# path = "logs/index-mirror.log"
# level = "INFO"
"""


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class RepoConfig:
    git_url: str
    path: Path
    update_interval: int
    branch: str | None = None
    clone_retry_count: int = DEFAULT_CLONE_RETRY_COUNT
    clone_retry_delay: int = DEFAULT_CLONE_RETRY_DELAY
    git_timeout: int | None = None


@dataclass(frozen=True)
class WebConfig:
    address: str
    port: int
    workers: int = DEFAULT_WEB_WORKERS


@dataclass(frozen=True)
class LogConfig:
    path: Path | None = None
    level: str = DEFAULT_LOG_LEVEL


@dataclass(frozen=True)
class Config:
    repo: RepoConfig
    web: WebConfig
    log: LogConfig = field(default_factory=LogConfig)


def load_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open("rb") as f:
        return tomllib.load(f)


def write_sample_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(SAMPLE_CONFIG, encoding="utf-8")


def config_from_dict(cfg: dict[str, Any]) -> Config:
    def _section(name: str, required: bool = True) -> dict[str, Any]:
        value = cfg.get(name)
        if value is None:
            if required:
                raise ConfigError(f"Missing config section: [{name}]")
            return {}
        if not isinstance(value, dict):
            raise ConfigError(f"[{name}] must be a table")
        return value

    def _req(section: dict[str, Any], name: str, key: str) -> Any:
        if key not in section:
            raise ConfigError(f"Missing config key: {name}.{key}")
        return section[key]

    def _str(value: Any, key: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{key} must be a non-empty string (got {value!r})")
        return value.strip()

    def _int(value: Any, key: str, minimum: int) -> int:
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer (got {value!r})")
        if value < minimum:
            raise ConfigError(f"{key} must be >= {minimum} (got {value})")
        return value

    repo = _section("repo")
    web = _section("web")
    log = _section("log", required=False)

    branch = repo.get("branch")
    git_timeout = repo.get("git_timeout")
    port = _int(_req(web, "web", "port"), "web.port", MIN_PORT)
    if port > MAX_PORT:
        raise ConfigError(f"web.port must be <= {MAX_PORT} (got {port})")
    log_path = log.get("path")
    log_level = _str(log.get("level", DEFAULT_LOG_LEVEL), "log.level").upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(
            f"log.level must be one of {', '.join(LOG_LEVELS)} (got {log_level})"
        )

    return Config(
        repo=RepoConfig(
            git_url=_str(_req(repo, "repo", "git_url"), "repo.git_url"),
            path=Path(_str(_req(repo, "repo", "path"), "repo.path")),
            update_interval=_int(
                _req(repo, "repo", "update_interval"), "repo.update_interval", 1
            ),
            branch=_str(branch, "repo.branch") if branch is not None else None,
            clone_retry_count=_int(
                repo.get("clone_retry_count", DEFAULT_CLONE_RETRY_COUNT),
                "repo.clone_retry_count",
                1,
            ),
            clone_retry_delay=_int(
                repo.get("clone_retry_delay", DEFAULT_CLONE_RETRY_DELAY),
                "repo.clone_retry_delay",
                0,
            ),
            git_timeout=(
                _int(git_timeout, "repo.git_timeout", 1)
                if git_timeout is not None
                else None
            ),
        ),
        web=WebConfig(
            address=_str(_req(web, "web", "address"), "web.address"),
            port=port,
            workers=_int(web.get("workers", DEFAULT_WEB_WORKERS), "web.workers", 1),
        ),
        log=LogConfig(
            path=Path(_str(log_path, "log.path")) if log_path is not None else None,
            level=log_level,
        ),
    )

