import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit

DEFAULT_SSH_USER = "git"
SSH_SCHEMES = ("ssh", "git+ssh", "ssh+git")

_SCP_LIKE_URL = re.compile(r"^(?:(?P<user>[^@/:]+)@)?(?P<host>[^/:]+):(?!//)")


class CredentialError(Exception):
    pass


class CredentialProvider(Protocol):
    def environment(self, url: str) -> dict[str, str]:
        ...


def is_ssh_url(url: str) -> bool:
    if "://" in url:
        return url.split("://", 1)[0].lower() in SSH_SCHEMES
    # Local paths such as ./repo or /srv/repo.git never look like host:path.
    if url.startswith(("/", ".")):
        return False
    return _SCP_LIKE_URL.match(url) is not None


def parse_ssh_user(url: str) -> str | None:
    if not is_ssh_url(url):
        return None
    if "://" in url:
        return urlsplit(url).username or None
    match = _SCP_LIKE_URL.match(url)
    return match.group("user") if match else None


@dataclass(frozen=True)
class SshKey:
    user: str
    private_key: Path
    public_key: Path


class DefaultCredentials:
    def environment(self, url: str) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        return env


class SshKeyCredentials:
    def __init__(self, home: Path | None = None) -> None:
        self._home = home
        self._fallback = DefaultCredentials()

    def _home_dir(self) -> Path:
        if self._home is not None:
            return self._home
        try:
            return Path.home()
        except (KeyError, RuntimeError) as exc:
            raise CredentialError(f"cannot determine home directory: {exc}") from exc

    def resolve_key(self, url: str) -> SshKey:
        ssh_dir = self._home_dir() / ".ssh"
        return SshKey(
            user=parse_ssh_user(url) or DEFAULT_SSH_USER,
            private_key=ssh_dir / "id_rsa",
            public_key=ssh_dir / "id_rsa.pub",
        )

    def environment(self, url: str) -> dict[str, str]:
        env = self._fallback.environment(url)
        if not is_ssh_url(url):
            return env
        key = self.resolve_key(url)
        env["GIT_SSH_COMMAND"] = (
            f'ssh -i "{key.private_key}" -o IdentitiesOnly=yes '
            f"-o BatchMode=yes -l {key.user}"
        )
        return env
