"""
Tests for the static file server that exposes the mirror.
"""

from __future__ import annotations

from pathlib import Path

import anyio.to_thread
import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient  # noqa: E402

from index_mirror.config import Config, RepoConfig, WebConfig  # noqa: E402
from index_mirror.webapp import build_server, create_app, list_directory, render_listing  # noqa: E402


@pytest.fixture
def root(tmp_path: Path) -> Path:
    (tmp_path / "config.json").write_text('{"dl": "https://example.com"}', encoding="utf-8")
    (tmp_path / "se" / "rd").mkdir(parents=True)
    (tmp_path / "se" / "rd" / "serde").write_text('{"name":"serde"}\n', encoding="utf-8")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "index.html").write_text("<h1>docs</h1>", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text("[core]\n", encoding="utf-8")
    (tmp_path / ".hidden").write_text("secret", encoding="utf-8")
    return tmp_path


@pytest.fixture
def client(root: Path) -> TestClient:
    return TestClient(create_app(root))


def test_serves_files(client):
    response = client.get("/config.json")

    assert response.status_code == 200
    assert response.json() == {"dl": "https://example.com"}


def test_serves_nested_files(client):
    response = client.get("/se/rd/serde")

    assert response.status_code == 200
    assert response.text == '{"name":"serde"}\n'


def test_root_listing(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    body = response.text
    assert "Index of /" in body
    assert '<a href="docs/">docs/</a>' in body
    assert '<a href="se/">se/</a>' in body
    assert '<a href="config.json">config.json</a>' in body
    assert body.index("se/") < body.index("config.json")
    assert ".git" not in body
    assert ".hidden" not in body
    assert "../" not in body


def test_nested_listing_links_to_parent(client):
    response = client.get("/se/")

    assert response.status_code == 200
    assert '<a href="../">../</a>' in response.text
    assert '<a href="rd/">rd/</a>' in response.text


def test_directory_without_slash_redirects(client):
    response = client.get("/se/rd", follow_redirects=False)

    assert response.status_code in (301, 302, 307, 308)
    assert response.headers["location"].endswith("/se/rd/")


def test_index_document_served(client):
    response = client.get("/docs/")

    assert response.status_code == 200
    assert response.text == "<h1>docs</h1>"


@pytest.mark.parametrize("path", ["/.git/config", "/.git/", "/.hidden", "/se/../.git/config"])
def test_dotfiles_are_not_served(client, path):
    assert client.get(path).status_code == 404


def test_missing_file(client):
    assert client.get("/cr/at/crate-that-does-not-exist").status_code == 404


def test_only_reads_allowed(client):
    assert client.post("/config.json").status_code == 405
    assert client.head("/config.json").status_code == 200


def test_lifespan_sizes_worker_pool(root):
    async def _total_tokens() -> float:
        return anyio.to_thread.current_default_thread_limiter().total_tokens

    with TestClient(create_app(root, workers=3)) as client:
        assert client.get("/config.json").status_code == 200
        assert client.portal.call(_total_tokens) == 3


def test_no_extra_routes(client):
    assert client.get("/openapi.json").status_code == 404


def test_listing_escapes_names():
    body = render_listing("/a&b/", [("<x>", False), ("sp ace", True)])

    assert "Index of /a&amp;b/" in body
    assert '<a href="%3Cx%3E">&lt;x&gt;</a>' in body
    assert '<a href="sp%20ace/">sp ace/</a>' in body


def test_list_directory_sorts_dirs_first(root):
    assert list_directory(root) == [
        ("docs", True),
        ("se", True),
        ("config.json", False),
    ]


def test_build_server_uses_config(root):
    config = Config(
        repo=RepoConfig(git_url="https://example.com/index.git", path=root, update_interval=60),
        web=WebConfig(address="127.0.0.1", port=18080, workers=4),
    )

    server = build_server(config)

    assert server.config.host == "127.0.0.1"
    assert server.config.port == 18080
    assert server.config.log_config is None
    assert server.should_exit is False
