import html
import os
import stat
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
from urllib.parse import quote

import anyio.to_thread
import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.datastructures import URL
from starlette.exceptions import HTTPException
from starlette.types import Scope

from index_mirror.config import DEFAULT_WEB_WORKERS, Config


def _is_hidden(path: str) -> bool:
    return any(part.startswith(".") and part != "." for part in path.split(os.sep))


def list_directory(directory: Path) -> list[tuple[str, bool]]:
    entries = []
    with os.scandir(directory) as it:
        for entry in it:
            if entry.name.startswith("."):
                continue
            entries.append((entry.name, entry.is_dir()))
    entries.sort(key=lambda item: (not item[1], item[0]))
    return entries


def render_listing(url_path: str, entries: list[tuple[str, bool]]) -> str:
    title = html.escape(f"Index of {url_path}")
    items = []
    if url_path != "/":
        items.append('<li><a href="../">../</a></li>')
    for name, is_dir in entries:
        suffix = "/" if is_dir else ""
        href = quote(name) + suffix
        items.append(f'<li><a href="{href}">{html.escape(name)}{suffix}</a></li>')
    return (
        "<!DOCTYPE html>\n"
        f"<html><head><meta charset=\"utf-8\"><title>{title}</title></head>\n"
        f"<body><h1>{title}</h1>\n<ul>\n" + "\n".join(items) + "\n</ul></body></html>\n"
    )


class ListingStaticFiles(StaticFiles):
    async def get_response(self, path: str, scope: Scope) -> Response:
        if _is_hidden(path):
            raise HTTPException(status_code=404)
        try:
            return await super().get_response(path, scope)
        except HTTPException as exc:
            if exc.status_code != 404:
                raise
            full_path, stat_result = await anyio.to_thread.run_sync(
                self.lookup_path, path
            )
            if stat_result is None or not stat.S_ISDIR(stat_result.st_mode):
                raise
        if not scope["path"].endswith("/"):
            url = URL(scope=scope)
            return RedirectResponse(url=url.replace(path=url.path + "/"))
        entries = await anyio.to_thread.run_sync(list_directory, Path(full_path))
        return HTMLResponse(render_listing(scope["path"], entries))


def create_app(root: Path, workers: int = DEFAULT_WEB_WORKERS) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # File reads run on anyio's default thread pool; size it to the worker count.
        anyio.to_thread.current_default_thread_limiter().total_tokens = workers
        yield

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.mount("/", ListingStaticFiles(directory=root, html=True), name="mirror")
    return app


def build_server(config: Config) -> uvicorn.Server:
    app = create_app(config.repo.path, workers=config.web.workers)
    return uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.web.address,
            port=config.web.port,
            log_config=None,
        )
    )
