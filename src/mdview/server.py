"""Preview server: Starlette + SSE for one watched Markdown file.

Runs uvicorn in a background thread, serving the rendered page and a
live-reload event stream. Every connection is its own asyncio task, so
long-lived SSE streams never hold up page or image requests.

Endpoints:
    GET  /events                 → SSE stream ("data: reload" / "data: keepalive")
    GET  /{path}.png|.jpg|...    → image next to the watched file
    GET  /{anything else}        → rendered page (re-rendered from disk)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import AsyncIterator
from pathlib import Path

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response, StreamingResponse
from starlette.routing import Route

from mdview._utils import DEFAULT_HOST, DEFAULT_PORT, IMAGE_MIME_TYPES
from mdview.reload import ReloadBus, Subscription
from mdview.render import render_file

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL = 15.0
_ASSET_SUFFIXES = tuple(IMAGE_MIME_TYPES)
_ASSET_CACHE_CONTROL = "public, max-age=3600"

_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}
_RELOAD_MESSAGE = "data: reload\n\n"
_KEEPALIVE_MESSAGE = "data: keepalive\n\n"


class RenderCache:
    """Last rendered page for one file, shared by all request handlers.

    The lock only guards the reference swap; reading and rendering the
    file happen outside it.
    """

    def __init__(self, file_path: Path, initial_html: str = "") -> None:
        self.file_path = file_path
        self._html = initial_html
        self._lock = threading.Lock()

    def get(self) -> str:
        with self._lock:
            return self._html

    def set(self, html: str) -> None:
        with self._lock:
            self._html = html

    def refresh(self) -> bool:
        """Re-render from disk. On read errors the previous page is kept."""
        try:
            html = render_file(self.file_path)
        except OSError as e:
            logger.warning(f"Error reading {self.file_path}: {e}")
            return False
        self.set(html)
        return True


def resolve_asset(base_dir: Path, url_path: str) -> Path | None:
    """Map a request path to a regular file inside ``base_dir``.

    Path-traversal safe: symlinks and ``..`` segments are resolved before
    the containment check. Returns None for anything outside the base
    directory, missing, or not a regular file.
    """
    rel_path = url_path.lstrip("/")
    if not rel_path:
        return None

    try:
        base = base_dir.resolve()
        resolved = (base / rel_path).resolve()
    except (ValueError, OSError, RuntimeError):
        return None

    try:
        resolved.relative_to(base)
    except ValueError:
        logger.warning(f"Blocked path traversal attempt: {url_path}")
        return None

    if not resolved.is_file():
        return None

    return resolved


class PreviewServer:
    """HTTP + SSE server for a single previewed file.

    Args:
        file_path: Canonical path of the watched Markdown file.
        bus: Reload bus fed by the file watcher.
        port: Port to bind to.
        host: Host to bind to (default: 127.0.0.1).
        keepalive_interval: Seconds between SSE keepalive messages.
    """

    def __init__(
        self,
        file_path: Path,
        bus: ReloadBus | None = None,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
    ) -> None:
        self.file_path = file_path
        self.base_dir = file_path.parent
        self.bus = bus or ReloadBus()
        self.host = host
        self.port = port
        self.keepalive_interval = keepalive_interval
        self.cache = RenderCache(file_path)
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

        self._app = self._build_app()

    def _build_app(self) -> Starlette:
        """Build the Starlette application with all routes."""
        routes = [
            Route("/events", self._events),
            Route("/{path:path}", self._dispatch),
        ]
        return Starlette(routes=routes)

    # --- HTTP Endpoints ---

    async def _dispatch(self, request: Request) -> Response:
        if request.url.path.lower().endswith(_ASSET_SUFFIXES):
            return await self._asset(request)
        return await self._page(request)

    async def _page(self, request: Request) -> Response:
        """Re-render the file, then serve the cached page."""
        await run_in_threadpool(self.cache.refresh)
        return HTMLResponse(self.cache.get(), headers={"Cache-Control": "no-cache"})

    async def _asset(self, request: Request) -> Response:
        """Serve an image that lives beside the watched file."""
        resolved = resolve_asset(self.base_dir, request.url.path)
        if resolved is None:
            return PlainTextResponse("Not Found", status_code=404)
        try:
            content = await run_in_threadpool(resolved.read_bytes)
        except OSError as e:
            logger.error(f"Error reading asset {resolved}: {e}")
            return PlainTextResponse("Internal Server Error", status_code=500)
        media_type = IMAGE_MIME_TYPES.get(
            resolved.suffix.lower(), "application/octet-stream"
        )
        return Response(
            content=content,
            media_type=media_type,
            headers={"Cache-Control": _ASSET_CACHE_CONTROL},
        )

    async def _events(self, request: Request) -> Response:
        """Open an SSE stream with its own reload subscription."""
        subscription = self.bus.subscribe()
        return StreamingResponse(
            self._event_stream(subscription),
            headers=_SSE_HEADERS,
        )

    async def _event_stream(self, subscription: Subscription) -> AsyncIterator[str]:
        """Yield reloads as they arrive and a keepalive whenever none does.

        Ends when the client goes away (the response is cancelled or the
        write fails); the subscription is always released.
        """
        try:
            while True:
                if await subscription.receive(timeout=self.keepalive_interval):
                    yield _RELOAD_MESSAGE
                else:
                    yield _KEEPALIVE_MESSAGE
        finally:
            subscription.close()

    # --- Lifecycle ---

    def start(self, timeout: float = 5.0) -> None:
        """Start the server in a background daemon thread.

        Renders the initial page first. Raises OSError if the port cannot
        be bound within ``timeout`` seconds.
        """
        if self._thread and self._thread.is_alive():
            return

        self.cache.refresh()

        config = uvicorn.Config(
            app=self._app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=1,
        )
        self._server = uvicorn.Server(config)
        server = self._server

        def _run() -> None:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                loop.run_until_complete(server.serve())
            finally:
                loop.close()

        self._thread = threading.Thread(target=_run, name="mdview-server", daemon=True)
        self._thread.start()

        if not self._wait_for_server(timeout):
            self.stop()
            raise OSError(f"Could not start server on {self.host}:{self.port}")

    def _wait_for_server(self, timeout: float) -> bool:
        """Wait for uvicorn to finish startup. False if it died or timed out."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._server is not None and self._server.started:
                return True
            if self._thread is None or not self._thread.is_alive():
                return False
            time.sleep(0.05)
        return False

    def stop(self) -> None:
        """Ask uvicorn to exit and wait briefly for the thread."""
        if self._server:
            self._server.should_exit = True
        if self._thread:
            self._thread.join(timeout=3)
            self._thread = None
        self._server = None
        logger.debug("Preview server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"
