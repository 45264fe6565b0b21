"""Ephemeral review server.

One ``ReviewServer`` serves exactly one proposal to one browser session:
it binds a random loopback port, embeds the plan into the review page,
keeps an idle deadline that every GET and heartbeat pushes forward, and
accepts a single terminal action (submit or cancel). If nothing happens
before the deadline the server cancels itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from .errors import ReviewServerError
from .models import Decision, Proposal, ReviewEndReason

logger = logging.getLogger(__name__)

FORM_DIR = Path(__file__).resolve().parent / "form"

_PLAN_DATA_PLACEHOLDER = "__PLAN_DATA_JSON__"
_SESSION_TOKEN_PLACEHOLDER = "__SESSION_TOKEN__"
_NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}
_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
_STATIC_ASSETS = {
    "/styles.css": ("styles.css", "text/css"),
    "/script.js": ("script.js", "application/javascript"),
}


class ServerState(str, Enum):
    CREATED = "created"
    SERVING = "serving"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ReviewServer:
    """Single-session HTTP endpoint for reviewing one proposal."""

    def __init__(
        self,
        *,
        proposal: Proposal,
        on_submit: Callable[[Decision], None],
        on_cancel: Callable[[ReviewEndReason], None],
        cwd: str = "",
        timeout: float = 600.0,
        heartbeat_interval: float = 10.0,
        grace_delay: float = 0.5,
        host: str = "127.0.0.1",
        form_dir: Path = FORM_DIR,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.proposal = proposal
        self.cwd = cwd
        self.timeout = timeout
        self.heartbeat_interval = heartbeat_interval
        self.grace_delay = grace_delay
        self.host = host
        self.form_dir = form_dir
        self.token = uuid.uuid4().hex
        self.state = ServerState.CREATED
        self.resolution: ReviewEndReason | None = None
        self.url: str | None = None

        self._on_submit = on_submit
        self._on_cancel = on_cancel
        self._runner: web.AppRunner | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._deadline = 0.0
        self._idle_handle: asyncio.TimerHandle | None = None
        self._grace_handle: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> str:
        """Bind an ephemeral loopback port and return the session URL."""
        if self.state is not ServerState.CREATED:
            raise RuntimeError(f"ReviewServer cannot start from state {self.state.value}")
        self._loop = asyncio.get_running_loop()
        runner = web.AppRunner(self._build_app(), access_log=None)
        try:
            await runner.setup()
            site = web.TCPSite(runner, self.host, 0)
            await site.start()
            port = runner.addresses[0][1]
        except (OSError, IndexError) as exc:
            await runner.cleanup()
            raise ReviewServerError(f"Failed to start review server: {exc}") from exc

        self._runner = runner
        self.state = ServerState.SERVING
        self._touch()
        self.url = f"http://{self.host}:{port}/?session={self.token}"
        logger.info("Review server listening on %s:%d (timeout=%ss)", self.host, port, self.timeout)
        return self.url

    async def close(self) -> None:
        """Release the port and every timer. Safe to call repeatedly."""
        if self.state is ServerState.CLOSED:
            return
        self.state = ServerState.CLOSED
        self._cancel_idle_timer()
        if self._grace_handle is not None:
            self._grace_handle.cancel()
            self._grace_handle = None
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.debug("Review server closed")

    @property
    def is_serving(self) -> bool:
        return self.state is ServerState.SERVING

    def remaining(self) -> int:
        if self._loop is None or not self.is_serving:
            return 0
        return max(0, int(round(self._deadline - self._loop.time())))

    # ------------------------------------------------------------------
    # Idle deadline
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        if not self.is_serving or self._loop is None:
            return
        self._cancel_idle_timer()
        self._deadline = self._loop.time() + self.timeout
        self._idle_handle = self._loop.call_at(self._deadline, self._on_idle_timeout)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle_timeout(self) -> None:
        self._idle_handle = None
        if not self._mark_resolved(ReviewEndReason.TIMEOUT):
            return
        logger.info("Review session idle for %ss; cancelling", self.timeout)
        self._on_cancel(ReviewEndReason.TIMEOUT)

    def _mark_resolved(self, reason: ReviewEndReason) -> bool:
        if not self.is_serving:
            return False
        self.state = ServerState.RESOLVED
        self.resolution = reason
        self._cancel_idle_timer()
        return True

    def _schedule(self, callback: Callable[..., None], *args: Any) -> None:
        assert self._loop is not None
        self._grace_handle = self._loop.call_later(self.grace_delay, self._fire, callback, *args)

    def _fire(self, callback: Callable[..., None], *args: Any) -> None:
        self._grace_handle = None
        if self.state is ServerState.CLOSED:
            return
        callback(*args)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _build_app(self) -> web.Application:
        @web.middleware
        async def session_middleware(request: web.Request, handler: Callable[..., Any]) -> web.StreamResponse:
            if request.method == "GET" and not self._token_mismatch(request):
                self._touch()
            response = await handler(request)
            if not response.prepared:
                response.headers.update(_CORS_HEADERS)
            return response

        app = web.Application(middlewares=[session_middleware])
        app.router.add_get("/", self._handle_index)
        app.router.add_get("/index.html", self._handle_index)
        for path in _STATIC_ASSETS:
            app.router.add_get(path, self._handle_asset)
        app.router.add_get("/heartbeat", self._handle_heartbeat)
        app.router.add_post("/submit", self._handle_submit)
        app.router.add_post("/cancel", self._handle_cancel)
        app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_options)
        return app

    def _token_mismatch(self, request: web.Request) -> bool:
        supplied = request.rel_url.query.get("session")
        return supplied is not None and supplied != self.token

    def page_data(self) -> dict[str, Any]:
        return {
            "plan": self.proposal.to_wire(),
            "cwd": self.cwd,
            "sessionToken": self.token,
            "timeout": self.timeout,
            "heartbeatInterval": self.heartbeat_interval,
        }

    def render_index(self) -> str:
        template = (self.form_dir / "index.html").read_text(encoding="utf-8")
        # Keep "</script>" inside plan text from closing the inline data block.
        plan_json = json.dumps(self.page_data()).replace("</", "<\\/")
        return template.replace(_PLAN_DATA_PLACEHOLDER, plan_json).replace(_SESSION_TOKEN_PLACEHOLDER, self.token)

    async def _handle_options(self, request: web.Request) -> web.Response:
        return web.Response(status=200)

    async def _handle_index(self, request: web.Request) -> web.Response:
        if self._token_mismatch(request):
            return web.Response(status=403, text="Unknown review session", content_type="text/plain")
        try:
            html = self.render_index()
        except OSError as exc:
            logger.error("Review form unavailable: %s", exc)
            return web.Response(status=500, text="Form HTML not found", content_type="text/plain")
        return web.Response(text=html, content_type="text/html", charset="utf-8", headers=_NO_CACHE_HEADERS)

    async def _handle_asset(self, request: web.Request) -> web.Response:
        filename, content_type = _STATIC_ASSETS[request.path]
        path = self.form_dir / filename
        if not path.is_file():
            return web.Response(status=404, text="Not Found", content_type="text/plain")
        return web.Response(
            text=path.read_text(encoding="utf-8"),
            content_type=content_type,
            charset="utf-8",
            headers=_NO_CACHE_HEADERS,
        )

    async def _handle_heartbeat(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": self.is_serving, "remaining": self.remaining()})

    async def _handle_submit(self, request: web.Request) -> web.StreamResponse:
        if self._token_mismatch(request):
            return web.json_response({"error": "Unknown review session"}, status=403)
        if not self.is_serving:
            return web.json_response({"error": "session already resolved"}, status=409)
        self._touch()

        try:
            payload = await request.json()
            decision = Decision.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            logger.warning("Rejected review submission: %s", exc)
            return web.json_response({"error": "Invalid JSON"}, status=400)

        unknown = sorted(set(decision.selected_phases) - set(self.proposal.phase_numbers()))
        if unknown:
            return web.json_response({"error": f"Unknown phases: {unknown}"}, status=400)

        # The handler may have yielded while reading the body.
        if not self._mark_resolved(ReviewEndReason.SUBMITTED):
            return web.json_response({"error": "session already resolved"}, status=409)

        response = await self._acknowledge(request)
        logger.info("Review submitted: %s", decision.decision.value)
        self._schedule(self._on_submit, decision)
        return response

    async def _handle_cancel(self, request: web.Request) -> web.StreamResponse:
        if self._token_mismatch(request):
            return web.json_response({"error": "Unknown review session"}, status=403)
        if not self._mark_resolved(ReviewEndReason.CANCELLED):
            return web.json_response({"error": "session already resolved"}, status=409)

        response = await self._acknowledge(request)
        logger.info("Review cancelled from the browser")
        self._schedule(self._on_cancel, ReviewEndReason.CANCELLED)
        return response

    @staticmethod
    async def _acknowledge(request: web.Request) -> web.StreamResponse:
        """Flush the success response before the resolution callback is scheduled."""
        response = web.json_response({"success": True}, headers=_CORS_HEADERS)
        await response.prepare(request)
        await response.write_eof()
        return response
