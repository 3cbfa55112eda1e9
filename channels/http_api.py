"""HTTP API server for the nudged daemon.

Control and inspection endpoints for scripts and monitoring. Runs
alongside the Telegram/CLI channel.

Endpoints:
    GET  /api/v1/status    — Health check + scheduler/queue stats (open)
    GET  /api/v1/checkins  — Recent check-in log entries
    POST /api/v1/quiet     — Set or clear do-not-disturb
    POST /api/v1/checkin   — Run a proactive check now
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import Any

from aiohttp import web

log = logging.getLogger(__name__)

MAX_QUIET_HOURS = 48
MAX_CHECKIN_LIMIT = 100


class _RateLimiter:
    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        now = time.monotonic()
        # Periodic sweep: evict stale keys when dict grows large
        if len(self._hits) > 1000:
            stale = [k for k, v in self._hits.items()
                     if not v or now - v[-1] >= self.window]
            for k in stale:
                del self._hits[k]
        hits = self._hits[key]
        self._hits[key] = [t for t in hits if now - t < self.window]
        if len(self._hits[key]) >= self.max_requests:
            return False
        self._hits[key].append(now)
        return True


class HTTPApi:
    """HTTP control surface; all state access goes through callbacks."""

    _AUTH_EXEMPT_PATHS = frozenset({"/api/v1/status"})
    _READ_ONLY_PATHS = frozenset({"/api/v1/status", "/api/v1/checkins"})

    def __init__(
        self,
        host: str,
        port: int,
        auth_token: str,
        get_status: Any = None,
        get_checkins: Any = None,
        set_quiet: Any = None,
        trigger_checkin: Any = None,
        max_body_bytes: int = 64 * 1024,
        rate_limit: int = 30,
        rate_window: int = 60,
        status_rate_limit: int = 60,
        agent_name: str = "",
    ):
        self.host = host
        self.port = port
        self.auth_token = auth_token
        self.agent_name = agent_name
        self._get_status = get_status
        self._get_checkins = get_checkins
        self._set_quiet = set_quiet
        self._trigger_checkin = trigger_checkin
        self._max_body_bytes = max_body_bytes
        self._runner: web.AppRunner | None = None
        self._rate_limiter = _RateLimiter(max_requests=rate_limit, window_seconds=rate_window)
        self._status_rate_limiter = _RateLimiter(max_requests=status_rate_limit, window_seconds=rate_window)

    # ─── Response Helper ─────────────────────────────────────────

    def _json_response(self, data: dict, status: int = 200) -> web.Response:
        """Wrap web.json_response with agent identity injection."""
        if self.agent_name:
            data["agent"] = self.agent_name
        resp = web.json_response(data, status=status)
        if self.agent_name:
            resp.headers["X-Nudged-Agent"] = self.agent_name
        return resp

    # ─── Lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application(
            middlewares=[self._auth_middleware, self._rate_middleware],
            client_max_size=self._max_body_bytes,
        )
        app.router.add_get("/api/v1/status", self._handle_status)
        app.router.add_get("/api/v1/checkins", self._handle_checkins)
        app.router.add_post("/api/v1/quiet", self._handle_quiet)
        app.router.add_post("/api/v1/checkin", self._handle_checkin)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("HTTP API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Graceful shutdown."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("HTTP API stopped")

    # ─── Auth Middleware ──────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.path in self._AUTH_EXEMPT_PATHS:
            return await handler(request)

        # No token configured = service misconfigured, deny all protected endpoints
        if not self.auth_token:
            return web.json_response(
                {"error": "No auth token configured"}, status=503,
            )

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], self.auth_token):
            log.warning("HTTP API: auth failed from %s %s",
                        request.remote, request.path)
            return web.json_response(
                {"error": "unauthorized"}, status=401,
            )
        return await handler(request)

    # ─── Rate Limit Middleware ────────────────────────────────────

    @web.middleware
    async def _rate_middleware(self, request: web.Request, handler):
        client_ip = request.remote or "unknown"
        if request.path in self._READ_ONLY_PATHS:
            limiter = self._status_rate_limiter
        else:
            limiter = self._rate_limiter
        if not limiter.check(client_ip):
            return web.json_response(
                {"error": "rate limit exceeded"}, status=429,
            )
        return await handler(request)

    # ─── Endpoints ────────────────────────────────────────────────

    async def _handle_status(self, request: web.Request) -> web.Response:
        """GET /api/v1/status — health check + stats."""
        status = self._get_status() if self._get_status else {"status": "ok"}
        return self._json_response(status, status=200)

    async def _handle_checkins(self, request: web.Request) -> web.Response:
        """GET /api/v1/checkins?limit=N — newest check-in logs first."""
        raw = request.query.get("limit", "20")
        try:
            limit = int(raw)
        except ValueError:
            return web.json_response(
                {"error": "\"limit\" must be an integer"}, status=400,
            )
        if not 1 <= limit <= MAX_CHECKIN_LIMIT:
            return web.json_response(
                {"error": f"\"limit\" must be between 1 and {MAX_CHECKIN_LIMIT}"}, status=400,
            )

        checkins = self._get_checkins(limit) if self._get_checkins else []
        return self._json_response({"checkins": checkins}, status=200)

    async def _handle_quiet(self, request: web.Request) -> web.Response:
        """POST /api/v1/quiet — {"hours": n} to enable, {"off": true} to clear."""
        try:
            body = await request.json()
        except web.HTTPException:
            raise
        except (json.JSONDecodeError, Exception):
            return web.json_response(
                {"error": "invalid JSON body"}, status=400,
            )
        if not isinstance(body, dict):
            return web.json_response(
                {"error": "JSON object expected"}, status=400,
            )

        if body.get("off"):
            hours = None
        else:
            hours = body.get("hours", 4)
            if isinstance(hours, bool) or not isinstance(hours, (int, float)) \
                    or not 0 < hours <= MAX_QUIET_HOURS:
                return web.json_response(
                    {"error": f"\"hours\" must be a number in (0, {MAX_QUIET_HOURS}]"},
                    status=400,
                )

        if self._set_quiet is None:
            return web.json_response({"error": "not available"}, status=503)
        result = self._set_quiet(hours)
        return self._json_response(result, status=200)

    async def _handle_checkin(self, request: web.Request) -> web.Response:
        """POST /api/v1/checkin — run a proactive check in the background."""
        accepted = bool(self._trigger_checkin and self._trigger_checkin())
        if not accepted:
            return web.json_response(
                {"error": "proactive scheduler not running"}, status=409,
            )
        return self._json_response(
            {"accepted": True, "queued_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())},
            status=202,
        )
