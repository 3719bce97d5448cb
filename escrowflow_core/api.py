"""
REST / HTTP API server for EscrowFlow.

Built on ``aiohttp``; every handler is a thin adapter over ``EscrowEngine``.

Endpoints
---------
GET  /health                                  Liveness + database check
GET  /status                                  Engine summary
GET  /escrow/{depositor}/{escrow_id}          Record and vault balance
GET  /escrow/{depositor}/{escrow_id}/history  Audit trail
GET  /escrows?depositor=&status=              Listing
POST /escrow/initialize                       Create an escrow (caller = depositor)
POST /escrow/fund                             Depositor funds the vault
POST /escrow/release                          Depositor releases to beneficiary
POST /escrow/cancel                           Depositor cancels / refunds
POST /escrow/auto_release                     Anyone, once the deadline is due
POST /escrow/dispute                          Depositor or beneficiary disputes
POST /escrow/resolve                          Arbiter resolves a dispute

The acting identity is read from the ``X-Caller`` header.

Errors are JSON ``{"error": CODE_NAME, "message": ...}`` with:
  404 not found, 403 unauthorized, 409 wrong state or not yet due,
  400 validation, 500 fatal inconsistency.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header,
  compared with ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (explicit origins only).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(engine, host="127.0.0.1", port=8080, api_config=cfg.api)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import asyncio
import functools
import hmac
import json
import logging
import sqlite3
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from escrowflow_core.errors import ErrorCode, EscrowError, FatalInconsistencyError

if TYPE_CHECKING:
    from escrowflow_core.config import APIConfig
    from escrowflow_core.engine import EscrowEngine

logger = logging.getLogger("escrowflow_api")


# ═══════════════════════════════════════════════════════════════════
#  Error mapping
# ═══════════════════════════════════════════════════════════════════

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_AMOUNT: 400,
    ErrorCode.INVALID_ESCROW_ID: 400,
    ErrorCode.DISPUTE_REASON_TOO_LONG: 400,
    ErrorCode.ESCROW_NOT_FOUND: 404,
    ErrorCode.UNAUTHORIZED_DEPOSITOR: 403,
    ErrorCode.UNAUTHORIZED_ARBITER: 403,
    ErrorCode.UNAUTHORIZED_PARTY: 403,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.ESCROW_EXISTS: 409,
    ErrorCode.AUTO_RELEASE_DISABLED: 409,
    ErrorCode.AUTO_RELEASE_NOT_READY: 409,
    ErrorCode.INSUFFICIENT_VAULT_BALANCE: 409,
    ErrorCode.TRANSFER_FAILED: 409,
    ErrorCode.FATAL_INCONSISTENCY: 500,
}


def http_status_for(code: ErrorCode) -> int:
    return _STATUS_BY_CODE.get(code, 400)


def _error_response(status: int, error: str, message: str) -> web.Response:
    return web.json_response({"error": error, "message": message}, status=status)


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": "BAD_REQUEST", "message": message}),
        content_type="application/json",
    )


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting bools, floats and non-numeric input."""
    if isinstance(value, bool) or isinstance(value, float):
        raise _bad_request(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise _bad_request(f"{name} must be an integer")


def _require_str(body: dict, name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise _bad_request(f"{name} is required")
    return value


def _caller(request: web.Request) -> str:
    caller = request.headers.get("X-Caller", "").strip()
    if not caller:
        raise _bad_request("X-Caller header is required")
    return caller


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise _bad_request("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise _bad_request("JSON body must be an object")
    return body


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_error_middleware():
    """Translate engine exceptions into JSON error responses."""

    @web.middleware
    async def error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except EscrowError as exc:
            return _error_response(http_status_for(exc.code), exc.code.name, exc.message)
        except FatalInconsistencyError as exc:
            logger.critical(f"{request.method} {request.path}: {exc}")
            return _error_response(500, exc.code.name, str(exc))

    return error_middleware


def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST requests.

    The key is only read from the ``X-API-Key`` header, never from the
    query string.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method == "POST":
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers for listed origins.

    The ``*`` wildcard is ignored.
    """

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key, X-Caller"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """Thin aiohttp wrapper around an ``EscrowEngine``."""

    def __init__(
        self,
        engine: EscrowEngine,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.engine = engine
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._rate_limiter: _TokenBucket | None = None
        # One engine call at a time; the store holds a single connection.
        self._engine_lock = asyncio.Lock()

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes

            if cfg.rate_limit_rpm > 0:
                self._rate_limiter = _TokenBucket(cfg.rate_limit_rpm)
                middlewares.append(_make_rate_limit_middleware(self._rate_limiter))

            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))

            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))

        # Innermost, so auth and rate limiting reject before the engine runs.
        middlewares.append(_make_error_middleware())

        self._app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(self._app)
        return self._app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        app.router.add_get("/escrows", self._list_escrows)
        app.router.add_get("/escrow/{depositor}/{escrow_id}", self._get_escrow)
        app.router.add_get("/escrow/{depositor}/{escrow_id}/history", self._history)
        app.router.add_post("/escrow/initialize", self._initialize)
        app.router.add_post("/escrow/fund", self._fund)
        app.router.add_post("/escrow/release", self._release)
        app.router.add_post("/escrow/cancel", self._cancel)
        app.router.add_post("/escrow/auto_release", self._auto_release)
        app.router.add_post("/escrow/dispute", self._dispute)
        app.router.add_post("/escrow/resolve", self._resolve)

    async def _call(self, fn, *args):
        """Run a blocking engine call on the default executor."""
        async with self._engine_lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _escrow_payload(self, record) -> dict:
        return {
            "escrow": record.to_dict(),
            "vault_balance": self.engine.vault_balance(record),
        }

    def _apply(self, fn, *args) -> dict:
        return self._escrow_payload(fn(*args))

    async def _respond(self, fn, *args, status: int = 200) -> web.Response:
        payload = await self._call(self._apply, fn, *args)
        return web.json_response(payload, status=status)

    # ── read handlers ────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        try:
            schema = await self._call(self.engine.store.schema_version)
        except sqlite3.Error as exc:
            logger.error(f"Health check failed: {exc}")
            return web.json_response({"ok": False, "checks": {"storage": "down"}}, status=503)
        return web.json_response({
            "ok": True,
            "slot": await self._call(self.engine.clock.current_slot),
            "schema_version": schema,
            "checks": {"storage": "ok"},
        })

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(await self._call(self.engine.summary))

    async def _get_escrow(self, request: web.Request) -> web.Response:
        depositor = request.match_info["depositor"]
        escrow_id = _safe_int(request.match_info["escrow_id"], "escrow_id")
        return await self._respond(self.engine.get_escrow, depositor, escrow_id)

    async def _history(self, request: web.Request) -> web.Response:
        depositor = request.match_info["depositor"]
        escrow_id = _safe_int(request.match_info["escrow_id"], "escrow_id")
        entries = await self._call(self.engine.history, depositor, escrow_id)
        return web.json_response({"history": [e.to_dict() for e in entries]})

    async def _list_escrows(self, request: web.Request) -> web.Response:
        depositor = request.query.get("depositor") or None
        status = request.query.get("status") or None
        records = await self._call(
            functools.partial(self.engine.list_escrows, depositor=depositor, status=status),
        )
        return web.json_response({
            "escrows": [r.to_dict() for r in records],
            "count": len(records),
        })

    # ── transition handlers ──────────────────────────────────────

    async def _initialize(self, request: web.Request) -> web.Response:
        """
        POST /escrow/initialize
        Body: {"escrow_id": 1, "beneficiary": "bob", "arbiter": "carol",
               "asset": "USD", "amount": 100, "auto_release_deadline": 500}
        """
        caller = _caller(request)
        body = await _read_json(request)
        deadline = body.get("auto_release_deadline")
        return await self._respond(
            self.engine.initialize,
            caller,
            _safe_int(body.get("escrow_id"), "escrow_id"),
            _require_str(body, "beneficiary"),
            _require_str(body, "arbiter"),
            _require_str(body, "asset"),
            _safe_int(body.get("amount"), "amount"),
            _safe_int(deadline, "auto_release_deadline") if deadline is not None else None,
            status=201,
        )

    async def _target(self, request: web.Request) -> tuple[str, dict, str, int]:
        caller = _caller(request)
        body = await _read_json(request)
        return (
            caller,
            body,
            _require_str(body, "depositor"),
            _safe_int(body.get("escrow_id"), "escrow_id"),
        )

    async def _fund(self, request: web.Request) -> web.Response:
        caller, _body, depositor, escrow_id = await self._target(request)
        return await self._respond(self.engine.fund, caller, depositor, escrow_id)

    async def _release(self, request: web.Request) -> web.Response:
        caller, _body, depositor, escrow_id = await self._target(request)
        return await self._respond(self.engine.release, caller, depositor, escrow_id)

    async def _cancel(self, request: web.Request) -> web.Response:
        caller, _body, depositor, escrow_id = await self._target(request)
        return await self._respond(self.engine.cancel, caller, depositor, escrow_id)

    async def _auto_release(self, request: web.Request) -> web.Response:
        caller, _body, depositor, escrow_id = await self._target(request)
        return await self._respond(self.engine.auto_release, caller, depositor, escrow_id)

    async def _dispute(self, request: web.Request) -> web.Response:
        """Body: {"depositor": ..., "escrow_id": ..., "reason": "..."}"""
        caller, body, depositor, escrow_id = await self._target(request)
        reason = body.get("reason", "")
        if not isinstance(reason, str):
            raise _bad_request("reason must be a string")
        return await self._respond(self.engine.raise_dispute, caller, depositor, escrow_id, reason)

    async def _resolve(self, request: web.Request) -> web.Response:
        """Body: {"depositor": ..., "escrow_id": ..., "release_to_beneficiary": true}"""
        caller, body, depositor, escrow_id = await self._target(request)
        outcome = body.get("release_to_beneficiary")
        if not isinstance(outcome, bool):
            raise _bad_request("release_to_beneficiary must be true or false")
        return await self._respond(self.engine.resolve_dispute, caller, depositor, escrow_id, outcome)
