"""Validation Service: the server side of the proximity-gated lock.

This daemon:
- Issues short-lived tokens to enrolled credentials (rate limited)
- Decides relayed door requests (token + RSSI + distance)
- Answers status polls from credential holders
- Exposes a shared-secret admin surface (enroll, revoke, status)
- Sweeps expired tokens and enrollments in the background
- Writes every decision to the audit log
"""

import asyncio
import hmac
import logging
import time
from datetime import timedelta, timezone
from typing import Any, AsyncIterator, Callable

from aiohttp import web
from pydantic import BaseModel, ValidationError

from proxlock.audit import AuditLogger
from proxlock.config import ServiceConfig
from proxlock.models import (
    Decision,
    DenyReason,
    EnrollRequest,
    IssuedToken,
    RevokeRequest,
    TokenRequest,
    ValidationRequest,
    to_datetime,
)
from proxlock.proximity import ProximityPolicy, ProximityValidator
from proxlock.rate_limiter import RateLimiter, Suspended
from proxlock.token_store import (
    DEFAULT_ENROLLMENT_DAYS,
    DuplicateCredential,
    EnrollmentExpired,
    TokenStore,
    UnknownCredential,
    UnknownIdentity,
)

logger = logging.getLogger(__name__)

ADMIN_SECRET_HEADER = "X-Admin-Secret"


class InvalidInput(ValueError):
    """Request body or query is malformed."""
    pass


async def _read_model(request: web.Request, model: type[BaseModel]) -> Any:
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidInput("invalid JSON") from e
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "body" for err in e.errors())
        raise InvalidInput(f"invalid fields: {fields}") from e


@web.middleware
async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Malformed input becomes 400; anything unexpected becomes 500."""
    try:
        return await handler(request)
    except InvalidInput as e:
        return web.json_response({"error": "invalid_request", "detail": str(e)}, status=400)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception(f"Error handling {request.method} {request.path}")
        return web.json_response({"error": "internal error"}, status=500)


class ValidatorService:
    """Validation service daemon.

    The decision logic lives in the store and proximity validator; this
    class only adapts it to HTTP, runs it off the event loop and audits it.
    """

    def __init__(
        self,
        config: ServiceConfig,
        store: TokenStore | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store or TokenStore(
            config.db_path,
            clock=clock,
            token_ttl=config.token_ttl_seconds,
        )
        self.limiter = RateLimiter(
            self.store,
            window=config.rate_window_seconds,
            max_requests=config.rate_max_requests,
        )
        self.proximity = ProximityValidator(
            self.store,
            ProximityPolicy(
                rssi_floor=config.rssi_threshold,
                max_distance_cm=config.distance_threshold_cm,
            ),
        )
        self.audit = audit or AuditLogger(config.audit_log_path)
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.add_routes([
            web.post("/request-token", self._handle_request_token),
            web.post("/validate", self._handle_validate),
            web.get("/check-status", self._handle_check_status),
            web.post("/enroll", self._handle_enroll),
            web.post("/revoke", self._handle_revoke),
            web.get("/server-status", self._handle_server_status),
            web.get("/ping", self._handle_ping),
        ])
        app.cleanup_ctx.append(self._sweepers)
        return app

    # --- Issuance ---

    def issue(self, credential: str) -> IssuedToken | Suspended:
        """Check standing, apply admission control, then issue.

        Raises:
            UnknownCredential: No such enrollment
            EnrollmentExpired: Enrollment expiry has passed
        """
        self.store.require_active(credential)
        admission = self.limiter.admit(credential)
        if isinstance(admission, Suspended):
            return admission
        return self.store.issue_short_token(credential)

    async def _handle_request_token(self, request: web.Request) -> web.Response:
        req = await _read_model(request, TokenRequest)

        try:
            result = await asyncio.to_thread(self.issue, req.credential)
        except UnknownCredential:
            logger.warning("request-token for unknown credential")
            self.audit.log("token_refused", reason="unknown_credential")
            return web.json_response({"error": "unknown_credential"}, status=403)
        except EnrollmentExpired:
            logger.warning("request-token for expired enrollment")
            self.audit.log("token_refused", reason="enrollment_expired")
            return web.json_response({"error": "enrollment_expired"}, status=403)

        if isinstance(result, Suspended):
            until = to_datetime(result.until).isoformat()
            self.audit.log("token_refused", reason="rate_limited", suspended_until=until)
            return web.json_response(
                {"error": "rate_limited", "suspended_until": until},
                status=429,
            )

        self.audit.log("token_issued", token=result.token, expires_at=result.expires_at.isoformat())
        logger.info(f"Issued short-lived token, expires {result.expires_at.isoformat()}")
        return web.json_response(result.to_dict())

    # --- Door decisions ---

    async def _handle_validate(self, request: web.Request) -> web.Response:
        try:
            req = await _read_model(request, ValidationRequest)
        except InvalidInput as e:
            body = Decision.deny(DenyReason.INVALID_REQUEST).to_dict()
            body["detail"] = str(e)
            return web.json_response(body, status=400)

        decision = await asyncio.to_thread(self.proximity.validate, req)

        self.audit.log(
            "access_granted" if decision.granted else "access_denied",
            token=req.token,
            door_id=req.door_id,
            reason=decision.reason.value if decision.reason else None,
            rssi=req.rssi,
            distance=req.distance,
        )
        return web.json_response(decision.to_dict(), status=200 if decision.granted else 403)

    async def _handle_check_status(self, request: web.Request) -> web.Response:
        token = request.query.get("token")
        if not token:
            raise InvalidInput("token required")
        status = await asyncio.to_thread(self.store.status, token)
        return web.json_response({"status": status.value})

    # --- Admin ---

    def _is_admin(self, request: web.Request) -> bool:
        secret = self.config.admin_secret
        if not secret:
            return False
        provided = request.headers.get(ADMIN_SECRET_HEADER, "")
        return hmac.compare_digest(provided.encode(), secret.encode())

    async def _handle_enroll(self, request: web.Request) -> web.Response:
        if not self._is_admin(request):
            return web.json_response({"error": "unauthorized"}, status=403)
        req = await _read_model(request, EnrollRequest)

        if req.expires_at is None:
            expires_at = self.store.clock() + timedelta(days=DEFAULT_ENROLLMENT_DAYS).total_seconds()
        elif req.expires_at.tzinfo is None:
            expires_at = req.expires_at.replace(tzinfo=timezone.utc).timestamp()
        else:
            expires_at = req.expires_at.timestamp()

        try:
            enrollment = await asyncio.to_thread(
                self.store.enroll,
                req.credential,
                req.permissions,
                expires_at,
                req.identity,
            )
        except DuplicateCredential:
            return web.json_response({"error": "credential or identity already exists"}, status=409)

        self.audit.log("enrolled", identity=req.identity, permissions=enrollment.permissions)
        return web.json_response({
            "ok": True,
            "permissions": enrollment.permissions,
            "expires_at": enrollment.expires_at.isoformat(),
        })

    async def _handle_revoke(self, request: web.Request) -> web.Response:
        if not self._is_admin(request):
            return web.json_response({"error": "unauthorized"}, status=403)
        req = await _read_model(request, RevokeRequest)

        try:
            await asyncio.to_thread(self.store.revoke, req.identity)
        except UnknownIdentity:
            return web.json_response({"error": "identity_not_found"}, status=404)

        self.audit.log("revoked", identity=req.identity)
        return web.json_response({"ok": True})

    async def _handle_server_status(self, request: web.Request) -> web.Response:
        if not self._is_admin(request):
            return web.json_response({"error": "unauthorized"}, status=403)
        snapshot = await asyncio.to_thread(self.store.server_status)
        return web.json_response(snapshot)

    async def _handle_ping(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    # --- Background sweeps ---

    async def _sweep_loop(self, kind: str, interval: float, sweep: Callable[[], int]) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._sweep_once(kind, sweep)

    async def _sweep_once(self, kind: str, sweep: Callable[[], int]) -> int:
        """Run one sweep; failures are logged and the loop keeps going."""
        try:
            removed = await asyncio.to_thread(sweep)
            if removed:
                self.audit.log("sweep", kind=kind, removed=removed)
        except Exception:
            logger.exception(f"{kind} sweep failed")
            return 0
        return removed

    async def _sweepers(self, app: web.Application) -> AsyncIterator[None]:
        tasks = [
            asyncio.create_task(self._sweep_loop(
                "tokens",
                self.config.token_sweep_interval_seconds,
                self.store.sweep_expired_tokens,
            )),
            asyncio.create_task(self._sweep_loop(
                "enrollments",
                self.config.enrollment_sweep_interval_seconds,
                self.store.sweep_expired_enrollments,
            )),
        ]
        yield
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the service and serve until cancelled."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()

        if not self.config.admin_secret:
            logger.warning("No admin secret configured; admin endpoints are disabled")
        logger.info(f"Validation service listening on {self.config.host}:{self.config.port}")
        self.audit.log("service_started")

        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the service."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self.audit.log("service_stopped")
        self.store.close()
