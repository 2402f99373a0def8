"""Proxlock Client: what a credential holder's device does.

Usage:
    async with ProxlockClient("https://lock.example.edu") as client:
        issued = await client.request_token("ALICE_ENROLLMENT_TOKEN")

        # Either advertise/push the token to the door...
        decision = await client.push_to_door("http://smartlock.local", issued.token)

        # ...or poll the service for the door's verdict
        status = await client.wait_for_decision(issued.token)
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

import httpx

from proxlock.errors import ProxlockError
from proxlock.models import Decision, IssuedToken, TokenStatus

logger = logging.getLogger(__name__)


class EnrollmentError(ProxlockError):
    """Credential is unknown or its enrollment has expired."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RateLimitedError(ProxlockError):
    """Too many token requests; retry after ``suspended_until``."""

    def __init__(self, suspended_until: datetime | None):
        super().__init__(f"rate limited until {suspended_until}")
        self.suspended_until = suspended_until


class ServiceError(ProxlockError):
    """Service unreachable or answered unexpectedly."""
    pass


class ProxlockClient:
    """Async client for the validation service and door controllers."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ProxlockClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ServiceError(f"request to {url} failed: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise ServiceError(f"unreadable response (HTTP {response.status_code})") from e
        if not isinstance(body, dict):
            raise ServiceError(f"unexpected response (HTTP {response.status_code})")
        return body

    async def ping(self) -> bool:
        """Check if the service is up."""
        try:
            response = await self._send("GET", "/ping")
        except ServiceError:
            return False
        return response.status_code == 200

    async def request_token(self, credential: str) -> IssuedToken:
        """Request a short-lived token.

        Raises:
            EnrollmentError: Credential unknown or expired
            RateLimitedError: Credential is suspended
            ServiceError: Anything else
        """
        response = await self._send("POST", "/request-token", json={"credential": credential})
        body = self._json(response)

        if response.status_code == 200:
            try:
                return IssuedToken.model_validate(body)
            except ValueError as e:
                raise ServiceError("malformed token response") from e
        if response.status_code == 429:
            until = body.get("suspended_until")
            raise RateLimitedError(datetime.fromisoformat(until) if until else None)
        if response.status_code == 403:
            raise EnrollmentError(body.get("error", "forbidden"))
        raise ServiceError(body.get("error") or f"HTTP {response.status_code}")

    async def check_status(self, token: str) -> TokenStatus:
        """Poll the current state of a token."""
        response = await self._send("GET", "/check-status", params={"token": token})
        body = self._json(response)
        if response.status_code != 200:
            raise ServiceError(body.get("error") or f"HTTP {response.status_code}")
        try:
            return TokenStatus(body.get("status"))
        except ValueError as e:
            raise ServiceError(f"unknown status {body.get('status')!r}") from e

    async def wait_for_decision(
        self,
        token: str,
        interval: float = 1.0,
        timeout: float = 60.0,
    ) -> TokenStatus:
        """Poll until the token leaves Pending or ``timeout`` elapses.

        Returns the last status seen, which is still ``PENDING`` on timeout.
        """
        deadline = time.monotonic() + timeout
        status = await self.check_status(token)
        while status is TokenStatus.PENDING and time.monotonic() < deadline:
            await asyncio.sleep(interval)
            status = await self.check_status(token)
        return status

    async def push_to_door(self, door_url: str, token: str) -> Decision:
        """Hand the token straight to a door controller.

        Raises:
            ServiceError: Door unreachable, busy or answering garbage
        """
        response = await self._send("POST", f"{door_url.rstrip('/')}/unlock", json={"token": token})
        body = self._json(response)
        if response.status_code == 409:
            raise ServiceError("door is busy with another attempt")
        if response.status_code not in (200, 403):
            raise ServiceError(body.get("error") or f"HTTP {response.status_code}")
        try:
            return Decision.model_validate(body)
        except ValueError as e:
            raise ServiceError("malformed door response") from e
