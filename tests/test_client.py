"""Tests for the credential-holder client."""

import httpx
import pytest

from proxlock.client import EnrollmentError, ProxlockClient, RateLimitedError, ServiceError
from proxlock.models import DenyReason, TokenStatus

TOKEN = "0123456789abcdef01"


def client_for(handler):
    return ProxlockClient("http://service", transport=httpx.MockTransport(handler))


class TestRequestToken:
    @pytest.mark.asyncio
    async def test_issued(self):
        def handler(request):
            assert request.url.path == "/request-token"
            return httpx.Response(200, json={"token": TOKEN, "expires_at": "2027-01-15T08:01:00+00:00"})

        async with client_for(handler) as client:
            issued = await client.request_token("C1")
        assert issued.token == TOKEN
        assert issued.expires_at.minute == 1

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        def handler(request):
            return httpx.Response(429, json={
                "error": "rate_limited",
                "suspended_until": "2027-01-15T08:03:00+00:00",
            })

        async with client_for(handler) as client:
            with pytest.raises(RateLimitedError) as exc:
                await client.request_token("C1")
        assert exc.value.suspended_until.minute == 3

    @pytest.mark.asyncio
    async def test_refused(self):
        async with client_for(lambda r: httpx.Response(403, json={"error": "enrollment_expired"})) as client:
            with pytest.raises(EnrollmentError) as exc:
                await client.request_token("C1")
        assert exc.value.reason == "enrollment_expired"

    @pytest.mark.asyncio
    async def test_server_error(self):
        async with client_for(lambda r: httpx.Response(500, json={"error": "internal error"})) as client:
            with pytest.raises(ServiceError):
                await client.request_token("C1")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        async with client_for(handler) as client:
            with pytest.raises(ServiceError):
                await client.request_token("C1")
            assert not await client.ping()


class TestStatus:
    @pytest.mark.asyncio
    async def test_check_status(self):
        def handler(request):
            assert request.url.params["token"] == TOKEN
            return httpx.Response(200, json={"status": "denied"})

        async with client_for(handler) as client:
            assert await client.check_status(TOKEN) is TokenStatus.DENIED

    @pytest.mark.asyncio
    async def test_wait_for_decision(self):
        answers = ["pending", "pending", "granted"]

        def handler(request):
            return httpx.Response(200, json={"status": answers.pop(0)})

        async with client_for(handler) as client:
            status = await client.wait_for_decision(TOKEN, interval=0)
        assert status is TokenStatus.GRANTED
        assert answers == []

    @pytest.mark.asyncio
    async def test_wait_times_out_pending(self):
        async with client_for(lambda r: httpx.Response(200, json={"status": "pending"})) as client:
            status = await client.wait_for_decision(TOKEN, interval=0, timeout=0)
        assert status is TokenStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_status(self):
        async with client_for(lambda r: httpx.Response(200, json={"status": "weird"})) as client:
            with pytest.raises(ServiceError):
                await client.check_status(TOKEN)


class TestPushToDoor:
    @pytest.mark.asyncio
    async def test_granted(self):
        def handler(request):
            assert str(request.url) == "http://door.local/unlock"
            return httpx.Response(200, json={"granted": True})

        async with client_for(handler) as client:
            decision = await client.push_to_door("http://door.local/", TOKEN)
        assert decision.granted

    @pytest.mark.asyncio
    async def test_denied(self):
        async with client_for(lambda r: httpx.Response(403, json={"granted": False, "reason": "rssi_too_weak"})) as client:
            decision = await client.push_to_door("http://door.local", TOKEN)
        assert decision.reason is DenyReason.RSSI_TOO_WEAK

    @pytest.mark.asyncio
    async def test_busy(self):
        async with client_for(lambda r: httpx.Response(409, json={"error": "busy"})) as client:
            with pytest.raises(ServiceError):
                await client.push_to_door("http://door.local", TOKEN)
