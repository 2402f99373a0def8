"""Door Controller: on-device orchestration of one access attempt.

    idle -> reading_sensor -> awaiting_decision -> actuating_grant|actuating_deny -> idle

A token-bearing request starts an attempt. The controller reads the
rangefinder, samples signal strength, relays everything to the validation
service and drives the lock from the answer. Every path, including lost
responses and sensor faults, ends with the lock engaged and the controller
back in ``idle``.

Requests arrive from a pluggable source: a broadcast scanner that picks
tokens out of advertised device names, or the push app where the phone
POSTs the token directly.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import httpx
from aiohttp import web

from proxlock.config import ControllerConfig
from proxlock.errors import ProxlockError
from proxlock.frame_decoder import FrameDecoder
from proxlock.models import Decision, DenyReason, is_short_token

logger = logging.getLogger(__name__)

BROADCAST_PREFIX = "SL-"


class ControllerState(str, Enum):
    IDLE = "idle"
    READING_SENSOR = "reading_sensor"
    AWAITING_DECISION = "awaiting_decision"
    ACTUATING_GRANT = "actuating_grant"
    ACTUATING_DENY = "actuating_deny"


class ControllerBusy(ProxlockError):
    """An access attempt is already in flight."""
    pass


@dataclass(frozen=True)
class AccessAttempt:
    """A token presented at the door."""
    token: str
    rssi: int | None = None
    source: str = "push"


class RequestSource(Protocol):
    """Where access attempts come from."""

    async def next_request(self) -> AccessAttempt:
        """Wait for the next token-bearing request."""
        ...


class LockActuator(Protocol):
    """Drives the physical lock."""

    def unlock(self) -> None:
        ...

    def lock(self) -> None:
        ...


class Feedback(Protocol):
    """Display/buzzer rendering of controller state."""

    def render(self, state: ControllerState, decision: Decision | None) -> None:
        ...


class LogFeedback:
    """Feedback that only logs (headless doors and tests)."""

    def render(self, state: ControllerState, decision: Decision | None) -> None:
        if state is ControllerState.ACTUATING_DENY and decision is not None:
            logger.info(f"Door: DENIED ({decision.reason.value if decision.reason else 'unknown'})")
        elif state is ControllerState.ACTUATING_GRANT:
            logger.info("Door: ACCESS GRANTED")


class LoggingActuator:
    """Stand-in actuator for bench setups without a lock relay."""

    def __init__(self) -> None:
        self.engaged = True

    def unlock(self) -> None:
        self.engaged = False
        logger.info("Lock released")

    def lock(self) -> None:
        self.engaged = True
        logger.info("Lock engaged")


class GpioLockActuator:
    """Lock relay on a Raspberry Pi GPIO pin (requires gpiozero)."""

    def __init__(self, pin: int, active_high: bool = True):
        from gpiozero import DigitalOutputDevice

        self.pin = pin
        self._out = DigitalOutputDevice(pin, active_high=active_high, initial_value=False)

    def unlock(self) -> None:
        self._out.on()

    def lock(self) -> None:
        self._out.off()


class ValidatorClient:
    """Relays door requests to the validation service."""

    def __init__(
        self,
        base_url: str,
        door_id: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.door_id = door_id
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def validate(self, token: str, rssi: int | None, distance: int | None) -> Decision:
        """Ask for a decision. Any transport or protocol failure is a deny."""
        payload: dict[str, Any] = {"token": token, "door_id": self.door_id, "distance": distance}
        if rssi is not None:
            payload["rssi"] = rssi

        try:
            response = await self._client.post("/validate", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Validator unreachable: {e}")
            return Decision.deny(DenyReason.SERVER_ERROR)

        if response.status_code not in (200, 400, 403):
            logger.error(f"Validator returned HTTP {response.status_code}")
            return Decision.deny(DenyReason.SERVER_ERROR)

        try:
            decision = Decision.model_validate(response.json())
        except ValueError:
            logger.error("Validator sent an unreadable response")
            return Decision.deny(DenyReason.SERVER_ERROR)

        if decision.granted and response.status_code != 200:
            return Decision.deny(DenyReason.SERVER_ERROR)
        return decision

    async def aclose(self) -> None:
        await self._client.aclose()


class DoorController:
    """State machine for one door; handles one attempt at a time."""

    def __init__(
        self,
        config: ControllerConfig,
        decoder: FrameDecoder,
        validator: ValidatorClient,
        actuator: LockActuator,
        feedback: Feedback | None = None,
        rssi_sampler: Callable[[], int | None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.decoder = decoder
        self.validator = validator
        self.actuator = actuator
        self.feedback = feedback or LogFeedback()
        self.rssi_sampler = rssi_sampler
        self._sleep = sleep
        self._state = ControllerState.IDLE
        self._in_flight = False
        self.last_decision: Decision | None = None

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._in_flight

    def _enter(self, state: ControllerState, decision: Decision | None = None) -> None:
        logger.debug(f"{self._state.value} -> {state.value}")
        self._state = state
        self.feedback.render(state, decision)

    async def handle(self, attempt: AccessAttempt) -> Decision:
        """Run one attempt from sensor read to the return to idle.

        Raises:
            ControllerBusy: If another attempt is still in progress
        """
        if self._in_flight:
            raise ControllerBusy("access attempt already in progress")
        self._in_flight = True

        try:
            try:
                decision = await self._decide(attempt)
            except Exception:
                logger.exception("Access attempt failed")
                decision = Decision.deny(DenyReason.SERVER_ERROR)
            self.last_decision = decision
            await self._actuate(decision)
            return decision
        finally:
            self._enter(ControllerState.IDLE)
            self._in_flight = False

    async def _decide(self, attempt: AccessAttempt) -> Decision:
        if not is_short_token(attempt.token):
            logger.warning(f"Rejected malformed token from {attempt.source}")
            return Decision.deny(DenyReason.INVALID_REQUEST)

        self._enter(ControllerState.READING_SENSOR)
        distance = await asyncio.to_thread(self.decoder.read_distance)
        rssi = attempt.rssi
        if rssi is None and self.rssi_sampler is not None:
            rssi = self.rssi_sampler()
        logger.info(f"Token received via {attempt.source}: rssi={rssi} distance={distance}")

        self._enter(ControllerState.AWAITING_DECISION)
        return await self.validator.validate(attempt.token, rssi=rssi, distance=distance)

    async def _actuate(self, decision: Decision) -> None:
        if decision.granted:
            self._enter(ControllerState.ACTUATING_GRANT, decision)
            try:
                self.actuator.unlock()
                await self._sleep(self.config.unlock_seconds)
            finally:
                self.actuator.lock()
        else:
            self._enter(ControllerState.ACTUATING_DENY, decision)
            await self._sleep(self.config.deny_cooldown_seconds)

    async def run(self, source: RequestSource) -> None:
        """Serve attempts from a pull-style source forever."""
        logger.info(f"Door {self.config.door_id} listening")
        while True:
            try:
                attempt = await source.next_request()
            except Exception:
                logger.exception("Request source failed")
                await asyncio.sleep(getattr(source, "interval", 1.0))
                continue
            try:
                await self.handle(attempt)
            except Exception:
                # Lock is already re-engaged and the state is idle
                logger.exception("Lock actuation failed")


# --- Request sources ---

@dataclass(frozen=True)
class Advertisement:
    """A device name seen during a radio scan."""
    name: str
    rssi: int | None = None


Scanner = Callable[[], Awaitable[list[Advertisement]]]


class BroadcastRequestSource:
    """Picks tokens out of advertised device names (``SL-<token>``).

    The first matching advertisement of a scan wins. Tokens that were
    already handed out are ignored so a phone that keeps advertising does
    not trigger a second attempt.
    """

    def __init__(
        self,
        scanner: Scanner,
        prefix: str = BROADCAST_PREFIX,
        interval: float = 0.5,
        remember: int = 64,
    ):
        self.scanner = scanner
        self.prefix = prefix
        self.interval = interval
        self._remember = remember
        self._seen: OrderedDict[str, None] = OrderedDict()

    def _token_from(self, name: str) -> str | None:
        if not name or not name.startswith(self.prefix):
            return None
        return name[len(self.prefix):]

    async def next_request(self) -> AccessAttempt:
        while True:
            for adv in await self.scanner():
                token = self._token_from(adv.name)
                if token is None or token in self._seen:
                    continue
                self._seen[token] = None
                while len(self._seen) > self._remember:
                    self._seen.popitem(last=False)
                return AccessAttempt(token=token, rssi=adv.rssi, source="broadcast")
            await asyncio.sleep(self.interval)


def create_push_app(controller: DoorController) -> web.Application:
    """HTTP surface for phones that push their token to the door."""

    async def handle_unlock(request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid JSON"}, status=400)
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token or not isinstance(token, str):
            return web.json_response({"error": "token required"}, status=400)

        try:
            decision = await controller.handle(AccessAttempt(token=token, source="push"))
        except ControllerBusy:
            return web.json_response({"error": "busy"}, status=409)
        return web.json_response(decision.to_dict(), status=200 if decision.granted else 403)

    async def handle_status(request: web.Request) -> web.Response:
        return web.json_response({
            "door_id": controller.config.door_id,
            "state": controller.state.value,
        })

    app = web.Application()
    app.add_routes([
        web.post("/unlock", handle_unlock),
        web.get("/status", handle_status),
    ])
    return app
