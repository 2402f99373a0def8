"""Per-credential admission control for short-token issuance.

Policy is a fixed window with cooldown: a credential may make at most
``max_requests`` issuance requests in any trailing ``window`` seconds. The
request that would exceed the limit suspends the credential for one full
window and clears its history; capacity is not released gradually.
"""

import logging
from dataclasses import dataclass

from proxlock.token_store import TokenStore

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3 * 60
MAX_REQUESTS = 3


@dataclass(frozen=True)
class Allowed:
    """Admission granted."""

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Suspended:
    """Admission refused until the given epoch timestamp."""
    until: float

    def __bool__(self) -> bool:
        return False


Admission = Allowed | Suspended


class RateLimiter:
    """Admission control backed by windows persisted in the Token Store."""

    def __init__(
        self,
        store: TokenStore,
        window: float = WINDOW_SECONDS,
        max_requests: int = MAX_REQUESTS,
    ):
        self.store = store
        self.window = window
        self.max_requests = max_requests

    def admit(self, credential: str) -> Admission:
        """Record an issuance attempt and decide whether it may proceed.

        The read-modify-write runs in one immediate transaction so two
        concurrent attempts for the same credential cannot both slip under
        the limit.
        """
        now = self.store.clock()

        with self.store.transaction() as conn:
            window = self.store.load_rate_window(conn, credential)

            if window.suspended_until is not None and now < window.suspended_until:
                logger.warning("Issuance refused: credential suspended")
                return Suspended(until=window.suspended_until)

            window.requests = [ts for ts in window.requests if ts > now - self.window]

            if len(window.requests) >= self.max_requests:
                window.suspended_until = now + self.window
                window.requests = []
                self.store.save_rate_window(conn, window)
                logger.warning(
                    f"Rate limit exceeded, credential suspended for {self.window:.0f}s"
                )
                return Suspended(until=window.suspended_until)

            window.requests.append(now)
            window.suspended_until = None
            self.store.save_rate_window(conn, window)

        return Allowed()
