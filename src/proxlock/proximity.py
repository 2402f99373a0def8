"""Proximity policy: is the requester's device physically at the door?"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from proxlock.models import Decision, DenyReason, ValidationRequest

if TYPE_CHECKING:
    from proxlock.token_store import TokenStore

logger = logging.getLogger(__name__)

# Device and person must be close to the door
RSSI_THRESHOLD = -70
DISTANCE_THRESHOLD_CM = 90


@dataclass(frozen=True)
class ProximityPolicy:
    """Signal-strength floor and distance ceiling."""
    rssi_floor: int = RSSI_THRESHOLD
    max_distance_cm: int = DISTANCE_THRESHOLD_CM

    def check(self, rssi: int | None = None, distance: int | None = None) -> DenyReason | None:
        """Return the denial reason, or None when the readings pass.

        Signal is checked before distance. A missing reading is not checked;
        zero, negative and ``NO_READING`` distances are sensor faults that
        count as too far.
        """
        if rssi is not None and rssi < self.rssi_floor:
            return DenyReason.RSSI_TOO_WEAK
        if distance is not None and (distance <= 0 or distance > self.max_distance_cm):
            return DenyReason.DISTANCE_TOO_FAR
        return None


class ProximityValidator:
    """Decision surface for relayed door requests.

    Holds no state beyond its policy; the token bookkeeping is the store's.
    """

    def __init__(self, store: "TokenStore", policy: ProximityPolicy | None = None):
        self.store = store
        self.policy = policy or ProximityPolicy()

    def validate(self, request: ValidationRequest) -> Decision:
        decision = self.store.validate(
            request.token,
            request.door_id,
            rssi=request.rssi,
            distance=request.distance,
            policy=self.policy,
        )
        if decision.granted:
            logger.info(f"Access granted at {request.door_id}")
        else:
            logger.warning(
                f"Access denied at {request.door_id}: {decision.reason.value} "
                f"(rssi={request.rssi}, distance={request.distance})"
            )
        return decision
