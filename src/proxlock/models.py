"""Core data models for Proxlock."""

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

# Permission marker covering every door
ALL_DOORS = "ALL"

# Distance reported when the sensor produced nothing usable in its read window
NO_READING = -1

SHORT_TOKEN_BYTES = 9
SHORT_TOKEN_PATTERN = re.compile(rf"^[0-9a-f]{{{SHORT_TOKEN_BYTES * 2}}}$")


def to_datetime(ts: float) -> datetime:
    """Convert an epoch timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def is_short_token(value: str) -> bool:
    """Check that a string has the shape of an issued short token."""
    return bool(SHORT_TOKEN_PATTERN.match(value or ""))


class TokenState(str, Enum):
    """Stored state of a short token."""
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


class TokenStatus(str, Enum):
    """Status reported to a polling client."""
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"
    EXPIRED = "expired"


class DenyReason(str, Enum):
    """Machine-readable denial reasons."""
    INVALID_REQUEST = "invalid_request"
    UNKNOWN_OR_EXPIRED = "unknown_or_expired"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    ALREADY_DENIED = "already_denied"
    ACCESS_REVOKED = "access_revoked"
    ENROLLMENT_EXPIRED = "enrollment_expired"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    RSSI_TOO_WEAK = "rssi_too_weak"
    DISTANCE_TOO_FAR = "distance_too_far"
    SERVER_ERROR = "server_error"


class Enrollment(BaseModel):
    """Standing authorization of one enrolled (anonymous) identity."""
    credential: str
    permissions: str | list[str] = Field(
        default=ALL_DOORS,
        description='Either "ALL" or an explicit list of door identifiers',
    )
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: float) -> bool:
        return self.expires_at.timestamp() <= now

    def covers(self, door_id: str) -> bool:
        """Check if the permission set includes a door."""
        if self.permissions == ALL_DOORS:
            return True
        return isinstance(self.permissions, list) and door_id in self.permissions


class ShortToken(BaseModel):
    """Single-use access token derived from an enrollment."""
    token: str
    credential: str
    issued_at: datetime
    expires_at: datetime
    state: TokenState = TokenState.PENDING
    reason: DenyReason | None = None


class IssuedToken(BaseModel):
    """What the credential holder receives on issuance."""
    token: str
    expires_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "token": self.token,
            "expires_at": self.expires_at.isoformat(),
        }


class RateWindow(BaseModel):
    """Per-credential admission window."""
    credential: str
    requests: list[float] = Field(default_factory=list)
    suspended_until: float | None = None


class Decision(BaseModel):
    """Outcome of one validation."""
    granted: bool
    reason: DenyReason | None = None

    @classmethod
    def grant(cls) -> "Decision":
        return cls(granted=True)

    @classmethod
    def deny(cls, reason: DenyReason) -> "Decision":
        return cls(granted=False, reason=reason)

    def to_dict(self) -> dict[str, object]:
        if self.granted:
            return {"granted": True}
        return {"granted": False, "reason": self.reason.value if self.reason else None}


class ValidationRequest(BaseModel):
    """Request relayed by a door controller."""
    token: str
    door_id: str = Field(min_length=1)
    rssi: int | None = None
    distance: int | None = Field(default=None, description="Centimetres, or -1 for no reading")

    @field_validator("token")
    @classmethod
    def _token_shape(cls, value: str) -> str:
        if not is_short_token(value):
            raise ValueError("token must be 18 lowercase hex characters")
        return value


class TokenRequest(BaseModel):
    """Issuance request from a credential holder."""
    credential: str = Field(min_length=1)


class EnrollRequest(BaseModel):
    """Admin enrollment request."""
    credential: str = Field(min_length=1)
    identity: str = Field(min_length=1)
    permissions: str | list[str] = ALL_DOORS
    expires_at: datetime | None = None


class RevokeRequest(BaseModel):
    """Admin revocation request."""
    identity: str = Field(min_length=1)


def normalize_permissions(permissions: str | list[str] | None) -> str | list[str]:
    """Coerce admin input into ``"ALL"`` or a de-duplicated door list.

    A single door may be given as a bare string; comma-separated strings are
    split.
    """
    if permissions is None or permissions == ALL_DOORS:
        return ALL_DOORS
    if isinstance(permissions, str):
        permissions = permissions.split(",")
    doors: list[str] = []
    for door in permissions:
        door = door.strip()
        if door == ALL_DOORS:
            return ALL_DOORS
        if door and door not in doors:
            doors.append(door)
    return doors
