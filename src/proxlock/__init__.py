"""Proxlock: Proximity-gated smart lock."""

from proxlock.client import (
    EnrollmentError,
    ProxlockClient,
    RateLimitedError,
    ServiceError,
)
from proxlock.controller import (
    AccessAttempt,
    BroadcastRequestSource,
    ControllerBusy,
    ControllerState,
    DoorController,
    ValidatorClient,
    create_push_app,
)
from proxlock.errors import ProxlockError
from proxlock.frame_decoder import (
    ChecksumError,
    Frame,
    FrameDecoder,
    FrameError,
    parse_frame,
)
from proxlock.models import (
    ALL_DOORS,
    NO_READING,
    Decision,
    DenyReason,
    Enrollment,
    IssuedToken,
    ShortToken,
    TokenState,
    TokenStatus,
    ValidationRequest,
)
from proxlock.proximity import ProximityPolicy, ProximityValidator
from proxlock.rate_limiter import Allowed, RateLimiter, Suspended
from proxlock.service import ValidatorService
from proxlock.token_store import (
    DuplicateCredential,
    EnrollmentExpired,
    TokenStore,
    UnknownCredential,
    UnknownIdentity,
)

__all__ = [
    # Errors
    "ProxlockError",
    "DuplicateCredential",
    "EnrollmentExpired",
    "UnknownCredential",
    "UnknownIdentity",
    "ControllerBusy",
    "EnrollmentError",
    "RateLimitedError",
    "ServiceError",
    "FrameError",
    "ChecksumError",
    # Models
    "ALL_DOORS",
    "NO_READING",
    "Decision",
    "DenyReason",
    "Enrollment",
    "IssuedToken",
    "ShortToken",
    "TokenState",
    "TokenStatus",
    "ValidationRequest",
    # Server side
    "TokenStore",
    "RateLimiter",
    "Allowed",
    "Suspended",
    "ProximityPolicy",
    "ProximityValidator",
    "ValidatorService",
    # Door side
    "Frame",
    "FrameDecoder",
    "parse_frame",
    "AccessAttempt",
    "BroadcastRequestSource",
    "ControllerState",
    "DoorController",
    "ValidatorClient",
    "create_push_app",
    # Client
    "ProxlockClient",
]

__version__ = "0.1.0"
