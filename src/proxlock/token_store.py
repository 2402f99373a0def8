"""Token Store: durable system of record for Proxlock.

Holds enrollments, the identity map used for revocation, short-lived tokens
and persisted rate-limit windows in SQLite.

Concurrency model:
- Every thread gets its own connection (WAL journal), so requests for
  different keys never wait on a Python-level lock.
- A token's terminal state is committed with a conditional update
  (``WHERE state = 'pending'``); of two racing validations exactly one
  commits, the other reports what the winner wrote.
- Multi-row changes (enroll, revoke, rate-limit read-modify-write) run in
  short ``BEGIN IMMEDIATE`` transactions.
"""

import json
import logging
import os
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from proxlock.errors import ProxlockError
from proxlock.models import (
    ALL_DOORS,
    SHORT_TOKEN_BYTES,
    Decision,
    DenyReason,
    Enrollment,
    IssuedToken,
    RateWindow,
    ShortToken,
    TokenState,
    TokenStatus,
    normalize_permissions,
    to_datetime,
)
from proxlock.proximity import ProximityPolicy

logger = logging.getLogger(__name__)

SHORT_TOKEN_TTL_SECONDS = 60
DEFAULT_ENROLLMENT_DAYS = 120

SCHEMA = """
CREATE TABLE IF NOT EXISTS enrollments (
    credential TEXT PRIMARY KEY,
    permissions TEXT NOT NULL,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS identity_map (
    identity TEXT PRIMARY KEY,
    credential TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS short_tokens (
    token TEXT PRIMARY KEY,
    credential TEXT NOT NULL,
    issued_at REAL NOT NULL,
    expires_at REAL NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    reason TEXT
);
CREATE INDEX IF NOT EXISTS idx_short_tokens_expires ON short_tokens (expires_at);
CREATE TABLE IF NOT EXISTS rate_limits (
    credential TEXT PRIMARY KEY,
    requests TEXT NOT NULL,
    suspended_until REAL
);
"""

Clock = Callable[[], float]


class TokenStoreError(ProxlockError):
    """Base exception for store errors."""
    pass


class DuplicateCredential(TokenStoreError):
    """Credential or identity is already enrolled."""
    pass


class UnknownCredential(TokenStoreError):
    """No enrollment exists for the credential."""
    pass


class EnrollmentExpired(TokenStoreError):
    """Enrollment exists but its expiry has passed."""
    pass


class UnknownIdentity(TokenStoreError):
    """No identity mapping exists."""
    pass


_TERMINAL_REASONS = {
    TokenState.GRANTED.value: DenyReason.ALREADY_USED,
    TokenState.DENIED.value: DenyReason.ALREADY_DENIED,
}


def _encode_permissions(permissions: str | list[str]) -> str:
    if permissions == ALL_DOORS:
        return ALL_DOORS
    return json.dumps(permissions)


def _decode_permissions(raw: str) -> str | list[str]:
    if raw == ALL_DOORS:
        return ALL_DOORS
    return json.loads(raw)


class TokenStore:
    """SQLite-backed store for credentials, short tokens and rate windows."""

    def __init__(
        self,
        path: str | Path,
        clock: Clock = time.time,
        token_ttl: float = SHORT_TOKEN_TTL_SECONDS,
    ):
        self.path = Path(path)
        self.clock = clock
        self.token_ttl = token_ttl
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._registry_lock = threading.Lock()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn().executescript(SCHEMA)
        logger.debug(f"Token store ready at {self.path}")

    def _conn(self) -> sqlite3.Connection:
        """Connection owned by the calling thread."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                os.fspath(self.path),
                timeout=5.0,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
            with self._registry_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Short write transaction; rolled back if the body raises."""
        conn = self._conn()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def close(self) -> None:
        with self._registry_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # --- Enrollments ---

    def enroll(
        self,
        credential: str,
        permissions: str | list[str],
        expires_at: float,
        identity: str,
    ) -> Enrollment:
        """Insert a credential and its identity mapping atomically.

        Raises:
            DuplicateCredential: If the credential or the identity exists
        """
        perms = normalize_permissions(permissions)
        now = self.clock()

        try:
            with self.transaction() as conn:
                conn.execute(
                    "INSERT INTO enrollments (credential, permissions, created_at, expires_at) "
                    "VALUES (?, ?, ?, ?)",
                    (credential, _encode_permissions(perms), now, expires_at),
                )
                conn.execute(
                    "INSERT INTO identity_map (identity, credential) VALUES (?, ?)",
                    (identity, credential),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateCredential("credential or identity already enrolled") from e

        logger.info(f"Enrolled credential for identity {identity}")
        return Enrollment(
            credential=credential,
            permissions=perms,
            created_at=to_datetime(now),
            expires_at=to_datetime(expires_at),
        )

    def get_enrollment(self, credential: str) -> Enrollment | None:
        row = self._conn().execute(
            "SELECT credential, permissions, created_at, expires_at "
            "FROM enrollments WHERE credential = ?",
            (credential,),
        ).fetchone()
        if row is None:
            return None
        return self._enrollment_from_row(row)

    def require_active(self, credential: str) -> Enrollment:
        """Return the enrollment if it exists and has not expired.

        Raises:
            UnknownCredential: No such enrollment
            EnrollmentExpired: Enrollment expiry has passed
        """
        enrollment = self.get_enrollment(credential)
        if enrollment is None:
            raise UnknownCredential("unknown credential")
        if enrollment.is_expired(self.clock()):
            raise EnrollmentExpired(f"enrollment expired at {enrollment.expires_at.isoformat()}")
        return enrollment

    def list_enrollments(self) -> list[Enrollment]:
        rows = self._conn().execute(
            "SELECT credential, permissions, created_at, expires_at "
            "FROM enrollments ORDER BY created_at"
        ).fetchall()
        return [self._enrollment_from_row(row) for row in rows]

    def revoke(self, identity: str) -> str:
        """Delete an identity's credential and mapping.

        Short tokens already issued are left in place; validation denies them
        with ``access_revoked`` once it finds the credential gone.

        Returns:
            The revoked credential

        Raises:
            UnknownIdentity: If the identity is not enrolled
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT credential FROM identity_map WHERE identity = ?",
                (identity,),
            ).fetchone()
            if row is None:
                raise UnknownIdentity(f"identity not enrolled: {identity}")
            credential = row["credential"]
            conn.execute("DELETE FROM enrollments WHERE credential = ?", (credential,))
            conn.execute("DELETE FROM identity_map WHERE identity = ?", (identity,))

        logger.info(f"Revoked access for identity {identity}")
        return credential

    # --- Short tokens ---

    def issue_short_token(self, credential: str) -> IssuedToken:
        """Create a Pending single-use token for an active credential.

        Callers run rate-limit admission first.
        """
        self.require_active(credential)

        now = self.clock()
        token = secrets.token_hex(SHORT_TOKEN_BYTES)
        expires_at = now + self.token_ttl
        self._conn().execute(
            "INSERT INTO short_tokens (token, credential, issued_at, expires_at, state) "
            "VALUES (?, ?, ?, ?, ?)",
            (token, credential, now, expires_at, TokenState.PENDING.value),
        )

        logger.debug(f"Issued short token expiring at {expires_at:.0f}")
        return IssuedToken(token=token, expires_at=to_datetime(expires_at))

    def get_short_token(self, token: str) -> ShortToken | None:
        row = self._conn().execute(
            "SELECT token, credential, issued_at, expires_at, state, reason "
            "FROM short_tokens WHERE token = ?",
            (token,),
        ).fetchone()
        if row is None:
            return None
        return self._short_token_from_row(row)

    def list_short_tokens(self) -> list[ShortToken]:
        rows = self._conn().execute(
            "SELECT token, credential, issued_at, expires_at, state, reason "
            "FROM short_tokens ORDER BY issued_at"
        ).fetchall()
        return [self._short_token_from_row(row) for row in rows]

    def status(self, token: str) -> TokenStatus:
        """Status for a polling client.

        An expired Pending token is purged here and reported as expired.
        """
        conn = self._conn()
        row = conn.execute(
            "SELECT state, expires_at FROM short_tokens WHERE token = ?",
            (token,),
        ).fetchone()
        if row is None:
            return TokenStatus.EXPIRED
        if row["state"] == TokenState.PENDING.value and row["expires_at"] <= self.clock():
            conn.execute(
                "DELETE FROM short_tokens WHERE token = ? AND state = ?",
                (token, TokenState.PENDING.value),
            )
            return TokenStatus.EXPIRED
        return TokenStatus(row["state"])

    def validate(
        self,
        token: str,
        door_id: str,
        rssi: int | None = None,
        distance: int | None = None,
        policy: ProximityPolicy | None = None,
    ) -> Decision:
        """The single authorization decision point.

        Checks run in a fixed order: token existence and expiry, prior use,
        credential standing, door permission, signal, distance. Every denial
        after the token checks is committed as Denied so repeated polling
        gets the same answer.
        """
        policy = policy or ProximityPolicy()
        now = self.clock()
        conn = self._conn()

        row = conn.execute(
            "SELECT credential, expires_at, state FROM short_tokens WHERE token = ?",
            (token,),
        ).fetchone()
        if row is None:
            return Decision.deny(DenyReason.UNKNOWN_OR_EXPIRED)
        if row["expires_at"] <= now:
            # Purge now so the client's next status poll resolves to expired
            conn.execute("DELETE FROM short_tokens WHERE token = ?", (token,))
            return Decision.deny(DenyReason.EXPIRED)
        if row["state"] in _TERMINAL_REASONS:
            return Decision.deny(_TERMINAL_REASONS[row["state"]])

        enrollment = self.get_enrollment(row["credential"])
        if enrollment is None:
            reason = DenyReason.ACCESS_REVOKED
        elif enrollment.is_expired(now):
            reason = DenyReason.ENROLLMENT_EXPIRED
        elif not enrollment.covers(door_id):
            reason = DenyReason.INSUFFICIENT_PERMISSIONS
        else:
            reason = policy.check(rssi, distance)

        if not self._commit(token, reason):
            return self._lost_race(token)
        if reason is None:
            return Decision.grant()
        return Decision.deny(reason)

    def _commit(self, token: str, reason: DenyReason | None) -> bool:
        """Move a Pending token to its terminal state; False if already moved."""
        state = TokenState.GRANTED if reason is None else TokenState.DENIED
        cur = self._conn().execute(
            "UPDATE short_tokens SET state = ?, reason = ? WHERE token = ? AND state = ?",
            (state.value, reason.value if reason else None, token, TokenState.PENDING.value),
        )
        return cur.rowcount == 1

    def _lost_race(self, token: str) -> Decision:
        row = self._conn().execute(
            "SELECT state FROM short_tokens WHERE token = ?",
            (token,),
        ).fetchone()
        if row is None:
            return Decision.deny(DenyReason.UNKNOWN_OR_EXPIRED)
        return Decision.deny(_TERMINAL_REASONS.get(row["state"], DenyReason.ALREADY_DENIED))

    # --- Sweeps ---

    def sweep_expired_tokens(self) -> int:
        """Delete short tokens past expiry, one row per statement."""
        now = self.clock()
        conn = self._conn()
        expired = [
            row["token"]
            for row in conn.execute(
                "SELECT token FROM short_tokens WHERE expires_at <= ?", (now,)
            ).fetchall()
        ]
        removed = 0
        for token in expired:
            cur = conn.execute(
                "DELETE FROM short_tokens WHERE token = ? AND expires_at <= ?",
                (token, now),
            )
            removed += cur.rowcount
        if removed:
            logger.info(f"Sweep removed {removed} expired tokens")
        return removed

    def sweep_expired_enrollments(self) -> int:
        """Delete expired enrollments together with their identity mapping."""
        now = self.clock()
        expired = [
            row["credential"]
            for row in self._conn().execute(
                "SELECT credential FROM enrollments WHERE expires_at <= ?", (now,)
            ).fetchall()
        ]
        removed = 0
        for credential in expired:
            with self.transaction() as conn:
                cur = conn.execute(
                    "DELETE FROM enrollments WHERE credential = ? AND expires_at <= ?",
                    (credential, now),
                )
                if cur.rowcount:
                    conn.execute("DELETE FROM identity_map WHERE credential = ?", (credential,))
                    removed += 1
        if removed:
            logger.info(f"Sweep removed {removed} expired enrollments")
        else:
            logger.debug("Sweep found no expired enrollments")
        return removed

    # --- Rate-limit windows ---

    def load_rate_window(self, conn: sqlite3.Connection, credential: str) -> RateWindow:
        row = conn.execute(
            "SELECT requests, suspended_until FROM rate_limits WHERE credential = ?",
            (credential,),
        ).fetchone()
        if row is None:
            return RateWindow(credential=credential)
        return RateWindow(
            credential=credential,
            requests=json.loads(row["requests"]),
            suspended_until=row["suspended_until"],
        )

    def save_rate_window(self, conn: sqlite3.Connection, window: RateWindow) -> None:
        conn.execute(
            "INSERT INTO rate_limits (credential, requests, suspended_until) VALUES (?, ?, ?) "
            "ON CONFLICT(credential) DO UPDATE SET requests = excluded.requests, "
            "suspended_until = excluded.suspended_until",
            (window.credential, json.dumps(window.requests), window.suspended_until),
        )

    # --- Inspection ---

    def server_status(self) -> dict[str, Any]:
        """Snapshot for the admin status view."""
        conn = self._conn()
        enrollments = conn.execute("SELECT COUNT(*) FROM enrollments").fetchone()[0]
        tokens = [
            {
                "token": tok.token,
                "state": tok.state.value,
                "reason": tok.reason.value if tok.reason else None,
                "issued_at": tok.issued_at.isoformat(),
                "expires_at": tok.expires_at.isoformat(),
            }
            for tok in self.list_short_tokens()
        ]
        return {
            "now": to_datetime(self.clock()).isoformat(),
            "enrollment_count": enrollments,
            "active_short_tokens": tokens,
        }

    @staticmethod
    def _enrollment_from_row(row: sqlite3.Row) -> Enrollment:
        return Enrollment(
            credential=row["credential"],
            permissions=_decode_permissions(row["permissions"]),
            created_at=to_datetime(row["created_at"]),
            expires_at=to_datetime(row["expires_at"]),
        )

    @staticmethod
    def _short_token_from_row(row: sqlite3.Row) -> ShortToken:
        return ShortToken(
            token=row["token"],
            credential=row["credential"],
            issued_at=to_datetime(row["issued_at"]),
            expires_at=to_datetime(row["expires_at"]),
            state=TokenState(row["state"]),
            reason=DenyReason(row["reason"]) if row["reason"] else None,
        )
