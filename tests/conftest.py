"""Shared fixtures."""

import pytest

from proxlock.token_store import TokenStore


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_800_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    s = TokenStore(tmp_path / "proxlock.db", clock=clock)
    yield s
    s.close()


@pytest.fixture
def enroll(store, clock):
    """Enroll a credential valid for a day unless told otherwise."""

    def _enroll(credential="C1", permissions=("D1",), identity=None, expires_in=86400.0):
        perms = permissions if isinstance(permissions, str) else list(permissions)
        return store.enroll(
            credential,
            perms,
            clock() + expires_in,
            identity or f"id-{credential}",
        )

    return _enroll
