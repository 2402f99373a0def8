"""Tests for the proximity policy."""

import pytest

from proxlock.models import NO_READING, DenyReason, ValidationRequest
from proxlock.proximity import ProximityPolicy, ProximityValidator


class TestProximityPolicy:
    @pytest.mark.parametrize("rssi,distance,expected", [
        (-50, 40, None),
        (-70, 90, None),
        (-71, 40, DenyReason.RSSI_TOO_WEAK),
        (-50, 91, DenyReason.DISTANCE_TOO_FAR),
        (-90, 500, DenyReason.RSSI_TOO_WEAK),
        (-50, NO_READING, DenyReason.DISTANCE_TOO_FAR),
        (-50, 0, DenyReason.DISTANCE_TOO_FAR),
        (-50, -5, DenyReason.DISTANCE_TOO_FAR),
        (None, None, None),
        (None, 200, DenyReason.DISTANCE_TOO_FAR),
    ])
    def test_check(self, rssi, distance, expected):
        assert ProximityPolicy().check(rssi, distance) == expected

    def test_custom_thresholds(self):
        policy = ProximityPolicy(rssi_floor=-80, max_distance_cm=150)
        assert policy.check(-75, 120) is None


class TestProximityValidator:
    def test_uses_its_policy(self, store, enroll):
        enroll("C1", ["D1"])
        token = store.issue_short_token("C1").token
        validator = ProximityValidator(store, ProximityPolicy(max_distance_cm=30))

        decision = validator.validate(ValidationRequest(token=token, door_id="D1", rssi=-50, distance=40))
        assert decision.reason is DenyReason.DISTANCE_TOO_FAR

    def test_grant(self, store, enroll):
        enroll("C1", ["D1"])
        token = store.issue_short_token("C1").token

        decision = ProximityValidator(store).validate(
            ValidationRequest(token=token, door_id="D1", rssi=-50, distance=40)
        )
        assert decision.granted
