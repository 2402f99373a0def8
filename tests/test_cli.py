"""Tests for the admin CLI commands."""

import pytest
from typer.testing import CliRunner

from proxlock import cli
from proxlock.audit import AuditLogger
from proxlock.config import ProxlockConfig, ServiceConfig
from proxlock.token_store import TokenStore

runner = CliRunner()


@pytest.fixture
def config(tmp_path, monkeypatch):
    cfg = ProxlockConfig(service=ServiceConfig(
        db_path=tmp_path / "proxlock.db",
        audit_log_path=tmp_path / "audit.jsonl",
    ))
    monkeypatch.setattr(cli, "load_config", lambda: cfg)
    return cfg


def open_store(config):
    return TokenStore(config.service.db_path)


class TestSeedDemo:
    def test_seeds_once(self, store):
        assert cli.seed_demo(store) == 3
        assert cli.seed_demo(store) == 0

        alice = store.get_enrollment("ALICE_ENROLLMENT_TOKEN")
        assert alice.permissions == ["LAB_968"]
        assert store.get_enrollment("EVE_ENROLLMENT_TOKEN").is_expired(store.clock())


class TestCommands:
    def test_enroll_and_status(self, config):
        result = runner.invoke(cli.app, ["enroll", "C1", "40000000", "-d", "LAB_968", "-d", "LAB_969"])
        assert result.exit_code == 0, result.output

        store = open_store(config)
        try:
            assert store.get_enrollment("C1").permissions == ["LAB_968", "LAB_969"]
        finally:
            store.close()

        result = runner.invoke(cli.app, ["status"])
        assert result.exit_code == 0
        assert "C1" in result.output

    def test_enroll_all_doors_by_default(self, config):
        runner.invoke(cli.app, ["enroll", "C1", "40000000"])
        store = open_store(config)
        try:
            assert store.get_enrollment("C1").permissions == "ALL"
        finally:
            store.close()

    def test_enroll_duplicate_fails(self, config):
        runner.invoke(cli.app, ["enroll", "C1", "40000000"])
        result = runner.invoke(cli.app, ["enroll", "C1", "50000000"])
        assert result.exit_code == 1

    def test_revoke(self, config):
        runner.invoke(cli.app, ["enroll", "C1", "40000000"])
        assert runner.invoke(cli.app, ["revoke", "40000000"]).exit_code == 0
        assert runner.invoke(cli.app, ["revoke", "40000000"]).exit_code == 1

    def test_sweep(self, config):
        runner.invoke(cli.app, ["enroll", "OLD", "1", "--days=-1"])
        result = runner.invoke(cli.app, ["sweep"])
        assert result.exit_code == 0
        assert "1 enrollments" in result.output

    def test_audit(self, config):
        AuditLogger(config.service.audit_log_path).log("access_granted", door_id="LAB_968")
        result = runner.invoke(cli.app, ["audit", "--event", "access_granted"])
        assert result.exit_code == 0
        assert "LAB_968" in result.output

    def test_version(self):
        result = runner.invoke(cli.app, ["version"])
        assert result.exit_code == 0
        assert "Proxlock v" in result.output
