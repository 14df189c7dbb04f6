"""Tests for the fleetctl-cli commands."""

import json
from typing import Any
from unittest.mock import patch

from click.testing import CliRunner
from flask import Flask

from fleetctl.cli import cli
from fleetctl.utils.credentials import verify_credentials


def _invoke(app: Flask, *args: str) -> Any:
    with patch("fleetctl.cli.create_app", return_value=app):
        return CliRunner().invoke(cli, list(args))


class TestIssueCredentials:
    """Tests for issue-credentials."""

    def test_prints_verifiable_credentials(self, app: Flask) -> None:
        result = _invoke(
            app,
            "issue-credentials",
            "--tenant", "default",
            "--device-type", "smart-meter",
            "--device", "meter-0001",
        )

        assert result.exit_code == 0, result.output
        output = json.loads(result.output)
        assert output["username"] == "iot_default_smart-meter_meter-0001"
        assert "acl" not in output
        assert verify_credentials(
            output["username"],
            output["password"],
            output["passwordExpiresAt"],
            "smart-meter",
            "test-credential-secret",
            now_ms=output["passwordExpiresAt"] - 1000,
        )

    def test_acl_flag_includes_topics(self, app: Flask) -> None:
        result = _invoke(
            app,
            "issue-credentials",
            "--tenant", "default",
            "--device-type", "smart-meter",
            "--device", "meter-0001",
            "--acl",
        )

        assert result.exit_code == 0, result.output
        acl = json.loads(result.output)["acl"]
        assert "iot/default/smart-meter/meter-0001/telemetry" in acl["publish"]
        assert "iot/default/smart-meter/meter-0001/cmd" in acl["subscribe"]

    def test_rejects_wildcard_identifier(self, app: Flask) -> None:
        result = _invoke(
            app,
            "issue-credentials",
            "--tenant", "default",
            "--device-type", "smart-meter",
            "--device", "meter/#",
        )

        assert result.exit_code == 1
        assert "not a valid topic segment" in result.output


    def test_rejects_underscore_in_tenant(self, app: Flask) -> None:
        result = _invoke(
            app,
            "issue-credentials",
            "--tenant", "a_t",
            "--device-type", "smart-meter",
            "--device", "d",
        )

        assert result.exit_code == 1
        assert "must not contain '_'" in result.output


class TestDatabaseCommands:
    """Tests for the schema commands."""

    def test_db_status_reports_current_revision(self, app: Flask) -> None:
        result = _invoke(app, "db-status")

        assert result.exit_code == 0, result.output
        assert "Current revision: 001" in result.output
        assert "No pending migrations" in result.output

    def test_upgrade_db_is_noop_when_current(self, app: Flask) -> None:
        result = _invoke(app, "upgrade-db")

        assert result.exit_code == 0, result.output
        assert "Schema is current" in result.output

    def test_recreate_requires_confirmation(self, app: Flask) -> None:
        result = _invoke(app, "upgrade-db", "--recreate")

        assert result.exit_code == 1
        assert "--yes-i-am-sure" in result.output

    def test_load_test_data_requires_confirmation(self, app: Flask) -> None:
        result = _invoke(app, "load-test-data")

        assert result.exit_code == 1
