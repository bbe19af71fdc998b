"""Tests for the command line interface."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import AsyncMock, patch

import yaml
from click.testing import CliRunner
from k8s_mock import make_constraint

from constraint_controller.cli import cli

FIN = "finalizers.gatekeeper.sh/constraint"


class TestCheckCommand:
    """Tests for `constraint-controller check`."""

    def test_lists_constraints(self, tmp_path: Path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text(
            yaml.safe_dump_all(
                [
                    make_constraint("K", "a"),
                    make_constraint(
                        "K",
                        "b",
                        spec={"enforcementAction": "dryrun"},
                        finalizers=[FIN],
                        deleting=True,
                    ),
                ]
            )
        )

        result = CliRunner().invoke(cli, ["check", str(path)])

        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert lines == [
            "K/a\taction=deny\tlive\tno finalizer",
            "K/b\taction=dryrun\tdeleting\tfinalizer",
        ]

    def test_invalid_action_fails(self, tmp_path: Path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text(yaml.safe_dump(make_constraint("K", "a", spec={"enforcementAction": 1})))

        result = CliRunner().invoke(cli, ["check", str(path)])

        assert result.exit_code != 0

    def test_missing_file_fails(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["check", str(tmp_path / "absent.yaml")])
        assert result.exit_code != 0


class TestRunCommand:
    """Tests for `constraint-controller run` argument handling."""

    def test_requires_kinds(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            result = CliRunner().invoke(cli, ["run"])

        assert result.exit_code != 0
        assert "CONSTRAINT_KINDS" in result.output

    def test_invalid_override_is_reported(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            result = CliRunner().invoke(cli, ["run", "--kinds", "K", "--workers", "0"])

        assert result.exit_code != 0
        assert "MAX_CONCURRENT_RECONCILES" in result.output

    def test_kinds_option_keeps_environment_settings(self) -> None:
        """Test --kinds fills in CONSTRAINT_KINDS without discarding other variables."""
        env = {
            "CONSTRAINT_GROUP": "policies.example.com",
            "FINALIZER_NAME": "example.com/cleanup",
            "GATEWAY_TIMEOUT": "7",
        }
        with (
            patch.dict(os.environ, env, clear=True),
            patch("constraint_controller.cli.setup_logging"),
            patch("constraint_controller.cli.main", new=AsyncMock(return_value=0)) as main,
        ):
            result = CliRunner().invoke(cli, ["run", "--kinds", "K", "--text-logs"])

        assert result.exit_code == 0, result.output
        config = main.call_args.args[0]
        assert config.constraint_kinds == ("K",)
        assert config.group == "policies.example.com"
        assert config.finalizer_name == "example.com/cleanup"
        assert config.gateway_timeout_seconds == 7
        assert config.enable_audit_logging is False

    def test_invalid_environment_value_is_reported_with_kinds_option(self) -> None:
        with patch.dict(os.environ, {"MAX_CONCURRENT_RECONCILES": "999"}, clear=True):
            result = CliRunner().invoke(cli, ["run", "--kinds", "K"])

        assert result.exit_code != 0
        assert "MAX_CONCURRENT_RECONCILES" in result.output
