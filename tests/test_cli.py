"""CLI argument handling."""

from __future__ import annotations

from typer.testing import CliRunner

from featureforge.cli import app


runner = CliRunner()


def test_respond_rejects_malformed_response():
    result = runner.invoke(app, ["respond", "cta-1", '{"kind": "approval"}'])

    assert result.exit_code == 1


def test_launch_requires_repo():
    result = runner.invoke(app, ["launch", "Add dark mode toggle"])

    assert result.exit_code != 0
