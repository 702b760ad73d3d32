"""Test the command line interface."""

from __future__ import annotations

import json
import pathlib
import textwrap

import pytest
from click.testing import CliRunner

from pipewright.cli import cli

EXAMPLE = pathlib.Path(__file__).parent.parent / "examples" / "coverage.yml"

PASSING = """
name: passing
jobs:
  build:
    steps:
      - id: ver
        shell: sh
        run: echo "version=1.0" >> "$PIPEWRIGHT_OUTPUT"
    outputs:
      version: ${{ steps.ver.outputs.version }}
  test:
    needs: build
    strategy:
      matrix:
        py: ["3.11", "3.12"]
    steps:
      - shell: sh
        run: echo "testing ${{ needs.build.outputs.version }} on ${{ matrix.py }}"
"""

FAILING = """
jobs:
  build:
    steps:
      - shell: sh
        run: exit 3
  deploy:
    needs: build
    steps:
      - run: echo never
"""

CYCLIC = """
jobs:
  a:
    needs: b
    steps: [{run: "true"}]
  b:
    needs: a
    steps: [{run: "true"}]
"""


@pytest.fixture(scope="session")
def runner() -> CliRunner:
    """One cli runner is enough."""
    return CliRunner()


def _workflow(tmp_path: pathlib.Path, body: str) -> pathlib.Path:
    path = tmp_path / "workflow.yml"
    path.write_text(textwrap.dedent(body))
    return path


def test_run_success(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    path = _workflow(tmp_path, PASSING)
    res = runner.invoke(cli, ["run", str(path), "--workdir", str(tmp_path)])
    assert res.exit_code == 0, res.output
    assert "test[py=3.12]" in res.output
    assert "SUCCESS" in res.output


def test_run_failure(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    path = _workflow(tmp_path, FAILING)
    res = runner.invoke(cli, ["run", str(path), "--workdir", str(tmp_path)])
    assert res.exit_code == 1, res.output
    assert "Exit code: 3" in res.output
    assert "[deploy] STATUS: skipped" in res.output


def test_run_config_error(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    path = _workflow(tmp_path, CYCLIC)
    res = runner.invoke(cli, ["run", str(path), "--workdir", str(tmp_path)])
    assert res.exit_code == 2, res.output
    assert "cycle" in res.output


def test_missing_secret(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    path = _workflow(tmp_path, PASSING)
    res = runner.invoke(
        cli,
        ["run", str(path), "--workdir", str(tmp_path), "--secret", "PIPEWRIGHT_TEST_UNSET_TOKEN"],
        env={"PIPEWRIGHT_TEST_UNSET_TOKEN": None},
    )
    assert res.exit_code == 2, res.output
    assert "PIPEWRIGHT_TEST_UNSET_TOKEN" in res.output


def test_report(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    path = _workflow(tmp_path, PASSING)
    report = tmp_path / "out" / "report.json"
    res = runner.invoke(cli, ["run", str(path), "--workdir", str(tmp_path), "--report", str(report)])
    assert res.exit_code == 0, res.output
    data = json.loads(report.read_text())
    assert data["workflow"] == "passing"
    assert data["jobs"] == {"build": "succeeded", "test": "succeeded"}


def test_run_single_job(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    path = _workflow(tmp_path, PASSING)
    res = runner.invoke(cli, ["run", str(path), "--workdir", str(tmp_path), "--job", "build"])
    assert res.exit_code == 0, res.output
    assert "test[py=3.11]" not in res.output


def test_not_triggered(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    res = runner.invoke(
        cli,
        ["run", str(EXAMPLE), "--workdir", str(tmp_path), "--event", "push", "--branch", "master"],
    )
    assert res.exit_code == 0, res.output
    assert "not triggered" in res.output


def test_plan(runner: CliRunner) -> None:
    res = runner.invoke(cli, ["plan", str(EXAMPLE)])
    assert res.exit_code == 0, res.output
    assert "=== Stage 1 ===" in res.output
    assert "ci[rust=nightly]" in res.output
    assert "=== Stage 2 ===" in res.output
    assert "grcov_finalize" in res.output


def test_plan_config_error(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    path = _workflow(tmp_path, CYCLIC)
    res = runner.invoke(cli, ["plan", str(path)])
    assert res.exit_code == 2, res.output


def test_broken_python_workflow_is_config_error(runner: CliRunner, tmp_path: pathlib.Path) -> None:
    path = tmp_path / "broken.py"
    path.write_text("def workflow():\n    raise RuntimeError('boom')\n")
    res = runner.invoke(cli, ["run", str(path), "--workdir", str(tmp_path)])
    assert res.exit_code == 2, res.output
    assert "RuntimeError: boom" in res.output
