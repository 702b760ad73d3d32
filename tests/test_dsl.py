"""Test the Python workflow helpers."""

from __future__ import annotations

import pytest

from pipewright.dsl import build, job, matrix, sh, uses, wf
from pipewright.errors import ConfigurationError
from pipewright.model import ActionRef, Command


def test_job_helpers() -> None:
    j = job(
        "test",
        sh("Unit", "pytest -q", id="unit"),
        uses("Checkout", "actions/checkout@v2", with_={"fetch-depth": 0, "lfs": False}),
        needs="build",
        cwd="src",
    )
    assert j.needs == ("build",)
    assert j.steps[0].body == Command(run="pytest -q")
    assert j.steps[1].body == ActionRef(uses="actions/checkout@v2")
    assert j.steps[1].body.action == "actions/checkout"
    assert j.steps[1].body.version == "v2"
    assert j.steps[1].inputs == {"fetch-depth": "0", "lfs": "false"}
    assert all(s.working_directory == "src" for s in j.steps)


def test_job_needs_steps() -> None:
    with pytest.raises(ConfigurationError):
        job("empty")


def test_builder() -> None:
    j = (
        build("fin")
        .depends_on("ci")
        .runs_on("ubuntu-latest")
        .use_action("Finalize", "coverallsapp/github-action@master", with_={"parallel-finished": True})
        .with_env(LEVEL=1)
        .fan_in()
        .build()
    )
    assert j.needs == ("ci",)
    assert j.runs_on == "ubuntu-latest"
    assert j.barrier
    assert j.env == {"LEVEL": "1"}


def test_builder_matrix_and_outputs() -> None:
    j = (
        build("ci")
        .define_step("Cov", "grcov .", id="coverage")
        .with_matrix(rust=["nightly"])
        .with_outputs(report="${{ steps.coverage.outputs.report }}")
        .build()
    )
    assert j.matrix == matrix(rust=["nightly"])
    assert j.outputs == {"report": "${{ steps.coverage.outputs.report }}"}


def test_builder_without_steps() -> None:
    with pytest.raises(ConfigurationError):
        build("nothing").build()


def test_wf_rejects_duplicate_jobs() -> None:
    with pytest.raises(ConfigurationError):
        wf(job("a", sh("A", "true")), job("a", sh("B", "true")))


def test_wf_triggers() -> None:
    assert wf(job("a", sh("A", "true"))).trigger.matches("anything")
    assert wf(job("a", sh("A", "true")), on="push").trigger.matches("push", "x")
    w = wf(job("a", sh("A", "true")), on=["push", "pull_request"])
    assert w.trigger.matches("pull_request")
    assert not w.trigger.matches("schedule")
