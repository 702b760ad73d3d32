"""Test `${{ }}` resolution, static validation and secret handling."""

from __future__ import annotations

import pytest

from pipewright.dsl import job, matrix, sh, uses, wf
from pipewright.errors import ConfigurationError, ResolutionError, SecretNotFound
from pipewright.expressions import Scope, bind_step, references, resolve, validate_workflow
from pipewright.model import Command
from pipewright.secret_store import MASK, Redactor, SecretStore


@pytest.fixture
def scope() -> Scope:
    return Scope(
        matrix={"rust": "nightly"},
        steps={"coverage": {"report": "lcov.info"}},
        needs={"build": {"artifact": "dist.tar"}},
        secrets=SecretStore({"TOKEN": "t0k3n"}),
        env={"MODE": "ci"},
    )


def test_references() -> None:
    assert references("a ${{ matrix.x }} b ${{secrets.Y}}") == ["matrix.x", "secrets.Y"]
    assert references("no refs") == []


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("${{ matrix.rust }}", "nightly"),
        ("toolchain-${{ matrix.rust }}-x", "toolchain-nightly-x"),
        ("${{ steps.coverage.outputs.report }}", "lcov.info"),
        ("${{ needs.build.outputs.artifact }}", "dist.tar"),
        ("${{ env.MODE }}/${{ matrix.rust }}", "ci/nightly"),
        ("plain", "plain"),
    ],
)
def test_resolve(scope: Scope, text: str, expected: str) -> None:
    assert resolve(text, scope) == expected


@pytest.mark.parametrize(
    "text",
    [
        "${{ matrix.os }}",
        "${{ steps.missing.outputs.report }}",
        "${{ steps.coverage.outputs.missing }}",
        "${{ needs.other.outputs.x }}",
        "${{ secrets.NOPE }}",
        "${{ env.NOPE }}",
        "${{ github.sha }}",
        "${{ matrix.rust == 'nightly' }}",
    ],
)
def test_resolve_missing(scope: Scope, text: str) -> None:
    with pytest.raises(ResolutionError):
        resolve(text, scope)


def test_resolve_records_used_secrets(scope: Scope) -> None:
    used: set[str] = set()
    assert resolve("token=${{ secrets.TOKEN }}", scope, used) == "token=t0k3n"
    assert used == {"t0k3n"}


def test_bind_step_layers_env(scope: Scope) -> None:
    step = sh("Run", "echo ${{ matrix.rust }}", env={"MODE": "step", "TOK": "${{ secrets.TOKEN }}"})
    senv = bind_step(step, scope, base_env={"PATH": "/bin", "MODE": "base"})

    assert senv.body == Command(run="echo nightly")
    assert senv.values["PATH"] == "/bin"
    assert senv.values["MODE"] == "step"
    assert senv.values["TOK"] == "t0k3n"
    assert "t0k3n" in senv.secrets


def test_bind_step_resolves_inputs(scope: Scope) -> None:
    step = uses("Upload", "coverallsapp/github-action@master", with_={"path-to-lcov": "${{ steps.coverage.outputs.report }}"})
    senv = bind_step(step, scope, base_env={})
    assert senv.inputs == {"path-to-lcov": "lcov.info"}
    assert senv.body.uses == "coverallsapp/github-action@master"


# ---------------------------------------------------------------------
# static validation
# ---------------------------------------------------------------------

def test_valid_workflow_passes() -> None:
    validate_workflow(
        wf(
            job(
                "ci",
                sh("Coverage", "grcov", id="coverage", env={"T": "${{ secrets.COVERALLS_TOKEN }}"}),
                uses("Upload", "x/y@v1", with_={"path": "${{ steps.coverage.outputs.report }}"}),
                matrix=matrix(rust=["nightly"]),
                runs_on="${{ matrix.rust }}-runner",
                outputs={"report": "${{ steps.coverage.outputs.report }}"},
            ),
            job("fin", sh("F", "echo ${{ needs.ci.outputs.report }}"), needs="ci", barrier=True),
            env={"TOKEN": "${{ secrets.GITHUB_TOKEN }}"},
        )
    )


@pytest.mark.parametrize(
    "bad",
    [
        job("j", sh("S", "echo ${{ matrix.os }}")),
        job("j", sh("S", "echo ${{ foo.bar }}")),
        job("j", sh("S", "echo ${{ steps.later.outputs.x }}"), sh("T", "true", id="later")),
        job("j", sh("A", "true", id="a"), sh("S", "echo ${{ steps.a.b }}")),
        job("j", sh("S", "echo ${{ needs.other.outputs.x }}")),
        job("j", sh("S", "true"), runs_on="${{ secrets.RUNNER }}"),
        job("j", sh("S", "true"), outputs={"t": "${{ secrets.TOKEN }}"}),
        job("j", sh("S", "true", id="x"), sh("T", "true", id="x")),
    ],
    ids=[
        "unknown-matrix-key",
        "unknown-context",
        "later-step",
        "malformed-steps-path",
        "need-not-declared",
        "secret-in-runs-on",
        "secret-in-outputs",
        "duplicate-step-id",
    ],
)
def test_invalid_references(bad) -> None:
    with pytest.raises(ConfigurationError):
        validate_workflow(wf(bad))


def test_workflow_env_only_takes_secrets() -> None:
    with pytest.raises(ConfigurationError):
        validate_workflow(wf(job("j", sh("S", "true")), env={"X": "${{ matrix.os }}"}))


# ---------------------------------------------------------------------
# secrets
# ---------------------------------------------------------------------

def test_secret_store_from_environ() -> None:
    environ = {"PIPEWRIGHT_SECRET_COVERALLS_TOKEN": "abc", "GITHUB_TOKEN": "ghp", "OTHER": "x"}
    store = SecretStore.from_environ(environ, prefix="PIPEWRIGHT_SECRET_", names=["GITHUB_TOKEN"])
    assert store.names() == ["COVERALLS_TOKEN", "GITHUB_TOKEN"]
    assert store.lookup("GITHUB_TOKEN") == "ghp"
    assert "OTHER" not in store
    assert "abc" not in repr(store)


def test_secret_store_missing() -> None:
    with pytest.raises(SecretNotFound):
        SecretStore.from_environ({}, names=["GITHUB_TOKEN"])
    with pytest.raises(SecretNotFound) as err:
        SecretStore().lookup("NOPE")
    assert err.value.name == "NOPE"


def test_redactor_masks_every_value() -> None:
    redact = Redactor(["abc", "abcdef", ""])
    assert redact("x abcdef y abc") == f"x {MASK} y {MASK}"
    assert redact("") == ""
    assert not Redactor([])


def test_redactor_masks_multiline_secret_lines() -> None:
    redact = Redactor(["line-one\nline-two"])
    assert "line-two" not in redact("printed: line-two")
