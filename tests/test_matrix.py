"""Test matrix expansion."""

from __future__ import annotations

import pytest

from pipewright.dsl import job, matrix, sh
from pipewright.errors import ConfigurationError
from pipewright.matrix import expand, expand_all, instance_id
from pipewright.model import MatrixSpec


def test_no_matrix_is_one_instance() -> None:
    insts = expand(job("build", sh("Build", "make")))
    assert [i.instance_id for i in insts] == ["build"]
    assert insts[0].params == {}


def test_single_value_matrix() -> None:
    insts = expand(job("ci", sh("Test", "true"), matrix=matrix(rust=["nightly"])))
    assert [i.instance_id for i in insts] == ["ci[rust=nightly]"]
    assert insts[0].params == {"rust": "nightly"}


def test_cross_product_in_declared_order() -> None:
    j = job("t", sh("Test", "true"), matrix=matrix(os=["linux", "mac"], py=["3.11", "3.12"]))
    assert [i.instance_id for i in expand(j)] == [
        "t[os=linux,py=3.11]",
        "t[os=linux,py=3.12]",
        "t[os=mac,py=3.11]",
        "t[os=mac,py=3.12]",
    ]


def test_exclude_removes_combinations() -> None:
    j = job(
        "t",
        sh("Test", "true"),
        matrix=matrix(os=["linux", "mac"], py=["3.11", "3.12"], exclude=[{"os": "mac", "py": "3.11"}]),
    )
    ids = [i.instance_id for i in expand(j)]
    assert len(ids) == 3
    assert "t[os=mac,py=3.11]" not in ids


def test_empty_value_list_yields_no_instances() -> None:
    j = job("t", sh("Test", "true"), matrix=matrix(os=["linux"], py=[]))
    assert expand(j) == []


def test_values_are_stringified() -> None:
    j = job("t", sh("Test", "true"), matrix=matrix(debug=[True], n=[1]))
    (inst,) = expand(j)
    assert inst.params == {"debug": "true", "n": "1"}


def test_runs_on_substitutes_matrix() -> None:
    j = job("t", sh("Test", "true"), runs_on="${{ matrix.os }}", matrix=matrix(os=["linux"]))
    assert expand(j)[0].runs_on == "linux"


def test_runs_on_unknown_param_is_config_error() -> None:
    j = job("t", sh("Test", "true"), runs_on="${{ matrix.arch }}", matrix=matrix(os=["linux"]))
    with pytest.raises(ConfigurationError):
        expand(j)


@pytest.mark.parametrize(
    "spec",
    [
        MatrixSpec(params={}),
        MatrixSpec(params={"os": "linux"}),
        MatrixSpec(params={"os": (["a"],)}),
        MatrixSpec(params={"os": ("linux",)}, exclude=({"arch": "x86"},)),
    ],
    ids=["no-params", "string-values", "nested-values", "unknown-exclude-key"],
)
def test_malformed_matrix(spec: MatrixSpec) -> None:
    j = job("t", sh("Test", "true"), matrix=spec)
    with pytest.raises(ConfigurationError):
        expand(j)


def test_instance_ids_are_deterministic() -> None:
    assert instance_id("ci", {}) == "ci"
    assert instance_id("ci", {"rust": "nightly"}) == "ci[rust=nightly]"
    j = job("t", sh("Test", "true"), matrix=matrix(a=["1", "2"]))
    assert [i.instance_id for i in expand_all({"t": j})["t"]] == [i.instance_id for i in expand(j)]
