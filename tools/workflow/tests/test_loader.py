from __future__ import annotations

from pathlib import Path

import pytest

from ci_workflow.loader import (
    WorkflowLoadError,
    discover_workflows,
    job_order,
    load_workflow,
    parse_workflow,
    resolve_workflow_path,
)

WORKFLOW = """
name: sample
on:
  workflow_dispatch:
  pull_request: {}
concurrency:
  group: ${{ github.ref_name }}
  cancel-in-progress: true
jobs:
  tests:
    timeout-minutes: 100
    strategy:
      fail-fast: false
      matrix:
        platform:
          - arch: linux-x86_64
            runs-on: ubuntu-latest
    runs-on: ${{ matrix.platform.runs-on }}
    steps:
      - uses: actions/checkout@v3
      - name: run
        if: ${{ matrix.platform.runs-on != 'macos-latest' }}
        run: echo hi
  gate:
    needs: tests
    if: always()
    runs-on: ubuntu-latest
    steps:
      - run: "true"
"""


def test_parse_workflow_normalizes_on_key() -> None:
    workflow = parse_workflow(WORKFLOW)

    assert workflow.name == "sample"
    assert set(workflow.triggers) == {"workflow_dispatch", "pull_request"}
    assert workflow.concurrency is not None
    assert workflow.concurrency.group == "${{ github.ref_name }}"
    assert workflow.concurrency.cancel_in_progress is True

    tests = workflow.jobs["tests"]
    assert tests.timeout_minutes == 100
    assert tests.strategy is not None and tests.strategy.fail_fast is False
    assert tests.steps[0].uses == "actions/checkout@v3"
    assert tests.steps[0].display_name == "Run actions/checkout@v3"
    assert tests.steps[1].if_ == "${{ matrix.platform.runs-on != 'macos-latest' }}"
    assert workflow.jobs["gate"].needs == ["tests"]


def test_job_order_respects_needs() -> None:
    workflow = parse_workflow(WORKFLOW)
    assert job_order(workflow) == ["tests", "gate"]


def test_missing_trigger_is_rejected() -> None:
    with pytest.raises(WorkflowLoadError, match="trigger"):
        parse_workflow("jobs:\n  a:\n    runs-on: x\n    steps:\n      - run: 'true'\n")


def test_invalid_yaml_is_rejected() -> None:
    with pytest.raises(WorkflowLoadError, match="Invalid YAML"):
        parse_workflow("on: [push\njobs: {}")


def test_step_must_have_run_or_uses() -> None:
    text = "on: push\njobs:\n  a:\n    runs-on: x\n    steps:\n      - name: empty\n"
    with pytest.raises(WorkflowLoadError, match="schema validation"):
        parse_workflow(text)


def test_unknown_needs_and_cycles_are_rejected() -> None:
    unknown = "on: push\njobs:\n  a:\n    needs: missing\n    runs-on: x\n    steps:\n      - run: 'true'\n"
    with pytest.raises(WorkflowLoadError, match="unknown job"):
        parse_workflow(unknown)

    cycle = (
        "on: push\njobs:\n"
        "  a:\n    needs: b\n    runs-on: x\n    steps:\n      - run: 'true'\n"
        "  b:\n    needs: a\n    runs-on: x\n    steps:\n      - run: 'true'\n"
    )
    with pytest.raises(WorkflowLoadError, match="cycle"):
        parse_workflow(cycle)


def test_discover_and_resolve(tmp_path: Path) -> None:
    workflows = tmp_path / ".github" / "workflows"
    workflows.mkdir(parents=True)
    (workflows / "build.yml").write_text(WORKFLOW)
    (workflows / "notes.txt").write_text("ignored")

    assert discover_workflows(workflows) == [workflows / "build.yml"]
    assert resolve_workflow_path("build", workflows) == workflows / "build.yml"
    assert resolve_workflow_path("build.yml", workflows) == workflows / "build.yml"
    with pytest.raises(WorkflowLoadError, match="Available workflows: build"):
        resolve_workflow_path("missing", workflows)

    workflow = load_workflow(workflows / "build.yml")
    assert workflow.source == workflows / "build.yml"


def test_load_missing_file(tmp_path: Path) -> None:
    with pytest.raises(WorkflowLoadError, match="not found"):
        load_workflow(tmp_path / "nope.yml")
