from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import yaml

from ci_workflow.concurrency import RunHandle
from ci_workflow.config import RunnerConfig
from ci_workflow.executor import InstancePlan, JobExecutor, parse_command_file
from ci_workflow.logs import SecretMasker
from ci_workflow.process import CommandOutcome
from ci_workflow.schemas.workflow import JobSpec

Outcome = Union[CommandOutcome, Callable[[Dict[str, str]], CommandOutcome]]


class _FakeCommand:
    def __init__(self, results: Optional[Dict[str, Outcome]] = None) -> None:
        self.results = results or {}
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, argv, *, cwd, env, handle=None, deadline=None, masker=None, label=""):
        command = " ".join(argv)
        self.calls.append({"argv": list(argv), "command": command, "env": dict(env), "cwd": cwd, "label": label})
        for needle, outcome in self.results.items():
            if needle in command:
                return outcome(dict(env)) if callable(outcome) else outcome
        return CommandOutcome(returncode=0, lines=[f"ran: {argv[-1]}"])


def _job(text: str) -> JobSpec:
    return JobSpec.model_validate(yaml.safe_load(text))


def _plan(
    job: JobSpec,
    matrix: Optional[Dict[str, Any]] = None,
    runs_on: str = "ubuntu-latest",
    labels: Optional[List[str]] = None,
) -> InstancePlan:
    contexts = {
        "github": {"ref_name": "main", "event_name": "workflow_dispatch", "run_id": "1"},
        "inputs": {},
        "vars": {},
        "secrets": {},
        "matrix": matrix or {},
        "needs": {},
        "strategy": {},
        "runner": {},
        "job": {},
        "steps": {},
        "env": {},
    }
    return InstancePlan(
        job_id="job", job=job, name="job", matrix=matrix or {}, contexts=contexts, runs_on=runs_on, labels=labels or []
    )


@pytest.fixture()
def config(tmp_path: Path) -> RunnerConfig:
    return RunnerConfig(workspace_root=tmp_path)


def test_steps_run_in_order_with_interpolated_matrix(config: RunnerConfig) -> None:
    job = _job(
        """
runs-on: ubuntu-latest
steps:
  - name: "Test comand ${{ matrix.nixCommand }}"
    run: ${{ matrix.nixCommand }} --system ${{ matrix.platform.system }}
  - run: echo done
"""
    )
    command = _FakeCommand()
    matrix = {"nixCommand": "nix build .#holochain", "platform": {"system": "x86_64-linux", "runs-on": "ubuntu-latest"}}

    result = JobExecutor(config, command=command).execute(_plan(job, matrix), RunHandle())

    assert result.status == "success"
    assert [step.name for step in result.steps] == ["Test comand nix build .#holochain", "Run echo done"]
    assert command.calls[0]["argv"][-1] == "nix build .#holochain --system x86_64-linux"
    assert command.calls[0]["argv"][:2] == ["bash", "--noprofile"]
    assert command.calls[0]["env"]["GITHUB_REF_NAME"] == "main"


def test_failure_skips_later_steps_unless_always(config: RunnerConfig) -> None:
    job = _job(
        """
runs-on: ubuntu-latest
steps:
  - run: exit 3
  - run: echo skipped
  - name: report
    if: always()
    run: echo report
"""
    )
    command = _FakeCommand({"exit 3": CommandOutcome(returncode=3, lines=["boom"])})

    result = JobExecutor(config, command=command).execute(_plan(job), RunHandle())

    assert result.status == "failure"
    assert [step.outcome for step in result.steps] == ["failure", "skipped", "success"]
    assert result.steps[0].error == "Process completed with exit code 3."
    assert [call["argv"][-1] for call in command.calls] == ["exit 3", "echo report"]


def test_continue_on_error_expression(config: RunnerConfig) -> None:
    job = _job(
        """
runs-on: ${{ matrix.platform.runs-on }}
steps:
  - name: cache
    continue-on-error: ${{ matrix.platform.runs-on == 'multi-arch' }}
    run: exit 1
  - run: echo after
"""
    )
    command = _FakeCommand({"exit 1": CommandOutcome(returncode=1)})
    executor = JobExecutor(config, command=command)

    tolerant = executor.execute(_plan(job, {"platform": {"runs-on": "multi-arch"}}, runs_on="multi-arch"), RunHandle())
    assert tolerant.status == "success"
    assert tolerant.steps[0].outcome == "failure"
    assert tolerant.steps[0].conclusion == "success"
    assert tolerant.steps[1].outcome == "success"

    strict = executor.execute(_plan(job, {"platform": {"runs-on": "ubuntu-latest"}}), RunHandle())
    assert strict.status == "failure"
    assert strict.steps[1].outcome == "skipped"


def test_unknown_runner_label_fails_instance(config: RunnerConfig) -> None:
    job = _job("runs-on: windows-latest\nsteps:\n  - run: echo hi\n")
    command = _FakeCommand()

    result = JobExecutor(config, command=command).execute(_plan(job, runs_on="windows-latest"), RunHandle())

    assert result.status == "failure"
    assert "windows-latest" in (result.error or "")
    assert command.calls == []


def test_every_runner_label_is_checked(config: RunnerConfig) -> None:
    job = _job("runs-on: [ubuntu-latest, multi-arch]\nsteps:\n  - run: echo hi\n")
    executor = JobExecutor(config, command=_FakeCommand())

    accepted = executor.execute(
        _plan(job, runs_on="ubuntu-latest,multi-arch", labels=["ubuntu-latest", "multi-arch"]), RunHandle()
    )
    rejected = executor.execute(_plan(job, runs_on="ubuntu-latest,gpu", labels=["ubuntu-latest", "gpu"]), RunHandle())

    assert accepted.status == "success"
    assert accepted.runs_on == "ubuntu-latest,multi-arch"
    assert rejected.status == "failure"
    assert "gpu" in (rejected.error or "")


def test_dry_run_records_commands_without_running(tmp_path: Path) -> None:
    config = RunnerConfig(workspace_root=tmp_path, dry_run=True)
    job = _job("runs-on: ubuntu-latest\nsteps:\n  - uses: actions/checkout@v3\n  - run: nix run ./holonix#holonix-integration-test\n")
    command = _FakeCommand()

    result = JobExecutor(config, command=command).execute(_plan(job), RunHandle())

    assert result.status == "success"
    assert [step.command for step in result.steps] == ["actions/checkout@v3", "nix run ./holonix#holonix-integration-test"]
    assert command.calls == []


def test_step_outputs_and_exported_env(config: RunnerConfig) -> None:
    def _write_files(env: Dict[str, str]) -> CommandOutcome:
        Path(env["GITHUB_OUTPUT"]).write_text("artifact=holochain\n", encoding="utf-8")
        Path(env["GITHUB_ENV"]).write_text("NOTES<<EOF\nline one\nline two\nEOF\n", encoding="utf-8")
        return CommandOutcome(returncode=0)

    job = _job(
        """
runs-on: ubuntu-latest
outputs:
  artifact: ${{ steps.produce.outputs.artifact }}
steps:
  - id: produce
    run: produce
  - run: consume ${{ steps.produce.outputs.artifact }}
"""
    )
    command = _FakeCommand({"produce": _write_files})

    result = JobExecutor(config, command=command).execute(_plan(job), RunHandle())

    assert result.status == "success"
    assert result.steps[0].outputs == {"artifact": "holochain"}
    assert command.calls[1]["argv"][-1] == "consume holochain"
    assert command.calls[1]["env"]["NOTES"] == "line one\nline two"
    assert result.outputs == {"artifact": "holochain"}


def test_job_deadline_marks_instance_timed_out(config: RunnerConfig) -> None:
    job = _job("runs-on: ubuntu-latest\nsteps:\n  - run: sleep 999\n  - run: echo never\n")
    command = _FakeCommand({"sleep": CommandOutcome(returncode=-15, timed_out=True)})

    result = JobExecutor(config, command=command).execute(_plan(job), RunHandle(), deadline=time.monotonic() - 1)

    assert result.status == "failure"
    assert result.timed_out is True
    assert [step.outcome for step in result.steps] == ["failure", "skipped"]


def test_step_timeout_only_fails_the_step(config: RunnerConfig) -> None:
    job = _job(
        """
runs-on: ubuntu-latest
steps:
  - run: slow
    timeout-minutes: 1
    continue-on-error: true
  - run: echo next
"""
    )
    command = _FakeCommand({"slow": CommandOutcome(returncode=-15, timed_out=True)})

    result = JobExecutor(config, command=command).execute(_plan(job), RunHandle())

    assert result.timed_out is False
    assert result.status == "success"
    assert result.steps[0].outcome == "failure"
    assert result.steps[1].outcome == "success"


def test_cancelled_handle_cancels_instance(config: RunnerConfig) -> None:
    handle = RunHandle()
    handle.cancel("superseded")
    job = _job("runs-on: ubuntu-latest\nsteps:\n  - run: echo hi\n")

    result = JobExecutor(config, command=_FakeCommand()).execute(_plan(job), handle)

    assert result.status == "cancelled"
    assert result.error == "superseded"


def test_cancellation_during_step(config: RunnerConfig) -> None:
    job = _job("runs-on: ubuntu-latest\nsteps:\n  - run: long\n  - run: echo next\n")
    command = _FakeCommand({"long": CommandOutcome(returncode=-15, cancelled=True)})
    handle = RunHandle()

    def _cancel_then(env: Dict[str, str]) -> CommandOutcome:
        handle.cancel("cancel-in-progress")
        return CommandOutcome(returncode=-15, cancelled=True)

    command.results["long"] = _cancel_then
    result = JobExecutor(config, command=command).execute(_plan(job), handle)

    assert result.status == "cancelled"
    assert [step.outcome for step in result.steps] == ["cancelled", "skipped"]


def test_secret_values_are_masked_in_recorded_commands(config: RunnerConfig) -> None:
    masker = SecretMasker(["super-secret-token"])
    job = _job("runs-on: ubuntu-latest\nsteps:\n  - run: echo super-secret-token\n")

    result = JobExecutor(config, masker=masker, command=_FakeCommand()).execute(_plan(job), RunHandle())

    assert result.steps[0].command == "echo ***"


def test_checkout_requires_git_workspace(config: RunnerConfig) -> None:
    job = _job("runs-on: ubuntu-latest\nsteps:\n  - uses: actions/checkout@v3\n")
    executor = JobExecutor(config, command=_FakeCommand())

    missing = executor.execute(_plan(job), RunHandle())
    assert missing.status == "failure"
    assert "not a git checkout" in (missing.steps[0].error or "")

    (config.workspace_root / ".git").mkdir()
    present = executor.execute(_plan(job), RunHandle())
    assert present.status == "success"


def test_install_nix_exports_config_for_later_steps(config: RunnerConfig) -> None:
    job = _job(
        """
runs-on: ubuntu-latest
steps:
  - uses: cachix/install-nix-action@v18
    with:
      install_url: https://releases.nixos.org/nix/nix-2.12.0/install
      extra_nix_config: |
        experimental-features = flakes nix-command
  - run: nix build
"""
    )
    command = _FakeCommand({"nix --version": CommandOutcome(returncode=0, lines=["nix (Nix) 2.12.0"])})
    executor = JobExecutor(config, command=command, which=lambda name: f"/usr/bin/{name}")

    result = executor.execute(_plan(job), RunHandle())

    assert result.status == "success"
    assert result.steps[0].logs[0] == "nix (Nix) 2.12.0"
    assert command.calls[1]["env"]["NIX_CONFIG"] == "experimental-features = flakes nix-command"


def test_unknown_action_fails_unless_skipped(tmp_path: Path) -> None:
    job = _job("runs-on: ubuntu-latest\nsteps:\n  - uses: some/other-action@v1\n")

    strict = JobExecutor(RunnerConfig(workspace_root=tmp_path), command=_FakeCommand()).execute(_plan(job), RunHandle())
    assert strict.status == "failure"
    assert "Unknown action" in (strict.steps[0].error or "")

    lenient_config = RunnerConfig(workspace_root=tmp_path, skip_unknown_actions=True)
    lenient = JobExecutor(lenient_config, command=_FakeCommand()).execute(_plan(job), RunHandle())
    assert lenient.status == "success"


def test_parse_command_file(tmp_path: Path) -> None:
    path = tmp_path / "out"
    path.write_text("a=1\nb=x=y\n\nblock<<END\none\ntwo\nEND\n", encoding="utf-8")
    assert parse_command_file(path) == {"a": "1", "b": "x=y", "block": "one\ntwo"}
    assert parse_command_file(tmp_path / "missing") == {}
