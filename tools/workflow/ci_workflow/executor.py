"""Execute the steps of one job instance."""

from __future__ import annotations

import logging
import os
import shlex
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .actions import ActionContext, ActionError, ActionResult, get_action
from .concurrency import RunHandle
from .config import RunnerConfig
from .expressions import ExpressionError, StatusState, evaluate_condition, interpolate, is_truthy, to_display_string
from .logs import SecretMasker, default_masker
from .models import CANCELLED, FAILURE, SKIPPED, SUCCESS, JobInstanceResult, StepResult
from .process import CommandOutcome, run_command
from .schemas.workflow import JobSpec, StepSpec

logger = logging.getLogger(__name__)

CommandFn = Callable[..., CommandOutcome]


@dataclass(slots=True)
class InstancePlan:
    """Everything needed to run one matrix combination of a job."""

    job_id: str
    job: JobSpec
    name: str
    matrix: Dict[str, Any]
    contexts: Dict[str, Any]
    workflow_env: Dict[str, str] = field(default_factory=dict)
    runs_on: Optional[str] = None
    labels: List[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_command_file(path: Path) -> Dict[str, str]:
    """Parse ``GITHUB_OUTPUT``/``GITHUB_ENV`` style files (``k=v`` and ``k<<EOF`` blocks)."""

    if not path.exists():
        return {}
    values: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    index = 0
    while index < len(lines):
        line = lines[index]
        index += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delimiter = line.split("<<", 1)
            block: List[str] = []
            while index < len(lines) and lines[index] != delimiter:
                block.append(lines[index])
                index += 1
            index += 1
            values[key.strip()] = "\n".join(block)
        elif "=" in line:
            key, value = line.split("=", 1)
            values[key.strip()] = value
    return values


def timeout_minutes(value: Any, contexts: Mapping[str, Any]) -> Optional[float]:
    if value is None:
        return None
    resolved = interpolate(value, contexts) if isinstance(value, str) else value
    try:
        minutes = float(resolved)
    except (TypeError, ValueError) as exc:
        raise ExpressionError(f"timeout-minutes must be a number (got {resolved!r})") from exc
    return minutes if minutes > 0 else None


class JobExecutor:
    def __init__(
        self,
        config: RunnerConfig,
        *,
        masker: Optional[SecretMasker] = None,
        command: CommandFn = run_command,
        which: Callable[[str], Optional[str]] | None = None,
    ) -> None:
        self.config = config
        self.masker = masker or default_masker
        self.command = command
        self.which = which

    def execute(self, plan: InstancePlan, handle: RunHandle, deadline: Optional[float] = None) -> JobInstanceResult:
        result = JobInstanceResult(
            job_id=plan.job_id,
            name=plan.name,
            matrix=plan.matrix,
            runs_on=plan.runs_on,
            status=SUCCESS,
            started_at=_utcnow(),
        )
        try:
            if handle.cancelled:
                result.status = CANCELLED
                result.error = handle.reason
                return result
            labels = self._runner_labels(plan)
            unknown = [label for label in labels if label not in self.config.known_runners]
            if unknown:
                result.status = FAILURE
                result.error = f"No execution environment matches runs-on {unknown}; known: {self.config.known_runners}"
                logger.error("%s: %s", plan.name, result.error)
                return result
            with tempfile.TemporaryDirectory(prefix="ci-job-") as scratch:
                self._run_steps(plan, handle, deadline, Path(scratch), result)
        except ExpressionError as exc:
            result.status = FAILURE
            result.error = str(exc)
            logger.error("%s: %s", plan.name, exc)
        finally:
            result.finished_at = _utcnow()
            logger.info("Job instance %s finished: %s", plan.name, result.status)
        return result

    def _runner_labels(self, plan: InstancePlan) -> List[str]:
        if plan.labels:
            return list(plan.labels)
        runs_on = plan.runs_on if plan.runs_on is not None else plan.job.runs_on
        if isinstance(runs_on, list):
            return [str(label) for label in runs_on]
        return [str(runs_on)]

    def _run_steps(
        self,
        plan: InstancePlan,
        handle: RunHandle,
        deadline: Optional[float],
        scratch: Path,
        result: JobInstanceResult,
    ) -> None:
        contexts = dict(plan.contexts)
        contexts["steps"] = {}
        contexts["job"] = {"status": SUCCESS}
        job_env = dict(plan.workflow_env)
        job_env.update({key: to_display_string(value) for key, value in interpolate(plan.job.env, contexts).items()})
        contexts["env"] = dict(job_env)

        failed = False
        for index, step in enumerate(plan.job.steps):
            status = StatusState(failed=failed, cancelled=handle.cancelled)
            contexts["env"] = dict(job_env)
            contexts["job"] = {"status": CANCELLED if status.cancelled else (FAILURE if failed else SUCCESS)}
            step_result = self._run_step(plan, step, index, contexts, job_env, status, handle, deadline, scratch)
            result.steps.append(step_result)
            if step.id:
                contexts["steps"][step.id] = {
                    "outcome": step_result.outcome,
                    "conclusion": step_result.conclusion,
                    "outputs": step_result.outputs,
                }
            if step_result.outcome == "timed_out":
                step_result.outcome = FAILURE
                result.timed_out = True
                failed = True
                result.error = f"Job exceeded its timeout during step '{step_result.name}'."
                for remaining in plan.job.steps[index + 1 :]:
                    result.steps.append(StepResult(name=remaining.display_name, outcome=SKIPPED, conclusion=SKIPPED))
                break
            if step_result.conclusion == FAILURE:
                failed = True

        if result.timed_out:
            result.status = FAILURE
        elif handle.cancelled:
            result.status = CANCELLED
            result.error = handle.reason
        elif failed:
            result.status = FAILURE
        else:
            result.status = SUCCESS

        if plan.job.outputs:
            try:
                outputs = interpolate(plan.job.outputs, contexts)
                result.outputs = {key: to_display_string(value) for key, value in outputs.items()}
            except ExpressionError as exc:
                logger.warning("%s: could not evaluate job outputs: %s", plan.name, exc)

    def _run_step(
        self,
        plan: InstancePlan,
        step: StepSpec,
        index: int,
        contexts: Dict[str, Any],
        job_env: Dict[str, str],
        status: StatusState,
        handle: RunHandle,
        deadline: Optional[float],
        scratch: Path,
    ) -> StepResult:
        try:
            name = to_display_string(interpolate(step.display_name, contexts, status=status))
        except ExpressionError:
            name = step.display_name

        try:
            should_run = evaluate_condition(step.if_, contexts, status=status)
        except ExpressionError as exc:
            return StepResult(name=name, outcome=FAILURE, conclusion=FAILURE, error=str(exc))
        if not should_run:
            logger.debug("%s: skipping step '%s'", plan.name, name)
            return StepResult(name=name, outcome=SKIPPED, conclusion=SKIPPED)

        try:
            continue_on_error = is_truthy(interpolate(step.continue_on_error, contexts, status=status))
            step_env_raw = interpolate(step.env, {**contexts, "env": {**job_env}}, status=status)
            step_deadline = self._step_deadline(step, contexts, deadline)
        except ExpressionError as exc:
            return StepResult(name=name, outcome=FAILURE, conclusion=FAILURE, error=str(exc))

        env = {**job_env, **{key: to_display_string(value) for key, value in step_env_raw.items()}}
        step_contexts = {**contexts, "env": env}
        output_file = scratch / f"output-{index}"
        env_file = scratch / f"env-{index}"
        process_env = self._process_env(plan, env, output_file, env_file)
        cwd = self.config.workspace_root
        if step.working_directory:
            cwd = self.config.resolve(Path(step.working_directory))

        logger.info("%s: running step '%s'", plan.name, name)
        if step.run is not None:
            step_result = self._run_shell(name, step, step_contexts, status, process_env, cwd, handle, step_deadline)
        else:
            step_result = self._run_action(name, step, step_contexts, status, process_env, cwd, handle, step_deadline, job_env)

        if step_result.outcome == SUCCESS:
            step_result.outputs.update(parse_command_file(output_file))
            job_env.update(parse_command_file(env_file))

        if step_result.outcome == "timed_out" and (deadline is None or time.monotonic() < deadline):
            # Only the step's own timeout fired; the job keeps going.
            step_result.outcome = FAILURE
        if step_result.outcome == FAILURE and continue_on_error:
            logger.warning("%s: step '%s' failed but continue-on-error is set", plan.name, name)
            step_result.conclusion = SUCCESS
        return step_result

    def _step_deadline(self, step: StepSpec, contexts: Mapping[str, Any], deadline: Optional[float]) -> Optional[float]:
        minutes = timeout_minutes(step.timeout_minutes, contexts)
        if minutes is None:
            return deadline
        step_deadline = time.monotonic() + minutes * 60
        return step_deadline if deadline is None else min(deadline, step_deadline)

    def _process_env(self, plan: InstancePlan, env: Mapping[str, str], output_file: Path, env_file: Path) -> Dict[str, str]:
        github = plan.contexts.get("github", {})
        process_env = dict(os.environ)
        process_env.update(
            {
                "CI": "true",
                "GITHUB_ACTIONS": "true",
                "GITHUB_WORKSPACE": str(self.config.workspace_root),
                "GITHUB_EVENT_NAME": str(github.get("event_name", "")),
                "GITHUB_REF": str(github.get("ref", "")),
                "GITHUB_REF_NAME": str(github.get("ref_name", "")),
                "GITHUB_SHA": str(github.get("sha", "")),
                "GITHUB_RUN_ID": str(github.get("run_id", "")),
                "GITHUB_JOB": plan.job_id,
                "GITHUB_OUTPUT": str(output_file),
                "GITHUB_ENV": str(env_file),
                "RUNNER_NAME": str(plan.runs_on or ""),
            }
        )
        process_env.update(env)
        return process_env

    def _shell_argv(self, step: StepSpec, script: str) -> List[str]:
        if step.shell in (None, "bash"):
            return [*self.config.shell, script]
        if step.shell == "sh":
            return ["sh", "-e", "-c", script]
        return [*shlex.split(step.shell), script]

    def _run_shell(
        self,
        name: str,
        step: StepSpec,
        contexts: Mapping[str, Any],
        status: StatusState,
        env: Mapping[str, str],
        cwd: Path,
        handle: RunHandle,
        deadline: Optional[float],
    ) -> StepResult:
        try:
            script = to_display_string(interpolate(step.run, contexts, status=status))
        except ExpressionError as exc:
            return StepResult(name=name, outcome=FAILURE, conclusion=FAILURE, error=str(exc))
        command = self.masker.mask(script.strip())
        if self.config.dry_run:
            return StepResult(name=name, outcome=SUCCESS, conclusion=SUCCESS, command=command, logs=["dry-run: not executed"])

        outcome = self.command(
            self._shell_argv(step, script),
            cwd=cwd,
            env=env,
            handle=handle,
            deadline=deadline,
            masker=self.masker,
            label=name,
        )
        return self._from_outcome(name, command, outcome)

    def _from_outcome(self, name: str, command: Optional[str], outcome: CommandOutcome) -> StepResult:
        if outcome.cancelled:
            return StepResult(name=name, outcome=CANCELLED, conclusion=CANCELLED, command=command, returncode=outcome.returncode, logs=outcome.lines)
        if outcome.timed_out:
            return StepResult(
                name=name,
                outcome="timed_out",
                conclusion=FAILURE,
                command=command,
                returncode=outcome.returncode,
                error="timed out",
                logs=outcome.lines,
            )
        state = SUCCESS if outcome.returncode == 0 else FAILURE
        error = None if state == SUCCESS else f"Process completed with exit code {outcome.returncode}."
        return StepResult(name=name, outcome=state, conclusion=state, command=command, returncode=outcome.returncode, error=error, logs=outcome.lines)

    def _run_action(
        self,
        name: str,
        step: StepSpec,
        contexts: Mapping[str, Any],
        status: StatusState,
        env: Mapping[str, str],
        cwd: Path,
        handle: RunHandle,
        deadline: Optional[float],
        job_env: Dict[str, str],
    ) -> StepResult:
        uses = step.uses or ""
        try:
            handler = get_action(uses)
        except ActionError as exc:
            if self.config.skip_unknown_actions:
                logger.warning("Skipping unknown action %s", uses)
                return StepResult(name=name, outcome=SUCCESS, conclusion=SUCCESS, command=uses, logs=[f"skipped unknown action {uses}"])
            return StepResult(name=name, outcome=FAILURE, conclusion=FAILURE, command=uses, error=str(exc))

        try:
            inputs = interpolate(step.with_, contexts, status=status)
        except ExpressionError as exc:
            return StepResult(name=name, outcome=FAILURE, conclusion=FAILURE, command=uses, error=str(exc))

        if self.config.dry_run:
            return StepResult(name=name, outcome=SUCCESS, conclusion=SUCCESS, command=uses, logs=["dry-run: not executed"])

        outcomes: List[CommandOutcome] = []

        def _run(argv: Sequence[str]) -> CommandOutcome:
            outcome = self.command(argv, cwd=cwd, env=env, handle=handle, deadline=deadline, masker=self.masker, label=name)
            outcomes.append(outcome)
            return outcome

        context = ActionContext(
            workspace=cwd,
            inputs=dict(inputs),
            env=dict(env),
            run=_run,
            allow_install=self.config.allow_install,
        )
        if self.which is not None:
            context.which = self.which

        try:
            action_result: ActionResult = handler.execute(context)
        except ActionError as exc:
            last = outcomes[-1] if outcomes else None
            if last is not None and last.cancelled:
                return StepResult(name=name, outcome=CANCELLED, conclusion=CANCELLED, command=uses, error=str(exc))
            if last is not None and last.timed_out:
                return StepResult(name=name, outcome="timed_out", conclusion=FAILURE, command=uses, error=str(exc))
            logger.error("%s: %s", name, self.masker.mask(str(exc)))
            return StepResult(name=name, outcome=FAILURE, conclusion=FAILURE, command=uses, error=self.masker.mask(str(exc)))

        job_env.update(action_result.exported_env)
        logs = [self.masker.mask(line) for line in action_result.logs]
        return StepResult(
            name=name,
            outcome=SUCCESS,
            conclusion=SUCCESS,
            command=uses,
            logs=logs,
            outputs=dict(action_result.outputs),
        )
