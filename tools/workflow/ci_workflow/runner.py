"""Run a workflow: triggers, concurrency admission, job graph, matrix fan-out."""

from __future__ import annotations

import itertools
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .aggregate import combine_job_result
from .concurrency import ConcurrencyManager, RunHandle
from .config import RunnerConfig
from .executor import InstancePlan, JobExecutor, timeout_minutes
from .expressions import (
    ExpressionError,
    StatusState,
    collect_references,
    evaluate_condition,
    interpolate,
    is_truthy,
    split_template,
    to_display_string,
)
from .loader import job_order
from .logs import SecretMasker, default_masker
from .matrix import MatrixError, expand_matrix, instance_name
from .models import CANCELLED, FAILURE, SKIPPED, SUCCESS, JobInstanceResult, JobResult, RunResult
from .schemas.workflow import ConcurrencySpec, JobSpec, WorkflowDefinition
from .secrets import SecretsContext, SecretSpec, register_secret
from .triggers import TriggerError, TriggerEvent, matches, parse_triggers, resolve_inputs

logger = logging.getLogger(__name__)

_run_numbers = itertools.count(1)


def register_workflow_secrets(workflow: WorkflowDefinition) -> List[str]:
    """Register a ``SecretSpec`` for every ``secrets.NAME`` the workflow references."""

    names = collect_references(workflow.model_dump(by_alias=True, exclude={"source"}), "secrets")
    for name in names:
        register_secret(SecretSpec(name=name, workflows=(workflow.display_name,)))
    return names


def display_name(job_id: str, job: JobSpec, contexts: Dict[str, Any], combination: Dict[str, Any]) -> str:
    """Instance name; a job name that already mentions the matrix is used as is."""

    if not job.name:
        return instance_name(job_id, combination)
    base_name = to_display_string(interpolate(job.name, contexts))
    if any(is_expr and "matrix" in text for is_expr, text in split_template(job.name)):
        return base_name
    return instance_name(base_name, combination)


def matrix_plan(workflow: WorkflowDefinition, job_ids: Optional[Sequence[str]] = None) -> Dict[str, List[Dict[str, Any]]]:
    """Statically expand job matrices into instance name, combination and runs-on label.

    Matrices or labels that depend on run-time contexts (``needs``, ``secrets``)
    raise ``ExpressionError``.
    """

    plan: Dict[str, List[Dict[str, Any]]] = {}
    for job_id in job_ids or list(workflow.jobs):
        if job_id not in workflow.jobs:
            raise TriggerError(f"Unknown job '{job_id}' in workflow '{workflow.display_name}'.")
        job = workflow.jobs[job_id]
        contexts: Dict[str, Any] = {"github": {}, "inputs": {}, "vars": {}, "env": {}}
        entries: List[Dict[str, Any]] = []
        for combination in expand_matrix(job.strategy.matrix if job.strategy else None, contexts):
            instance_contexts = {**contexts, "matrix": combination}
            runs_on = interpolate(job.runs_on, instance_contexts)
            entries.append(
                {
                    "name": display_name(job_id, job, instance_contexts, combination),
                    "matrix": combination,
                    "runs_on": runs_on,
                }
            )
        plan[job_id] = entries
    return plan


class WorkflowRunner:
    def __init__(
        self,
        config: RunnerConfig,
        *,
        concurrency: Optional[ConcurrencyManager] = None,
        executor: Optional[JobExecutor] = None,
        masker: Optional[SecretMasker] = None,
    ) -> None:
        self.config = config
        self.concurrency = concurrency or ConcurrencyManager()
        self.masker = masker or default_masker
        self.executor = executor or JobExecutor(config, masker=self.masker)

    def run(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        *,
        handle: Optional[RunHandle] = None,
        jobs: Optional[Sequence[str]] = None,
    ) -> RunResult:
        triggers = parse_triggers(workflow.triggers)
        if not matches(triggers, event):
            raise TriggerError(f"Workflow '{workflow.display_name}' is not triggered by '{event.name}' on '{event.ref_name}'.")
        inputs = resolve_inputs(triggers, event)
        register_workflow_secrets(workflow)

        run_handle = handle or RunHandle(label=workflow.display_name)
        contexts = self._base_contexts(workflow, event, inputs, run_handle)

        group: Optional[str] = None
        cancel_in_progress = False
        if workflow.concurrency is not None:
            group, cancel_in_progress = self._concurrency(workflow.concurrency, contexts)
            group = f"{workflow.display_name}:{group}"

        result = RunResult(
            run_id=run_handle.run_id,
            workflow=workflow.display_name,
            event=event.name,
            ref_name=event.ref_name,
            concurrency_group=group,
            conclusion=SUCCESS,
            dry_run=self.config.dry_run,
        )
        logger.info("Run %s of '%s' triggered by %s on %s", run_handle.run_id, workflow.display_name, event.name, event.ref_name)

        if group is not None and not self.concurrency.admit(run_handle, group, cancel_in_progress=cancel_in_progress):
            for job_id in workflow.jobs:
                result.jobs[job_id] = JobResult(job_id=job_id, result=CANCELLED)
            return self._finish(result, run_handle)

        try:
            result.jobs = self._run_jobs(workflow, contexts, run_handle, jobs)
        finally:
            if group is not None:
                self.concurrency.release(run_handle, group)
        return self._finish(result, run_handle)

    def _finish(self, result: RunResult, handle: RunHandle) -> RunResult:
        result.finished_at = datetime.now(timezone.utc)
        result.cancelled = handle.cancelled
        if handle.cancelled:
            result.conclusion = CANCELLED
        elif any(job.result == FAILURE for job in result.jobs.values()):
            result.conclusion = FAILURE
        else:
            result.conclusion = SUCCESS
        logger.info("Run %s of '%s' concluded: %s", result.run_id, result.workflow, result.conclusion)
        return result

    def _base_contexts(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        inputs: Dict[str, str],
        handle: RunHandle,
    ) -> Dict[str, Any]:
        github = {
            "event_name": event.name,
            "ref": event.ref,
            "ref_name": event.ref_name,
            "base_ref": event.base_ref or "",
            "head_ref": event.head_ref or "",
            "sha": event.sha,
            "actor": event.actor,
            "repository": self.config.repository,
            "run_id": str(handle.run_id),
            "run_number": str(next(_run_numbers)),
            "workspace": str(self.config.workspace_root),
            "workflow": workflow.display_name,
            "event": {"inputs": dict(inputs)},
        }
        contexts: Dict[str, Any] = {
            "github": github,
            "inputs": dict(inputs),
            "vars": {},
            "secrets": SecretsContext(on_resolve=self.masker.add),
            "matrix": {},
            "needs": {},
            "strategy": {},
            "runner": {},
            "job": {},
            "steps": {},
            "env": {},
        }
        contexts["env"] = {
            key: to_display_string(value) for key, value in interpolate(workflow.env, contexts).items()
        }
        return contexts

    def _concurrency(self, spec: ConcurrencySpec, contexts: Dict[str, Any]) -> tuple[str, bool]:
        group = to_display_string(interpolate(spec.group, contexts))
        cancel = is_truthy(interpolate(spec.cancel_in_progress, contexts))
        return group, cancel

    def _run_jobs(
        self,
        workflow: WorkflowDefinition,
        contexts: Dict[str, Any],
        handle: RunHandle,
        selected: Optional[Sequence[str]],
    ) -> Dict[str, JobResult]:
        order = job_order(workflow)
        if selected:
            unknown = [job_id for job_id in selected if job_id not in workflow.jobs]
            if unknown:
                raise TriggerError(f"Unknown job(s) requested: {', '.join(unknown)}")
        futures: Dict[str, Future] = {}

        with ThreadPoolExecutor(max_workers=max(1, len(order)), thread_name_prefix="ci-job") as pool:
            for job_id in order:
                needs = {need: futures[need] for need in workflow.jobs[job_id].needs}
                futures[job_id] = pool.submit(
                    self._job_when_ready, workflow, job_id, needs, contexts, handle, selected
                )
            return {job_id: futures[job_id].result() for job_id in workflow.jobs}

    def _job_when_ready(
        self,
        workflow: WorkflowDefinition,
        job_id: str,
        needs: Dict[str, Future],
        contexts: Dict[str, Any],
        handle: RunHandle,
        selected: Optional[Sequence[str]],
    ) -> JobResult:
        need_results: Dict[str, Optional[JobResult]] = {need: future.result() for need, future in needs.items()}
        job = workflow.jobs[job_id]
        if selected and job_id not in selected:
            return JobResult(job_id=job_id, result=SKIPPED)
        return self._run_job(workflow, job_id, job, need_results, contexts, handle)

    def _run_job(
        self,
        workflow: WorkflowDefinition,
        job_id: str,
        job: JobSpec,
        need_results: Dict[str, Optional[JobResult]],
        contexts: Dict[str, Any],
        handle: RunHandle,
    ) -> JobResult:
        needs_ctx = {
            need: {"result": job_result.result if job_result else SKIPPED, "outputs": dict(job_result.outputs) if job_result else {}}
            for need, job_result in need_results.items()
        }
        job_contexts = {**contexts, "needs": needs_ctx}
        needs_failed = any(value["result"] != SUCCESS for value in needs_ctx.values())
        status = StatusState(failed=needs_failed, cancelled=handle.cancelled)

        try:
            should_run = evaluate_condition(job.if_, job_contexts, status=status)
        except ExpressionError as exc:
            return self._job_error(job_id, job, str(exc))
        if not should_run:
            outcome = CANCELLED if handle.cancelled else SKIPPED
            logger.info("Job '%s' %s", job_id, outcome)
            return JobResult(job_id=job_id, result=outcome)

        job_handle = handle.child(job_id)
        if handle.cancelled:
            # Conditions such as always() still run after cancellation.
            job_handle = RunHandle(handle.run_id, label=job_id)

        group: Optional[str] = None
        if job.concurrency is not None:
            try:
                group, cancel_in_progress = self._concurrency(job.concurrency, job_contexts)
            except ExpressionError as exc:
                return self._job_error(job_id, job, str(exc))
            group = f"job:{group}"
            if not self.concurrency.admit(job_handle, group, cancel_in_progress=cancel_in_progress):
                return JobResult(job_id=job_id, result=CANCELLED)
        try:
            return self._run_matrix(job_id, job, job_contexts, job_handle)
        finally:
            if group is not None:
                self.concurrency.release(job_handle, group)

    def _job_error(self, job_id: str, job: JobSpec, error: str) -> JobResult:
        logger.error("Job '%s' failed before start: %s", job_id, error)
        instance = JobInstanceResult(job_id=job_id, name=job.name or job_id, matrix={}, runs_on=None, status=FAILURE, error=error)
        return JobResult(job_id=job_id, result=FAILURE, instances=[instance])

    def _run_matrix(self, job_id: str, job: JobSpec, contexts: Dict[str, Any], job_handle: RunHandle) -> JobResult:
        strategy = job.strategy
        try:
            combinations = expand_matrix(strategy.matrix if strategy else None, contexts)
            fail_fast = is_truthy(interpolate(strategy.fail_fast, contexts)) if strategy else False
            max_parallel = self._max_parallel(strategy.max_parallel if strategy else None, contexts)
            timeout = timeout_minutes(job.timeout_minutes, contexts)
        except (MatrixError, ExpressionError) as exc:
            return self._job_error(job_id, job, str(exc))

        deadline = time.monotonic() + timeout * 60 if timeout else None
        plans: List[InstancePlan] = []
        for index, combination in enumerate(combinations):
            try:
                plans.append(self._plan(job_id, job, contexts, combination, index, len(combinations), fail_fast, max_parallel))
            except ExpressionError as exc:
                return self._job_error(job_id, job, str(exc))

        workers = min(len(plans), max_parallel or self.config.max_workers)
        logger.info("Job '%s': %d instance(s), fail-fast=%s, workers=%d", job_id, len(plans), fail_fast, workers)
        instances: Dict[int, JobInstanceResult] = {}
        with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix=f"ci-{job_id}") as pool:
            pending = {
                pool.submit(self._run_instance, plan, job_handle.child(plan.name), deadline): index
                for index, plan in enumerate(plans)
            }
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    instance = future.result()
                    instances[index] = instance
                    if fail_fast and instance.status == FAILURE and not job_handle.cancelled:
                        job_handle.cancel(f"fail-fast: '{instance.name}' failed")

        ordered = [instances[index] for index in range(len(plans))]
        outputs: Dict[str, str] = {}
        for instance in ordered:
            outputs.update(instance.outputs)
        return JobResult(
            job_id=job_id,
            result=combine_job_result(instance.status for instance in ordered),
            instances=ordered,
            outputs=outputs,
        )

    def _max_parallel(self, value: Any, contexts: Dict[str, Any]) -> Optional[int]:
        if value is None:
            return None
        resolved = interpolate(value, contexts) if isinstance(value, str) else value
        try:
            parsed = int(resolved)
        except (TypeError, ValueError) as exc:
            raise ExpressionError(f"max-parallel must be an integer (got {resolved!r})") from exc
        return parsed if parsed > 0 else None

    def _plan(
        self,
        job_id: str,
        job: JobSpec,
        contexts: Dict[str, Any],
        combination: Dict[str, Any],
        index: int,
        total: int,
        fail_fast: bool,
        max_parallel: Optional[int],
    ) -> InstancePlan:
        instance_contexts = {
            **contexts,
            "matrix": combination,
            "strategy": {
                "fail-fast": fail_fast,
                "job-index": index,
                "job-total": total,
                "max-parallel": max_parallel or total,
            },
        }
        runs_on = interpolate(job.runs_on, instance_contexts)
        labels = [to_display_string(label) for label in (runs_on if isinstance(runs_on, list) else [runs_on])]
        runs_on_label = ",".join(labels)
        instance_contexts["runner"] = {"name": runs_on_label, "labels": labels}

        name = display_name(job_id, job, instance_contexts, combination)
        return InstancePlan(
            job_id=job_id,
            job=job,
            name=name,
            matrix=combination,
            contexts=instance_contexts,
            workflow_env=dict(contexts.get("env", {})),
            runs_on=runs_on_label,
            labels=labels,
        )

    def _run_instance(self, plan: InstancePlan, handle: RunHandle, deadline: Optional[float]) -> JobInstanceResult:
        if deadline is not None and time.monotonic() >= deadline:
            return JobInstanceResult(
                job_id=plan.job_id,
                name=plan.name,
                matrix=plan.matrix,
                runs_on=plan.runs_on,
                status=FAILURE,
                timed_out=True,
                error="Job timeout elapsed before the instance started.",
            )
        return self.executor.execute(plan, handle, deadline)
