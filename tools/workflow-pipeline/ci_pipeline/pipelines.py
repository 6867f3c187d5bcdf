from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ci_workflow.aggregate import AggregationError, aggregate_results, gate_from_env, parse_results, render_verdict
from ci_workflow.config import ConfigError, RunnerConfig, load_config
from ci_workflow.dispatch import WorkflowTriggerError, fetch_run_results
from ci_workflow.expressions import ExpressionError
from ci_workflow.loader import WorkflowLoadError, discover_workflows, load_workflow, resolve_workflow_path
from ci_workflow.matrix import MatrixError
from ci_workflow.runner import WorkflowRunner
from ci_workflow.triggers import TriggerError, TriggerEvent
from ci_workflow.validation import validate_workflow

from .workflows import DEFAULT_REPO

logger = logging.getLogger(__name__)

INTEGRATION_WORKFLOW = "holonix-integration.yml"
BUILD_WORKFLOW = "build.yml"
GATE_JOB = "ci-jobs-succeed"


class PipelineError(RuntimeError):
    """Raised when a pipeline execution fails validation or runtime checks."""


@dataclass(frozen=True)
class PipelineInputSpec:
    description: Optional[str] = None
    default: Optional[object] = None
    required: bool = False
    multiple: bool = False

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "description": self.description,
            "required": self.required,
            "multiple": self.multiple,
        }
        if self.default is not None:
            payload["default"] = self.default
        return payload


@dataclass(frozen=True)
class PipelineSpec:
    slug: str
    description: str
    runner: Callable[["PipelineContext"], "PipelineResult"]
    inputs: Dict[str, PipelineInputSpec] = field(default_factory=dict)
    receipts: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "slug": self.slug,
            "description": self.description,
            "inputs": {name: spec.to_dict() for name, spec in self.inputs.items()},
            "receipts": list(self.receipts),
        }


@dataclass
class PipelineContext:
    workspace_root: Path
    inputs: Dict[str, object]
    raw_inputs: Dict[str, List[str]]
    config: Optional[RunnerConfig] = None

    def get(self, name: str, default: Optional[object] = None) -> Optional[object]:
        return self.inputs.get(name, default)

    def get_list(self, name: str) -> List[str]:
        value = self.inputs.get(name)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        return [str(value)]

    def runner_config(self, **overrides: object) -> RunnerConfig:
        if self.config is not None:
            return self.config.model_copy(update={key: value for key, value in overrides.items() if value is not None})
        try:
            return load_config(self.workspace_root, overrides=overrides)
        except ConfigError as exc:
            raise PipelineError(str(exc)) from exc


@dataclass
class PipelineResult:
    status: str = "ok"
    receipts: Dict[str, object] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)
    data: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "receipts": self.receipts,
            "logs": self.logs,
            "next_steps": self.next_steps,
            "data": self.data,
        }


_PIPELINES: Dict[str, PipelineSpec] = {}


def register_pipeline(spec: PipelineSpec) -> None:
    if spec.slug in _PIPELINES:
        raise ValueError(f"Pipeline '{spec.slug}' already registered.")
    _PIPELINES[spec.slug] = spec


def get_pipeline(slug: str) -> PipelineSpec:
    try:
        return _PIPELINES[slug]
    except KeyError as exc:
        available = ", ".join(sorted(_PIPELINES))
        raise KeyError(f"Unknown pipeline slug '{slug}'. Available pipelines: {available}.") from exc


def list_pipelines() -> Iterable[PipelineSpec]:
    return _PIPELINES.values()


def _to_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _parse_key_value_pairs(values: List[str]) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for entry in values:
        if "=" not in entry:
            raise PipelineError(f"Expected key=value format (got '{entry}')")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise PipelineError("Key cannot be empty in key=value input.")
        pairs[key] = raw_value.strip()
    return pairs


def _run_workflow_file(context: PipelineContext, workflow_file: str, default_event: str) -> PipelineResult:
    config = context.runner_config(dry_run=_to_bool(context.get("dry-run")) or None)
    event = TriggerEvent(
        name=str(context.get("event") or default_event),
        ref_name=str(context.get("ref-name") or "main"),
        base_ref=str(context.get("base-ref")) if context.get("base-ref") else None,
        inputs=_parse_key_value_pairs(context.get_list("input")),
    )
    logger.info("Running %s for %s on %s", workflow_file, event.name, event.ref_name)
    try:
        workflow = load_workflow(resolve_workflow_path(workflow_file, config.workflows_path))
        run = WorkflowRunner(config).run(workflow, event, jobs=context.get_list("job") or None)
    except (WorkflowLoadError, TriggerError, ExpressionError, MatrixError) as exc:
        raise PipelineError(str(exc)) from exc

    selected = context.get_list("job")
    verdict = aggregate_results({job_id: job.result for job_id, job in run.jobs.items() if not selected or job_id in selected})
    logs = [
        f"{instance.name}: {instance.status}" + (" (timed out)" if instance.timed_out else "")
        for job in run.jobs.values()
        for instance in job.instances
    ]
    next_steps: List[str] = []
    failing = [name for name, status in run.instance_results().items() if status != "success"]
    if failing:
        next_steps.append("Inspect failing instances: " + ", ".join(failing))

    return PipelineResult(
        status="ok" if run.conclusion == "success" else "error",
        receipts={"run": run.run_id, "conclusion": run.conclusion, "gate": render_verdict(verdict)},
        logs=logs,
        next_steps=next_steps,
        data={"run": run.to_dict(), "verdict": verdict.to_dict()},
    )


def _pipeline_integration_test(context: PipelineContext) -> PipelineResult:
    return _run_workflow_file(context, INTEGRATION_WORKFLOW, "pull_request")


def _pipeline_build(context: PipelineContext) -> PipelineResult:
    return _run_workflow_file(context, BUILD_WORKFLOW, "workflow_dispatch")


def _pipeline_validate(context: PipelineContext) -> PipelineResult:
    config = context.runner_config()
    paths = discover_workflows(config.workflows_path)
    if not paths:
        raise PipelineError(f"No workflow files found in {config.workflows_path}")

    issues: List[Dict[str, object]] = []
    checked: List[str] = []
    for path in paths:
        try:
            workflow = load_workflow(path)
        except WorkflowLoadError as exc:
            issues.append({"workflow": path.name, "job": None, "message": str(exc)})
            continue
        checked.append(path.name)
        issues.extend(issue.to_dict() for issue in validate_workflow(workflow, config.known_runners))

    next_steps: List[str] = []
    if issues:
        next_steps.append("Fix workflow validation issues before pushing.")
    return PipelineResult(
        status="error" if issues else "ok",
        receipts={"workflows": checked},
        logs=[f"{issue['workflow']}: {issue['message']}" for issue in issues],
        next_steps=next_steps,
        data={"issues": issues, "known_runners": list(config.known_runners)},
    )


def _pipeline_gate(context: PipelineContext) -> PipelineResult:
    results = context.get("results")
    results_env = context.get("results-env")
    run_id = context.get("run-id")
    try:
        if results is not None:
            verdict = aggregate_results(parse_results(str(results)))
            source = "inline"
        elif run_id is not None:
            config = context.runner_config()
            remote = fetch_run_results(
                str(context.get("repo") or config.repository or DEFAULT_REPO),
                int(str(run_id)),
                token_env=config.token_env,
                github_api=config.github_api,
            )
            verdict = aggregate_results({name: status for name, status in remote.jobs.items() if name != GATE_JOB})
            source = f"run:{remote.run_id}"
        else:
            var = str(results_env or "RESULTS")
            verdict = gate_from_env(var)
            source = f"env:{var}"
    except (AggregationError, WorkflowTriggerError, ValueError) as exc:
        raise PipelineError(str(exc)) from exc

    return PipelineResult(
        status="ok" if verdict.passed else "error",
        receipts={"result": render_verdict(verdict), "source": source},
        logs=[f"unique statuses: {verdict.statuses}"],
        data={"verdict": verdict.to_dict()},
    )


def _run_inputs() -> Dict[str, PipelineInputSpec]:
    return {
        "event": PipelineInputSpec(description="Triggering event name"),
        "ref-name": PipelineInputSpec(description="Branch the event refers to", default="main"),
        "base-ref": PipelineInputSpec(description="Pull request base branch"),
        "input": PipelineInputSpec(description="workflow_dispatch inputs key=value", multiple=True),
        "job": PipelineInputSpec(description="Restrict the run to these job ids", multiple=True),
        "dry-run": PipelineInputSpec(description="Resolve steps without executing them (true/false)", default="false"),
    }


def _register_builtin_pipelines() -> None:
    register_pipeline(
        PipelineSpec(
            slug="integration-test",
            description="Run the holonix integration test workflow and its result gate.",
            runner=_pipeline_integration_test,
            inputs=_run_inputs(),
            receipts=["run", "conclusion", "gate"],
        )
    )
    register_pipeline(
        PipelineSpec(
            slug="build",
            description="Run the holochain build matrix (nix command x platform).",
            runner=_pipeline_build,
            inputs=_run_inputs(),
            receipts=["run", "conclusion", "gate"],
        )
    )
    register_pipeline(
        PipelineSpec(
            slug="validate",
            description="Check workflow files for unknown runners, duplicate platforms and bad expressions.",
            runner=_pipeline_validate,
            receipts=["workflows"],
        )
    )
    register_pipeline(
        PipelineSpec(
            slug="gate",
            description="Aggregate job results into a single pass/fail verdict.",
            runner=_pipeline_gate,
            inputs={
                "results": PipelineInputSpec(description="JSON array or object of job results"),
                "results-env": PipelineInputSpec(description="Environment variable holding the results JSON", default="RESULTS"),
                "run-id": PipelineInputSpec(description="Hosted run id to read results from"),
                "repo": PipelineInputSpec(description="Repository of the hosted run"),
            },
            receipts=["result", "source"],
        )
    )


_register_builtin_pipelines()


__all__ = [
    "PipelineContext",
    "PipelineError",
    "PipelineInputSpec",
    "PipelineResult",
    "PipelineSpec",
    "get_pipeline",
    "list_pipelines",
    "register_pipeline",
]
