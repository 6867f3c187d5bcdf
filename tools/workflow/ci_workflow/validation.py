"""Static checks over loaded workflow definitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .expressions import ExpressionError, interpolate, parse, split_template, to_display_string
from .matrix import MatrixError, expand_matrix, instance_name
from .schemas.workflow import JobSpec, WorkflowDefinition

logger = logging.getLogger(__name__)

PLATFORM_IDENTIFIERS = ("arch", "system")


@dataclass(slots=True)
class ValidationIssue:
    workflow: str
    job: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, object]:
        return {"workflow": self.workflow, "job": self.job, "message": self.message}


def _expression_errors(value: Any, bare: bool = False) -> List[str]:
    errors: List[str] = []
    if isinstance(value, str):
        try:
            segments = split_template(value)
            if bare and not any(is_expr for is_expr, _ in segments) and value.strip():
                parse(value.strip())
            for is_expr, text in segments:
                if is_expr:
                    parse(text)
        except ExpressionError as exc:
            errors.append(str(exc))
    elif isinstance(value, Mapping):
        for item in value.values():
            errors.extend(_expression_errors(item))
    elif isinstance(value, list):
        for item in value:
            errors.extend(_expression_errors(item))
    return errors


def _platform_axes(matrix: Mapping[str, Any]) -> Dict[str, List[Mapping[str, Any]]]:
    axes: Dict[str, List[Mapping[str, Any]]] = {}
    for key, values in matrix.items():
        if key in ("include", "exclude") or not isinstance(values, list):
            continue
        entries = [value for value in values if isinstance(value, Mapping)]
        if entries and all(any(ident in entry for ident in PLATFORM_IDENTIFIERS) for entry in entries):
            axes[key] = entries
    return axes


def platform_entries(job: JobSpec) -> Dict[str, List[Mapping[str, Any]]]:
    """Platform axes of a job matrix: list axes whose entries carry ``arch`` or ``system``."""

    if job.strategy is None or not isinstance(job.strategy.matrix, Mapping):
        return {}
    return _platform_axes(job.strategy.matrix)


def _check_platforms(workflow: str, job_id: str, job: JobSpec, known: Sequence[str]) -> Iterable[ValidationIssue]:
    for axis, entries in platform_entries(job).items():
        seen: Dict[str, int] = {}
        for entry in entries:
            identifier = next(str(entry[ident]) for ident in PLATFORM_IDENTIFIERS if ident in entry)
            seen[identifier] = seen.get(identifier, 0) + 1
            runs_on = entry.get("runs-on")
            if runs_on is None:
                yield ValidationIssue(workflow, job_id, f"Platform '{identifier}' in axis '{axis}' does not name an execution environment.")
            elif str(runs_on) not in known:
                yield ValidationIssue(workflow, job_id, f"Platform '{identifier}' in axis '{axis}' uses unknown execution environment '{runs_on}'.")
        for identifier, count in seen.items():
            if count > 1:
                yield ValidationIssue(workflow, job_id, f"Platform identifier '{identifier}' appears {count} times in axis '{axis}'.")


def _check_runs_on(workflow: str, job_id: str, job: JobSpec, known: Sequence[str]) -> Iterable[ValidationIssue]:
    matrix = job.strategy.matrix if job.strategy else None
    if isinstance(matrix, str):
        return
    try:
        combinations = expand_matrix(matrix)
    except (MatrixError, ExpressionError) as exc:
        yield ValidationIssue(workflow, job_id, f"Matrix cannot be expanded: {exc}")
        return
    for combination in combinations:
        try:
            runs_on = interpolate(job.runs_on, {"matrix": combination, "inputs": {}, "vars": {}, "github": {}})
        except ExpressionError:
            logger.debug("Skipping dynamic runs-on for job %s", job_id)
            return
        labels = runs_on if isinstance(runs_on, list) else [runs_on]
        for label in labels:
            if to_display_string(label) not in known:
                name = instance_name(job.name or job_id, combination)
                yield ValidationIssue(workflow, job_id, f"Instance '{name}' runs on unknown execution environment '{to_display_string(label)}'.")


def validate_workflow(workflow: WorkflowDefinition, known_runners: Sequence[str]) -> List[ValidationIssue]:
    label = workflow.source.name if workflow.source else workflow.display_name
    issues: List[ValidationIssue] = []

    for message in _expression_errors(workflow.env):
        issues.append(ValidationIssue(label, None, message))
    if workflow.concurrency is not None:
        for message in _expression_errors([workflow.concurrency.group, workflow.concurrency.cancel_in_progress]):
            issues.append(ValidationIssue(label, None, message))

    for job_id, job in workflow.jobs.items():
        raw = job.model_dump(by_alias=True, exclude={"if_"})
        for message in _expression_errors(raw):
            issues.append(ValidationIssue(label, job_id, message))
        for message in _expression_errors(job.if_, bare=True):
            issues.append(ValidationIssue(label, job_id, message))
        for step in job.steps:
            for message in _expression_errors(step.if_, bare=True):
                issues.append(ValidationIssue(label, job_id, f"Step '{step.display_name}': {message}"))
        issues.extend(_check_platforms(label, job_id, job, known_runners))
        issues.extend(_check_runs_on(label, job_id, job, known_runners))

    logger.debug("Validated %s: %d issue(s)", label, len(issues))
    return issues
