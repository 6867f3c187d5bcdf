"""Load workflow definition files into validated models."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml
from pydantic import ValidationError

from .schemas.workflow import WorkflowDefinition

logger = logging.getLogger(__name__)

WORKFLOW_SUFFIXES = (".yml", ".yaml")


class WorkflowLoadError(RuntimeError):
    """Raised when a workflow file is unreadable, invalid, or inconsistent."""


def _normalize_keys(payload: Mapping[Any, Any]) -> Dict[str, Any]:
    # YAML 1.1 reads a bare ``on`` key as boolean True.
    normalized: Dict[str, Any] = {}
    for key, value in payload.items():
        if key is True:
            key = "on"
        normalized[str(key)] = value
    return normalized


def parse_workflow(text: str, *, source: Path | None = None) -> WorkflowDefinition:
    label = str(source) if source else "<string>"
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise WorkflowLoadError(f"Invalid YAML in {label}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise WorkflowLoadError(f"Workflow {label} must be a mapping at the top level.")

    data = _normalize_keys(payload)
    if "on" not in data:
        raise WorkflowLoadError(f"Workflow {label} does not declare any trigger ('on').")

    try:
        workflow = WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        raise WorkflowLoadError(f"Workflow {label} failed schema validation: {exc}") from exc
    workflow.source = source

    _check_needs(workflow, label)
    logger.debug("Loaded workflow %s with jobs %s", label, list(workflow.jobs))
    return workflow


def load_workflow(path: str | Path) -> WorkflowDefinition:
    workflow_path = Path(path)
    if not workflow_path.exists():
        raise WorkflowLoadError(f"Workflow file not found: {workflow_path}")
    return parse_workflow(workflow_path.read_text(encoding="utf-8"), source=workflow_path)


def discover_workflows(workflows_dir: str | Path) -> List[Path]:
    directory = Path(workflows_dir)
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix in WORKFLOW_SUFFIXES and not path.name.startswith(".")
    )


def resolve_workflow_path(name: str, workflows_dir: str | Path) -> Path:
    """Resolve a workflow given as a path, a file name, or a file stem."""

    candidate = Path(name)
    if candidate.exists():
        return candidate
    directory = Path(workflows_dir)
    for path in discover_workflows(directory):
        if name in (path.name, path.stem):
            return path
    available = ", ".join(path.stem for path in discover_workflows(directory)) or "none"
    raise WorkflowLoadError(f"Unknown workflow '{name}'. Available workflows: {available}.")


def job_order(workflow: WorkflowDefinition) -> List[str]:
    """Return job ids in dependency order, keeping declaration order among peers."""

    ordered: List[str] = []
    remaining = list(workflow.jobs)
    while remaining:
        progressed = False
        for job_id in list(remaining):
            if all(need in ordered for need in workflow.jobs[job_id].needs):
                ordered.append(job_id)
                remaining.remove(job_id)
                progressed = True
        if not progressed:
            raise WorkflowLoadError(f"Job dependency cycle detected among: {', '.join(remaining)}")
    return ordered


def _check_needs(workflow: WorkflowDefinition, label: str) -> None:
    for job_id, job in workflow.jobs.items():
        for need in job.needs:
            if need not in workflow.jobs:
                raise WorkflowLoadError(f"Job '{job_id}' in {label} needs unknown job '{need}'.")
            if need == job_id:
                raise WorkflowLoadError(f"Job '{job_id}' in {label} cannot depend on itself.")
    job_order(workflow)
