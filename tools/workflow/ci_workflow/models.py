"""Result models produced by a workflow run."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"
CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(slots=True)
class StepResult:
    name: str
    outcome: str
    conclusion: str
    command: Optional[str] = None
    returncode: Optional[int] = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "name": self.name,
            "outcome": self.outcome,
            "conclusion": self.conclusion,
            "logs": self.logs,
        }
        if self.command is not None:
            payload["command"] = self.command
        if self.returncode is not None:
            payload["returncode"] = self.returncode
        if self.error:
            payload["error"] = self.error
        if self.outputs:
            payload["outputs"] = self.outputs
        return payload


@dataclass(slots=True)
class JobInstanceResult:
    job_id: str
    name: str
    matrix: Dict[str, Any]
    runs_on: Optional[str]
    status: str
    steps: List[StepResult] = field(default_factory=list)
    timed_out: bool = False
    error: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "matrix": self.matrix,
            "runs_on": self.runs_on,
            "status": self.status,
            "timed_out": self.timed_out,
            "error": self.error,
            "outputs": self.outputs,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(slots=True)
class JobResult:
    job_id: str
    result: str
    instances: List[JobInstanceResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "result": self.result,
            "outputs": self.outputs,
            "instances": [instance.to_dict() for instance in self.instances],
        }


@dataclass(slots=True)
class RunResult:
    run_id: int
    workflow: str
    event: str
    ref_name: str
    concurrency_group: Optional[str]
    conclusion: str
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    cancelled: bool = False
    dry_run: bool = False
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    def instance_results(self) -> Dict[str, str]:
        return {
            instance.name: instance.status
            for job in self.jobs.values()
            for instance in job.instances
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "event": self.event,
            "ref_name": self.ref_name,
            "concurrency_group": self.concurrency_group,
            "conclusion": self.conclusion,
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "jobs": {job_id: job.to_dict() for job_id, job in self.jobs.items()},
        }
