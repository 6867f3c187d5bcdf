"""Local runner for GitHub Actions style workflow definitions."""

__version__ = "0.1.0"
from .aggregate import AggregateVerdict, AggregationError, aggregate_results, combine_job_result, gate_from_env
from .concurrency import ConcurrencyManager, RunHandle
from .config import ConfigError, RunnerConfig, load_config
from .dispatch import (
    WorkflowDispatchResult,
    WorkflowInputSpec,
    WorkflowRunResults,
    WorkflowSpec,
    WorkflowTriggerError,
    fetch_run_results,
    trigger_workflow,
)
from .expressions import ExpressionError
from .loader import WorkflowLoadError, load_workflow
from .matrix import MatrixError, expand_matrix
from .models import JobInstanceResult, JobResult, RunResult, StepResult
from .runner import WorkflowRunner
from .secrets import describe_secret, list_secrets, register_secret, resolve_secret, use_dotenv
from .triggers import TriggerError, TriggerEvent
from .validation import ValidationIssue, validate_workflow

__all__ = [
    "__version__",
    "AggregateVerdict",
    "AggregationError",
    "aggregate_results",
    "combine_job_result",
    "gate_from_env",
    "ConcurrencyManager",
    "RunHandle",
    "ConfigError",
    "RunnerConfig",
    "load_config",
    "WorkflowDispatchResult",
    "WorkflowInputSpec",
    "WorkflowRunResults",
    "WorkflowSpec",
    "WorkflowTriggerError",
    "fetch_run_results",
    "trigger_workflow",
    "ExpressionError",
    "WorkflowLoadError",
    "load_workflow",
    "MatrixError",
    "expand_matrix",
    "JobInstanceResult",
    "JobResult",
    "RunResult",
    "StepResult",
    "WorkflowRunner",
    "describe_secret",
    "list_secrets",
    "register_secret",
    "resolve_secret",
    "use_dotenv",
    "TriggerError",
    "TriggerEvent",
    "ValidationIssue",
    "validate_workflow",
]
