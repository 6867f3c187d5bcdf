"""Schema definitions for workflow files."""

from .workflow import ConcurrencySpec, JobSpec, StepSpec, StrategySpec, WorkflowDefinition

__all__ = ["ConcurrencySpec", "JobSpec", "StepSpec", "StrategySpec", "WorkflowDefinition"]
