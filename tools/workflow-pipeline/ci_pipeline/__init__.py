"""Pipeline registry and CLI for the holochain CI workflows."""

from .pipelines import (
    PipelineContext,
    PipelineError,
    PipelineInputSpec,
    PipelineResult,
    PipelineSpec,
    get_pipeline,
    list_pipelines,
    register_pipeline,
)
from .workflows import get_workflow, list_workflows

__all__ = [
    "PipelineContext",
    "PipelineError",
    "PipelineInputSpec",
    "PipelineResult",
    "PipelineSpec",
    "get_pipeline",
    "list_pipelines",
    "register_pipeline",
    "get_workflow",
    "list_workflows",
]
