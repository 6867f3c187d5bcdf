"""Registered hosted workflows that can be dispatched by slug."""

from .registry import CI_GH_TOKEN, DEFAULT_REPO, WORKFLOWS, get_workflow, list_workflows

__all__ = ["CI_GH_TOKEN", "DEFAULT_REPO", "WORKFLOWS", "get_workflow", "list_workflows"]
