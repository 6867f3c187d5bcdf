from __future__ import annotations

from typing import Dict, Iterable

from ci_workflow.dispatch import WorkflowSpec

DEFAULT_REPO = "holochain/holochain"

CI_GH_TOKEN = "GH_TOKEN_CI"

WORKFLOWS: Dict[str, WorkflowSpec] = {
    "holonix-integration": WorkflowSpec(
        slug="holonix-integration",
        repo=DEFAULT_REPO,
        workflow="holonix-integration.yml",
        token_env=CI_GH_TOKEN,
        description="Run the holonix integration test matrix and its ci-jobs-succeed gate.",
    ),
    "build-holochain": WorkflowSpec(
        slug="build-holochain",
        repo=DEFAULT_REPO,
        workflow="build.yml",
        token_env=CI_GH_TOKEN,
        description="Build holochain for every nix command and platform combination.",
    ),
}


def get_workflow(slug: str) -> WorkflowSpec:
    try:
        return WORKFLOWS[slug].model_copy()
    except KeyError as exc:
        available = ", ".join(sorted(WORKFLOWS))
        raise KeyError(f"Unknown workflow slug '{slug}'. Available workflows: {available}.") from exc


def list_workflows() -> Iterable[WorkflowSpec]:
    for spec in WORKFLOWS.values():
        yield spec.model_copy()
