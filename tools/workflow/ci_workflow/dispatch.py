"""Dispatch hosted workflow runs and read back their job results."""

from __future__ import annotations

from typing import Dict, Mapping, MutableMapping, Optional

import requests
from pydantic import BaseModel, Field
from requests import Response, Session
from requests.exceptions import RequestException

from .secrets import SecretResolutionInfo, SecretSpec, register_secret, resolve_secret_info

DEFAULT_API = "https://api.github.com"
_TIMEOUT = 20


class WorkflowTriggerError(RuntimeError):
    """Raised when a workflow dispatch or status lookup cannot be completed."""


class WorkflowInputSpec(BaseModel):
    description: Optional[str] = None
    default: Optional[str] = None
    required: bool = False


class WorkflowSpec(BaseModel):
    """A workflow file in a hosted repository that can be dispatched by slug."""

    slug: str
    repo: str
    workflow: str
    ref: str = "main"
    token_env: str = "GH_TOKEN_CI"
    description: Optional[str] = None
    dry_run_supported: bool = True
    inputs: Dict[str, WorkflowInputSpec] = Field(default_factory=dict)

    def model_post_init(self, __context: MutableMapping[str, object]) -> None:  # type: ignore[override]
        register_secret(SecretSpec(name=self.token_env, description=f"Token for workflow '{self.slug}'", workflows=(self.slug,)))
        super().model_post_init(__context)


class WorkflowDispatchResult(BaseModel):
    status: str
    repo: str
    workflow: str
    ref: str
    inputs: Dict[str, str] = Field(default_factory=dict)
    dry_run: bool = False
    response_status: Optional[int] = None
    response_headers: Optional[Dict[str, str]] = None


class WorkflowRunResults(BaseModel):
    """Job results of a hosted run, keyed by job name."""

    repo: str
    run_id: int
    status: Optional[str] = None
    conclusion: Optional[str] = None
    jobs: Dict[str, str] = Field(default_factory=dict)


def _missing_token(token_env: str, label: str, info: SecretResolutionInfo) -> WorkflowTriggerError:
    attempted = []
    for attempt in info.attempts:
        source = attempt.source or attempt.resolver
        path = attempt.details.get("path") if attempt.details else None
        if path:
            source = f"{source}@{path}"
        attempted.append(f"{source} ({'resolved' if attempt.success else 'missing'})")
    summary = ", ".join(attempted) if attempted else "none"
    return WorkflowTriggerError(
        f"GitHub token '{token_env}' not resolved for {label}. "
        f"Checked resolvers: {summary}. Run `ci-pipeline secrets list` for details."
    )


def _token(token_env: str, label: str) -> str:
    info = resolve_secret_info(token_env)
    if not info.value:
        raise _missing_token(token_env, label, info)
    return info.value


def _headers(token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
    }


def resolve_dispatch_inputs(spec: WorkflowSpec, provided: Mapping[str, str]) -> Dict[str, str]:
    resolved: Dict[str, str] = {}
    for name, input_spec in spec.inputs.items():
        if name in provided:
            resolved[name] = str(provided[name])
        elif input_spec.default is not None:
            resolved[name] = input_spec.default
        elif input_spec.required:
            raise WorkflowTriggerError(f"Missing required workflow input '{name}' for workflow '{spec.slug}'.")
    for name, value in provided.items():
        if name not in resolved:
            resolved[name] = str(value)
    return resolved


def trigger_workflow(
    spec: WorkflowSpec,
    *,
    ref: Optional[str] = None,
    inputs: Optional[Mapping[str, str]] = None,
    token_env_override: Optional[str] = None,
    dry_run: bool = False,
    github_api: str = DEFAULT_API,
    session: Optional[Session] = None,
) -> WorkflowDispatchResult:
    effective_ref = ref or spec.ref
    resolved_inputs = resolve_dispatch_inputs(spec, inputs or {})

    if dry_run:
        if not spec.dry_run_supported:
            raise WorkflowTriggerError(f"Workflow '{spec.slug}' does not support dry-run mode.")
        return WorkflowDispatchResult(
            status="skipped",
            repo=spec.repo,
            workflow=spec.workflow,
            ref=effective_ref,
            inputs=resolved_inputs,
            dry_run=True,
        )

    token_env = token_env_override or spec.token_env
    token = _token(token_env, f"workflow '{spec.slug}'")

    request_session = session or requests.Session()
    url = f"{github_api.rstrip('/')}/repos/{spec.repo}/actions/workflows/{spec.workflow}/dispatches"
    payload: Dict[str, object] = {"ref": effective_ref}
    if resolved_inputs:
        payload["inputs"] = resolved_inputs

    try:
        response: Response = request_session.post(url, headers=_headers(token), json=payload, timeout=_TIMEOUT)
    except RequestException as exc:
        raise WorkflowTriggerError(f"Workflow dispatch failed: {exc}") from exc

    if response.status_code not in (201, 204):
        raise WorkflowTriggerError(f"Workflow dispatch returned {response.status_code}: {response.text or response.reason}")

    return WorkflowDispatchResult(
        status="dispatched",
        repo=spec.repo,
        workflow=spec.workflow,
        ref=effective_ref,
        inputs=resolved_inputs,
        dry_run=False,
        response_status=response.status_code,
        response_headers=dict(response.headers),
    )


def _get_json(session: Session, url: str, token: str) -> Mapping[str, object]:
    try:
        response: Response = session.get(url, headers=_headers(token), timeout=_TIMEOUT)
    except RequestException as exc:
        raise WorkflowTriggerError(f"Request to {url} failed: {exc}") from exc
    if response.status_code != 200:
        raise WorkflowTriggerError(f"GET {url} returned {response.status_code}: {response.text or response.reason}")
    try:
        data = response.json()
    except ValueError as exc:
        raise WorkflowTriggerError(f"GET {url} returned invalid JSON: {exc}") from exc
    if not isinstance(data, Mapping):
        raise WorkflowTriggerError(f"GET {url} returned an unexpected payload.")
    return data


def fetch_run_results(
    repo: str,
    run_id: int,
    *,
    token_env: str = "GH_TOKEN_CI",
    github_api: str = DEFAULT_API,
    session: Optional[Session] = None,
) -> WorkflowRunResults:
    """Read job conclusions of a hosted run; unfinished jobs report their status."""

    token = _token(token_env, f"run {run_id}")
    request_session = session or requests.Session()
    base = f"{github_api.rstrip('/')}/repos/{repo}/actions/runs/{run_id}"

    run = _get_json(request_session, base, token)
    jobs_payload = _get_json(request_session, f"{base}/jobs?per_page=100", token)
    jobs: Dict[str, str] = {}
    for job in jobs_payload.get("jobs", []) or []:
        if not isinstance(job, Mapping):
            continue
        name = str(job.get("name", job.get("id", "")))
        jobs[name] = str(job.get("conclusion") or job.get("status") or "unknown")

    return WorkflowRunResults(
        repo=repo,
        run_id=run_id,
        status=run.get("status"),
        conclusion=run.get("conclusion"),
        jobs=jobs,
    )


__all__ = [
    "WorkflowDispatchResult",
    "WorkflowInputSpec",
    "WorkflowRunResults",
    "WorkflowSpec",
    "WorkflowTriggerError",
    "fetch_run_results",
    "resolve_dispatch_inputs",
    "trigger_workflow",
]
