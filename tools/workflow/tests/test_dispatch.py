from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

import ci_workflow.secrets as secrets
from ci_workflow.dispatch import (
    WorkflowInputSpec,
    WorkflowSpec,
    WorkflowTriggerError,
    fetch_run_results,
    resolve_dispatch_inputs,
    trigger_workflow,
)


class _FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str = "", headers: Optional[Dict[str, str]] = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.reason = "reason"
        self.headers = headers or {}

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeSession:
    def __init__(self, responses: Optional[Dict[str, _FakeResponse]] = None, post_response: Optional[_FakeResponse] = None) -> None:
        self.responses = responses or {}
        self.post_response = post_response or _FakeResponse(204, headers={"x-github-request-id": "abc"})
        self.posts: List[Dict[str, Any]] = []
        self.gets: List[str] = []

    def post(self, url: str, *, headers: Dict[str, str], json: Dict[str, Any], timeout: int) -> _FakeResponse:
        self.posts.append({"url": url, "headers": headers, "json": json})
        return self.post_response

    def get(self, url: str, *, headers: Dict[str, str], timeout: int) -> _FakeResponse:
        self.gets.append(url)
        return self.responses[url]


@pytest.fixture()
def token(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setattr(secrets, "_resolvers", [])
    secrets.register_resolver(secrets.EnvResolver(), priority=0, name="env", source="env")
    monkeypatch.setenv("GH_TOKEN_CI", "gh-token")
    return "gh-token"


def _spec(**overrides: Any) -> WorkflowSpec:
    values: Dict[str, Any] = {"slug": "build-holochain", "repo": "holochain/holochain", "workflow": "build.yml"}
    values.update(overrides)
    return WorkflowSpec(**values)


def test_trigger_posts_dispatch(token: str) -> None:
    session = _FakeSession()

    result = trigger_workflow(_spec(), inputs={"nix": "2.12"}, session=session)

    assert result.status == "dispatched"
    assert result.response_status == 204
    [post] = session.posts
    assert post["url"] == "https://api.github.com/repos/holochain/holochain/actions/workflows/build.yml/dispatches"
    assert post["json"] == {"ref": "main", "inputs": {"nix": "2.12"}}
    assert post["headers"]["Authorization"] == "Bearer gh-token"


def test_dry_run_does_not_need_a_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(secrets, "_resolvers", [])
    session = _FakeSession()

    result = trigger_workflow(_spec(), ref="develop", dry_run=True, session=session)

    assert result.status == "skipped"
    assert result.dry_run is True
    assert result.ref == "develop"
    assert session.posts == []


def test_dry_run_unsupported(token: str) -> None:
    with pytest.raises(WorkflowTriggerError, match="dry-run"):
        trigger_workflow(_spec(dry_run_supported=False), dry_run=True)


def test_missing_token_lists_resolvers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(secrets, "_resolvers", [])
    secrets.register_resolver(secrets.EnvResolver(), priority=0, name="env", source="env")
    monkeypatch.delenv("GH_TOKEN_CI", raising=False)

    with pytest.raises(WorkflowTriggerError) as excinfo:
        trigger_workflow(_spec(), session=_FakeSession())

    message = str(excinfo.value)
    assert "GH_TOKEN_CI" in message
    assert "env (missing)" in message
    assert "ci-pipeline secrets list" in message


def test_non_success_status_raises(token: str) -> None:
    session = _FakeSession(post_response=_FakeResponse(422, text="Unexpected inputs provided"))
    with pytest.raises(WorkflowTriggerError, match="422: Unexpected inputs provided"):
        trigger_workflow(_spec(), session=session)


def test_required_inputs_and_defaults() -> None:
    spec = _spec(
        inputs={
            "channel": WorkflowInputSpec(default="stable"),
            "target": WorkflowInputSpec(required=True),
        }
    )
    assert resolve_dispatch_inputs(spec, {"target": "x86_64", "extra": "1"}) == {
        "channel": "stable",
        "target": "x86_64",
        "extra": "1",
    }
    with pytest.raises(WorkflowTriggerError, match="target"):
        resolve_dispatch_inputs(spec, {})


def test_fetch_run_results_maps_jobs(token: str) -> None:
    base = "https://api.github.com/repos/holochain/holochain/actions/runs/42"
    session = _FakeSession(
        {
            base: _FakeResponse(200, {"status": "completed", "conclusion": "failure"}),
            f"{base}/jobs?per_page=100": _FakeResponse(
                200,
                {
                    "jobs": [
                        {"name": "Test comand nix build .#holochain (x86_64-linux)", "status": "completed", "conclusion": "success"},
                        {"name": "Test comand nix build .#holochain (aarch64-darwin)", "status": "completed", "conclusion": "failure"},
                        {"name": "ci-jobs-succeed", "status": "in_progress", "conclusion": None},
                    ]
                },
            ),
        }
    )

    results = fetch_run_results("holochain/holochain", 42, session=session)

    assert results.conclusion == "failure"
    assert results.jobs == {
        "Test comand nix build .#holochain (x86_64-linux)": "success",
        "Test comand nix build .#holochain (aarch64-darwin)": "failure",
        "ci-jobs-succeed": "in_progress",
    }


def test_fetch_run_results_rejects_errors(token: str) -> None:
    base = "https://api.github.com/repos/holochain/holochain/actions/runs/7"
    session = _FakeSession({base: _FakeResponse(404, text="Not Found")})
    with pytest.raises(WorkflowTriggerError, match="404"):
        fetch_run_results("holochain/holochain", 7, session=session)
