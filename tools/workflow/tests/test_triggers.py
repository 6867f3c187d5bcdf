from __future__ import annotations

import pytest

from ci_workflow.triggers import (
    TriggerError,
    TriggerEvent,
    branch_matches,
    matches,
    parse_triggers,
    resolve_inputs,
)


def test_parse_string_list_and_mapping_forms() -> None:
    assert list(parse_triggers("push")) == ["push"]
    assert list(parse_triggers(["push", "pull_request"])) == ["push", "pull_request"]
    parsed = parse_triggers({"workflow_dispatch": None, "pull_request": {}})
    assert set(parsed) == {"workflow_dispatch", "pull_request"}
    assert parsed["pull_request"].branches == ()


def test_parse_rejects_unsupported_forms() -> None:
    with pytest.raises(TriggerError):
        parse_triggers(42)
    with pytest.raises(TriggerError):
        parse_triggers({"push": "main"})


def test_integration_triggers_accept_dispatch_and_any_pull_request() -> None:
    triggers = parse_triggers({"workflow_dispatch": None, "pull_request": {}})

    assert matches(triggers, TriggerEvent(name="workflow_dispatch"))
    assert matches(triggers, TriggerEvent(name="pull_request", ref_name="42/merge", base_ref="develop"))
    assert not matches(triggers, TriggerEvent(name="push"))


def test_build_triggers_only_manual_dispatch() -> None:
    triggers = parse_triggers({"workflow_dispatch": None})
    assert matches(triggers, TriggerEvent(name="workflow_dispatch"))
    assert not matches(triggers, TriggerEvent(name="pull_request"))


def test_branch_filters_use_pull_request_base() -> None:
    triggers = parse_triggers({"pull_request": {"branches": ["main", "release/**"]}})

    assert matches(triggers, TriggerEvent(name="pull_request", ref_name="7/merge", base_ref="release/0.1/hotfix"))
    assert not matches(triggers, TriggerEvent(name="pull_request", ref_name="7/merge", base_ref="develop"))


def test_branches_ignore() -> None:
    triggers = parse_triggers({"push": {"branches-ignore": ["wip/*"]}})
    assert matches(triggers, TriggerEvent(name="push", ref_name="main"))
    assert not matches(triggers, TriggerEvent(name="push", ref_name="wip/thing"))


def test_branch_glob_semantics() -> None:
    assert branch_matches("feature/a", ("feature/*",))
    assert not branch_matches("feature/a/b", ("feature/*",))
    assert branch_matches("feature/a/b", ("feature/**",))
    assert branch_matches("v1", ("v?",))
    assert not branch_matches("release/x", ("release/*", "!release/x"))


def test_dispatch_inputs_defaults_and_required() -> None:
    triggers = parse_triggers(
        {
            "workflow_dispatch": {
                "inputs": {
                    "channel": {"default": "dev"},
                    "version": {"required": True},
                }
            }
        }
    )

    resolved = resolve_inputs(triggers, TriggerEvent(name="workflow_dispatch", inputs={"version": "0.1.0"}))
    assert resolved == {"channel": "dev", "version": "0.1.0"}

    with pytest.raises(TriggerError):
        resolve_inputs(triggers, TriggerEvent(name="workflow_dispatch"))


def test_event_ref() -> None:
    assert TriggerEvent(name="workflow_dispatch", ref_name="main").ref == "refs/heads/main"
    assert TriggerEvent(name="pull_request", ref_name="5/merge").ref == "refs/pull/5/merge"
