"""Trigger (``on:``) parsing and event matching."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

REF_EVENTS = ("push", "pull_request", "pull_request_target")


class TriggerError(ValueError):
    """Raised when an event cannot start a run of the workflow."""


@dataclass(frozen=True)
class DispatchInput:
    description: Optional[str] = None
    default: Optional[str] = None
    required: bool = False


@dataclass(frozen=True)
class EventFilter:
    branches: tuple[str, ...] = ()
    branches_ignore: tuple[str, ...] = ()
    types: tuple[str, ...] = ()
    inputs: Dict[str, DispatchInput] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerEvent:
    """An incoming event, e.g. a manual dispatch or a pull request."""

    name: str
    ref_name: str = "main"
    base_ref: Optional[str] = None
    head_ref: Optional[str] = None
    sha: str = ""
    actor: str = "local"
    action: Optional[str] = None
    inputs: Dict[str, str] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        if self.name.startswith("pull_request"):
            return f"refs/pull/{self.ref_name}"
        return f"refs/heads/{self.ref_name}"


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


def _parse_filter(name: str, raw: Any) -> EventFilter:
    if raw is None or raw == {}:
        return EventFilter()
    if not isinstance(raw, Mapping):
        raise TriggerError(f"Trigger '{name}' configuration must be a mapping.")
    inputs: Dict[str, DispatchInput] = {}
    for input_name, spec in (raw.get("inputs") or {}).items():
        spec = spec or {}
        default = spec.get("default")
        inputs[input_name] = DispatchInput(
            description=spec.get("description"),
            default=None if default is None else str(default),
            required=bool(spec.get("required", False)),
        )
    return EventFilter(
        branches=_as_tuple(raw.get("branches")),
        branches_ignore=_as_tuple(raw.get("branches-ignore")),
        types=_as_tuple(raw.get("types")),
        inputs=inputs,
    )


def parse_triggers(raw: Any) -> Dict[str, EventFilter]:
    """Normalize the string, list, and mapping forms of ``on:``."""

    if isinstance(raw, str):
        return {raw: EventFilter()}
    if isinstance(raw, list):
        return {str(name): EventFilter() for name in raw}
    if isinstance(raw, Mapping):
        return {str(name): _parse_filter(str(name), value) for name, value in raw.items()}
    raise TriggerError(f"Unsupported trigger declaration: {raw!r}")


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    # ``*`` stays within a path segment, ``**`` crosses them.
    parts: List[str] = []
    index = 0
    while index < len(pattern):
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
        elif pattern[index] == "*":
            parts.append("[^/]*")
            index += 1
        elif pattern[index] == "?":
            parts.append(".")
            index += 1
        else:
            parts.append(pattern[index] if pattern[index] in "[]" else re.escape(pattern[index]))
            index += 1
    return re.compile("^" + "".join(parts) + "$")


def branch_matches(branch: str, patterns: tuple[str, ...]) -> bool:
    matched = False
    for pattern in patterns:
        negate = pattern.startswith("!")
        body = pattern[1:] if negate else pattern
        if _glob_to_regex(body).match(branch):
            matched = not negate
    return matched


def matches(triggers: Mapping[str, EventFilter], event: TriggerEvent) -> bool:
    event_filter = triggers.get(event.name)
    if event_filter is None:
        logger.debug("Event '%s' is not declared; declared: %s", event.name, list(triggers))
        return False
    if event_filter.types and event.action and event.action not in event_filter.types:
        return False
    if event.name in REF_EVENTS:
        branch = event.base_ref if event.name.startswith("pull_request") and event.base_ref else event.ref_name
        if event_filter.branches and not branch_matches(branch, event_filter.branches):
            return False
        if event_filter.branches_ignore and branch_matches(branch, event_filter.branches_ignore):
            return False
    return True


def resolve_inputs(triggers: Mapping[str, EventFilter], event: TriggerEvent) -> Dict[str, str]:
    """Apply ``workflow_dispatch`` input defaults and check required inputs."""

    event_filter = triggers.get(event.name)
    if event_filter is None or event.name != "workflow_dispatch":
        return dict(event.inputs)
    resolved: Dict[str, str] = {}
    for name, spec in event_filter.inputs.items():
        if name in event.inputs:
            resolved[name] = str(event.inputs[name])
        elif spec.default is not None:
            resolved[name] = spec.default
        elif spec.required:
            raise TriggerError(f"Missing required workflow_dispatch input '{name}'.")
    for name, value in event.inputs.items():
        resolved.setdefault(name, str(value))
    return resolved
