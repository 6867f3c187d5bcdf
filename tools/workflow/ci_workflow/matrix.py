"""Strategy matrix expansion."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Mapping, Optional

from .expressions import interpolate

logger = logging.getLogger(__name__)

MAX_COMBINATIONS = 256
_RESERVED_KEYS = ("include", "exclude")


class MatrixError(ValueError):
    """Raised when a matrix cannot be expanded into job instances."""


def _axes(matrix: Mapping[str, Any]) -> Dict[str, List[Any]]:
    axes: Dict[str, List[Any]] = {}
    for key, values in matrix.items():
        if key in _RESERVED_KEYS:
            continue
        if not isinstance(values, list):
            raise MatrixError(f"Matrix axis '{key}' must be a list (got {type(values).__name__}).")
        axes[key] = list(values)
    return axes


def _matches(combination: Mapping[str, Any], pattern: Mapping[str, Any]) -> bool:
    for key, expected in pattern.items():
        if key not in combination:
            return False
        actual = combination[key]
        if isinstance(expected, Mapping) and isinstance(actual, Mapping):
            if not _matches(actual, expected):
                return False
        elif actual != expected:
            return False
    return True


def _entry_list(matrix: Mapping[str, Any], key: str) -> List[Dict[str, Any]]:
    raw = matrix.get(key) or []
    if not isinstance(raw, list) or not all(isinstance(item, Mapping) for item in raw):
        raise MatrixError(f"Matrix '{key}' must be a list of mappings.")
    return [dict(item) for item in raw]


def expand_matrix(matrix: Mapping[str, Any] | str | None, contexts: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
    """Expand a strategy matrix into ordered combinations.

    The first declared axis varies slowest. ``exclude`` entries drop every
    combination they match (partial matches allowed). ``include`` entries
    extend each combination they can join without overwriting an original
    axis value, otherwise they are appended as standalone combinations.
    """

    if matrix is None or matrix == {}:
        return [{}]
    if isinstance(matrix, str):
        matrix = interpolate(matrix, contexts or {})
        if not isinstance(matrix, Mapping):
            raise MatrixError("Matrix expression must evaluate to a mapping.")

    axes = _axes(matrix)
    excludes = _entry_list(matrix, "exclude")
    includes = _entry_list(matrix, "include")

    combinations: List[Dict[str, Any]] = []
    if axes:
        for values in itertools.product(*axes.values()):
            combination = dict(zip(axes.keys(), values))
            if any(_matches(combination, pattern) for pattern in excludes):
                continue
            combinations.append(combination)
        if not combinations and not includes:
            raise MatrixError("Matrix expansion produced no combinations.")

    original_keys = set(axes)
    base_count = len(combinations)
    for entry in includes:
        merged = False
        for combination in combinations[:base_count]:
            if all(combination[key] == value for key, value in entry.items() if key in original_keys):
                combination.update({key: value for key, value in entry.items()})
                merged = True
        if not merged:
            combinations.append(dict(entry))

    if not combinations:
        raise MatrixError("Matrix expansion produced no combinations.")
    if len(combinations) > MAX_COMBINATIONS:
        raise MatrixError(f"Matrix expansion produced {len(combinations)} combinations (limit {MAX_COMBINATIONS}).")
    logger.debug("Expanded matrix into %d combination(s)", len(combinations))
    return combinations


def _flatten(value: Any) -> List[str]:
    if isinstance(value, Mapping):
        flattened: List[str] = []
        for item in value.values():
            flattened.extend(_flatten(item))
        return flattened
    if isinstance(value, list):
        return [", ".join(_flatten(item)) for item in value]
    if isinstance(value, bool):
        return ["true" if value else "false"]
    return [str(value)]


def instance_name(job_name: str, combination: Mapping[str, Any]) -> str:
    """Display name for a job instance, e.g. ``tests (linux-x86_64, ubuntu-latest)``."""

    if not combination:
        return job_name
    return f"{job_name} ({', '.join(_flatten(dict(combination)))})"
