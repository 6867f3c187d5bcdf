"""All-or-nothing aggregation of job results into a single gate verdict."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence, Union

from .models import CANCELLED, FAILURE, SKIPPED, SUCCESS

logger = logging.getLogger(__name__)

Results = Union[Mapping[str, str], Sequence[str]]


class AggregationError(ValueError):
    """Raised when a results payload cannot be interpreted."""


@dataclass(slots=True)
class AggregateVerdict:
    passed: bool
    statuses: List[str]
    failing: List[str] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "statuses": self.statuses,
            "failing": self.failing,
            "total": self.total,
        }


def aggregate_results(results: Results) -> AggregateVerdict:
    """Pass only when the set of distinct results is exactly ``{"success"}``.

    An empty input fails: ``unique([]) == ["success"]`` is false.
    """

    if isinstance(results, Mapping):
        items = [(str(name), str(status)) for name, status in results.items()]
    elif isinstance(results, (str, bytes)):
        raise AggregationError("Results must be a list or mapping, not a bare string.")
    else:
        items = [(f"#{index}", str(status)) for index, status in enumerate(results)]

    statuses = sorted({status for _, status in items})
    failing = [name for name, status in items if status != SUCCESS]
    passed = statuses == [SUCCESS]
    if not passed:
        logger.info("Gate failed: statuses=%s failing=%s", statuses, failing)
    return AggregateVerdict(passed=passed, statuses=statuses, failing=failing, total=len(items))


def parse_results(payload: str) -> Results:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise AggregationError(f"Results payload is not valid JSON: {exc}") from exc
    if isinstance(data, Mapping):
        return {str(key): _status_of(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_status_of(value) for value in data]
    raise AggregationError("Results payload must be a JSON array or object.")


def _status_of(value: object) -> str:
    # Accept both bare statuses and needs-style objects ({"result": ...}).
    if isinstance(value, Mapping):
        for key in ("result", "conclusion", "status"):
            if key in value and value[key] is not None:
                return str(value[key])
        raise AggregationError(f"Cannot find a result in {value!r}")
    return str(value)


def gate_from_env(var: str = "RESULTS", environ: Optional[Mapping[str, str]] = None) -> AggregateVerdict:
    env = os.environ if environ is None else environ
    if var not in env:
        raise AggregationError(f"Environment variable '{var}' is not set.")
    return aggregate_results(parse_results(env[var]))


def render_verdict(verdict: AggregateVerdict) -> str:
    return "true" if verdict.passed else "false"


def combine_job_result(instance_statuses: Iterable[str]) -> str:
    """Reduce matrix instance statuses to the job-level result seen by ``needs``."""

    statuses = list(instance_statuses)
    if not statuses:
        return SKIPPED
    if FAILURE in statuses:
        return FAILURE
    if CANCELLED in statuses:
        return CANCELLED
    if all(status == SKIPPED for status in statuses):
        return SKIPPED
    return SUCCESS
