"""Pydantic models describing workflow definition files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StepSpec(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    continue_on_error: Union[bool, str] = Field(default=False, alias="continue-on-error")
    shell: Optional[str] = None
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    timeout_minutes: Optional[Union[float, str]] = Field(default=None, alias="timeout-minutes")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_validator(mode="after")
    def _check_action(self) -> "StepSpec":
        if bool(self.uses) == bool(self.run):
            label = self.name or self.id or "<unnamed>"
            raise ValueError(f"Step '{label}' must define exactly one of 'uses' or 'run'.")
        return self

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return f"Run {self.uses}"
        first_line = (self.run or "").strip().splitlines()
        return f"Run {first_line[0]}" if first_line else "Run"


class ConcurrencySpec(BaseModel):
    group: str
    cancel_in_progress: Union[bool, str] = Field(default=False, alias="cancel-in-progress")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"group": value}
        return value


class StrategySpec(BaseModel):
    matrix: Union[Dict[str, Any], str] = Field(default_factory=dict)
    fail_fast: Union[bool, str] = Field(default=True, alias="fail-fast")
    max_parallel: Optional[Union[int, str]] = Field(default=None, alias="max-parallel")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class JobSpec(BaseModel):
    name: Optional[str] = None
    runs_on: Union[str, List[str]] = Field(alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    strategy: Optional[StrategySpec] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepSpec] = Field(default_factory=list)
    timeout_minutes: Optional[Union[float, str]] = Field(default=None, alias="timeout-minutes")
    concurrency: Optional[ConcurrencySpec] = None
    outputs: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("steps")
    @classmethod
    def _steps_present(cls, value: List[StepSpec]) -> List[StepSpec]:
        if not value:
            raise ValueError("Job must define at least one step.")
        return value


class WorkflowDefinition(BaseModel):
    name: Optional[str] = None
    triggers: Any = Field(alias="on")
    env: Dict[str, Any] = Field(default_factory=dict)
    concurrency: Optional[ConcurrencySpec] = None
    jobs: Dict[str, JobSpec]
    source: Optional[Path] = Field(default=None, exclude=True)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("jobs")
    @classmethod
    def _jobs_present(cls, value: Dict[str, JobSpec]) -> Dict[str, JobSpec]:
        if not value:
            raise ValueError("Workflow must define at least one job.")
        return value

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.source is not None:
            return self.source.name
        return "workflow"
