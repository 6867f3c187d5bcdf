"""Runner configuration.

Sources, lowest precedence first: model defaults, ``[tool.ci-pipeline]`` in the
workspace ``pyproject.toml``, ``CI_PIPELINE_*`` entries in the workspace
``.env``, ``CI_PIPELINE_*`` environment variables, explicit overrides.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .secrets import use_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "CI_PIPELINE_"
PYPROJECT_SECTION = "ci-pipeline"
DEFAULT_SHELL = ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"]


class ConfigError(ValueError):
    """Raised when configuration sources contain invalid values."""


class RunnerConfig(BaseModel):
    workspace_root: Path = Field(default_factory=Path.cwd)
    workflows_dir: Path = Path(".github/workflows")
    known_runners: List[str] = Field(default_factory=lambda: ["ubuntu-latest", "macos-latest", "multi-arch"])
    max_workers: int = Field(default=4, ge=1)
    shell: List[str] = Field(default_factory=lambda: list(DEFAULT_SHELL))
    dry_run: bool = False
    allow_install: bool = False
    skip_unknown_actions: bool = False
    github_api: str = "https://api.github.com"
    repository: str = "holochain/holochain"
    token_env: str = "GH_TOKEN_CI"
    dotenv: Optional[Path] = Path(".env")

    model_config = ConfigDict(extra="forbid")

    @field_validator("known_runners", "shell", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    def resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else (self.workspace_root / path).resolve()

    @property
    def workflows_path(self) -> Path:
        return self.resolve(self.workflows_dir)

    @property
    def dotenv_path(self) -> Optional[Path]:
        return self.resolve(self.dotenv) if self.dotenv else None


def _field_key(raw: str) -> str:
    return raw.strip().lower().replace("-", "_")


def _read_pyproject(root: Path) -> Dict[str, Any]:
    path = root / "pyproject.toml"
    if not path.exists():
        return {}
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    section = data.get("tool", {}).get(PYPROJECT_SECTION, {})
    return {_field_key(key): value for key, value in section.items()}


def _prefixed(values: Mapping[str, Optional[str]]) -> Dict[str, Any]:
    fields = set(RunnerConfig.model_fields)
    found: Dict[str, Any] = {}
    for key, value in values.items():
        if not key.startswith(ENV_PREFIX) or value is None:
            continue
        name = _field_key(key[len(ENV_PREFIX) :])
        if name in fields:
            found[name] = value
        else:
            logger.warning("Ignoring unknown configuration variable %s", key)
    return found


def load_config(
    workspace_root: str | Path | None = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunnerConfig:
    root = Path(workspace_root).resolve() if workspace_root else Path.cwd()
    data: Dict[str, Any] = {"workspace_root": root}
    data.update(_read_pyproject(root))

    dotenv_setting = data.get("dotenv", ".env")
    if dotenv_setting:
        dotenv_path = Path(dotenv_setting)
        if not dotenv_path.is_absolute():
            dotenv_path = root / dotenv_path
        if dotenv_path.exists():
            data.update(_prefixed(dotenv_values(dotenv_path)))

    data.update(_prefixed(os.environ if environ is None else environ))
    for key, value in (overrides or {}).items():
        if value is not None:
            data[_field_key(key)] = value
    data["workspace_root"] = root

    try:
        config = RunnerConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid runner configuration: {exc}") from exc
    logger.debug("Loaded runner config: %s", config.model_dump(mode="json"))
    return config


def install_secret_sources(config: RunnerConfig) -> None:
    """Register the workspace ``.env`` as a secret source."""

    path = config.dotenv_path
    if path is not None and path.exists():
        use_dotenv(path)
