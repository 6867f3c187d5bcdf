"""Handlers for ``uses:`` steps.

Third-party actions are opaque collaborators. Each handler reproduces the
effect a job relies on (a checkout, a toolchain on PATH, a configured binary
cache) with local commands.
"""

from __future__ import annotations

import logging
import shlex
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .process import CommandOutcome

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Sequence[str]], CommandOutcome]


class ActionError(RuntimeError):
    """Raised when an action is unknown or cannot complete."""


@dataclass(slots=True)
class ActionContext:
    workspace: Path
    inputs: Dict[str, object]
    env: Dict[str, str]
    run: CommandRunner
    allow_install: bool = False
    which: Callable[[str], Optional[str]] = shutil.which

    def input(self, name: str, default: str = "") -> str:
        value = self.inputs.get(name)
        if value is None:
            return default
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def flag(self, name: str, default: bool = False) -> bool:
        value = self.inputs.get(name)
        if value is None or value == "":
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class ActionResult:
    logs: List[str] = field(default_factory=list)
    exported_env: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)


class ActionHandler(ABC):
    name: str

    @abstractmethod
    def execute(self, context: ActionContext) -> ActionResult:
        ...


def _require_ok(outcome: CommandOutcome, description: str) -> None:
    if outcome.cancelled:
        raise ActionError(f"{description} was cancelled.")
    if outcome.timed_out:
        raise ActionError(f"{description} timed out.")
    if outcome.returncode != 0:
        tail = outcome.lines[-1] if outcome.lines else ""
        raise ActionError(f"{description} failed with exit code {outcome.returncode}. {tail}".strip())


class CheckoutAction(ActionHandler):
    name = "actions/checkout"

    def execute(self, context: ActionContext) -> ActionResult:
        result = ActionResult()
        if not (context.workspace / ".git").exists():
            raise ActionError(f"Workspace {context.workspace} is not a git checkout.")
        result.logs.append(f"Using existing checkout at {context.workspace}")
        ref = context.input("ref")
        if ref:
            _require_ok(context.run(["git", "checkout", "--quiet", ref]), f"git checkout {ref}")
            result.logs.append(f"Checked out {ref}")
        if context.flag("lfs"):
            _require_ok(context.run(["git", "lfs", "pull"]), "git lfs pull")
            result.logs.append("Fetched LFS objects")
        return result


class InstallNixAction(ActionHandler):
    name = "cachix/install-nix-action"

    def execute(self, context: ActionContext) -> ActionResult:
        result = ActionResult()
        if context.which("nix") is None:
            install_url = context.input("install_url")
            if not context.allow_install:
                raise ActionError("nix is not installed and toolchain installs are disabled (allow_install=false).")
            if not install_url:
                raise ActionError("nix is not installed and no install_url was provided.")
            script = f"curl --fail --silent --show-error -L {shlex.quote(install_url)} | sh -s -- --no-daemon"
            _require_ok(context.run(["bash", "-c", script]), "nix installer")
            result.logs.append(f"Installed nix from {install_url}")
        else:
            outcome = context.run(["nix", "--version"])
            _require_ok(outcome, "nix --version")
            result.logs.append(outcome.lines[0] if outcome.lines else "nix available")

        extra_config = context.input("extra_nix_config").strip()
        if extra_config:
            existing = context.env.get("NIX_CONFIG", "")
            result.exported_env["NIX_CONFIG"] = f"{existing}\n{extra_config}".strip()
            result.logs.append("Exported extra_nix_config as NIX_CONFIG")
        nix_path = context.input("nix_path")
        if nix_path:
            result.exported_env["NIX_PATH"] = nix_path
        return result


class CachixAction(ActionHandler):
    name = "cachix/cachix-action"

    def execute(self, context: ActionContext) -> ActionResult:
        result = ActionResult()
        cache = context.input("name")
        if not cache:
            raise ActionError("cachix-action requires a cache 'name'.")
        if context.which("cachix") is None:
            raise ActionError("cachix executable not found on PATH.")

        auth_token = context.input("authToken")
        signing_key = context.input("signingKey")
        if auth_token:
            result.exported_env["CACHIX_AUTH_TOKEN"] = auth_token
        if signing_key:
            result.exported_env["CACHIX_SIGNING_KEY"] = signing_key
        if not auth_token and not signing_key:
            logger.warning("No cachix credentials for cache '%s'; continuing read-only.", cache)
            result.logs.append("No credentials provided; cache is read-only.")

        _require_ok(context.run(["cachix", "use", cache]), f"cachix use {cache}")
        result.logs.append(f"Configured binary cache '{cache}'")
        return result


_HANDLERS: Dict[str, ActionHandler] = {}


def register_action(handler: ActionHandler, *, replace: bool = False) -> None:
    key = handler.name.lower()
    if key in _HANDLERS and not replace:
        raise ValueError(f"Action '{handler.name}' already registered.")
    _HANDLERS[key] = handler


def action_name(uses: str) -> str:
    return uses.split("@", 1)[0].strip().lower()


def get_action(uses: str) -> ActionHandler:
    if uses.startswith(("./", "docker://")):
        raise ActionError(f"Unsupported action reference '{uses}'.")
    try:
        return _HANDLERS[action_name(uses)]
    except KeyError as exc:
        available = ", ".join(sorted(_HANDLERS)) or "none"
        raise ActionError(f"Unknown action '{uses}'. Available actions: {available}.") from exc


def list_actions() -> Mapping[str, ActionHandler]:
    return dict(_HANDLERS)


for _handler in (CheckoutAction(), InstallNixAction(), CachixAction()):
    register_action(_handler)
