"""Secret resolution for workflow ``secrets.*`` references."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from dotenv import dotenv_values


@dataclass(frozen=True)
class SecretSpec:
    name: str
    description: str = ""
    workflows: tuple[str, ...] = ()


class SecretResolver(Protocol):
    def resolve(self, spec: SecretSpec) -> Optional[str]:  # pragma: no cover - interface
        ...

    def describe(self) -> dict[str, object]:  # pragma: no cover - optional hook
        return {}


@dataclass(frozen=True)
class SecretAttempt:
    resolver: str
    source: str
    success: bool
    details: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class SecretResolutionInfo:
    name: str
    value: Optional[str]
    resolver: Optional[str]
    source: Optional[str]
    details: dict[str, object]
    attempts: List[SecretAttempt]


@dataclass
class _RegisteredResolver:
    priority: int
    resolver: SecretResolver
    name: str
    source: str
    details: dict[str, object]


_secret_specs: dict[str, SecretSpec] = {}
_resolvers: List[_RegisteredResolver] = []


def register_secret(spec: SecretSpec) -> None:
    existing = _secret_specs.get(spec.name)
    if existing is None:
        _secret_specs[spec.name] = spec
        return
    workflows = tuple(dict.fromkeys(existing.workflows + spec.workflows))
    _secret_specs[spec.name] = SecretSpec(
        name=spec.name,
        description=existing.description or spec.description,
        workflows=workflows,
    )


def register_resolver(
    resolver: SecretResolver,
    priority: int = 0,
    *,
    name: Optional[str] = None,
    source: Optional[str] = None,
    details: Optional[dict[str, object]] = None,
) -> None:
    entry = _RegisteredResolver(
        priority=priority,
        resolver=resolver,
        name=name or resolver.__class__.__name__,
        source=source or (name or resolver.__class__.__name__),
        details=dict(details or {}),
    )
    _resolvers.append(entry)
    _resolvers.sort(key=lambda item: item.priority, reverse=True)


class EnvResolver:
    """Resolve secrets from process environment variables."""

    def resolve(self, spec: SecretSpec) -> Optional[str]:
        value = os.getenv(spec.name)
        return value if value else None

    def describe(self) -> dict[str, object]:
        return {"type": "env"}


register_resolver(EnvResolver(), priority=0, name="env", source="env")


class DotEnvResolver:
    """Resolve secrets from a ``.env`` file without exporting them."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._values: Optional[Dict[str, Optional[str]]] = None

    def resolve(self, spec: SecretSpec) -> Optional[str]:
        value = self._load().get(spec.name)
        return value if value else None

    def describe(self) -> dict[str, object]:
        return {
            "type": "dotenv",
            "path": str(self.path),
            "exists": self.path.exists(),
            "loaded": self._values is not None,
        }

    def _load(self) -> Dict[str, Optional[str]]:
        if self._values is None:
            self._values = dict(dotenv_values(self.path)) if self.path.exists() else {}
        return self._values


class MappingResolver:
    """Resolve secrets from an explicit mapping (``--secret NAME=value``)."""

    def __init__(self, values: Mapping[str, str]) -> None:
        self.values = dict(values)

    def resolve(self, spec: SecretSpec) -> Optional[str]:
        value = self.values.get(spec.name)
        return value if value else None

    def describe(self) -> dict[str, object]:
        return {"type": "mapping", "names": sorted(self.values)}


def use_dotenv(path: str | Path, *, priority: int = -10) -> None:
    resolver = DotEnvResolver(Path(path))
    register_resolver(
        resolver,
        priority=priority,
        name=f"dotenv:{resolver.path}",
        source="dotenv",
        details={"path": str(resolver.path)},
    )


def use_mapping(values: Mapping[str, str], *, priority: int = 10) -> None:
    register_resolver(MappingResolver(values), priority=priority, name="cli", source="cli")


def resolve_secret(name: str) -> Optional[str]:
    info = resolve_secret_info(name)
    return info.value


def resolve_secret_info(name: str) -> SecretResolutionInfo:
    spec = _secret_specs.get(name, SecretSpec(name=name))
    attempts: List[SecretAttempt] = []

    for entry in _resolvers:
        details = dict(entry.details)
        describe = getattr(entry.resolver, "describe", None)

        value = entry.resolver.resolve(spec)

        if callable(describe):
            extra = describe()
            if isinstance(extra, dict):
                details.update(extra)

        success = bool(value)
        attempts.append(
            SecretAttempt(
                resolver=entry.name,
                source=entry.source,
                success=success,
                details=details,
            )
        )
        if success:
            return SecretResolutionInfo(
                name=spec.name,
                value=value,
                resolver=entry.name,
                source=entry.source,
                details=details,
                attempts=attempts,
            )

    return SecretResolutionInfo(
        name=spec.name,
        value=None,
        resolver=None,
        source=None,
        details={},
        attempts=attempts,
    )


class SecretsContext(Mapping[str, str]):
    """Lazy ``secrets`` context; unresolved names read as empty strings."""

    def __init__(self, on_resolve: Optional[Callable[[str], None]] = None) -> None:
        self._cache: Dict[str, str] = {}
        self._on_resolve = on_resolve

    def __getitem__(self, name: str) -> str:
        if name not in self._cache:
            value = resolve_secret(name) or ""
            self._cache[name] = value
            if value and self._on_resolve is not None:
                self._on_resolve(value)
        return self._cache[name]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str)

    def __iter__(self):
        return iter(self._cache)

    def __len__(self) -> int:
        return len(self._cache)


def list_secrets() -> List[SecretSpec]:
    return list(_secret_specs.values())


def describe_secret(name: str) -> dict[str, object]:
    spec = _secret_specs.get(name, SecretSpec(name=name))
    info = resolve_secret_info(name)
    return {
        "name": spec.name,
        "description": spec.description,
        "workflows": list(spec.workflows),
        "present": info.value is not None,
        "resolver": info.resolver,
        "source": info.source,
        "details": info.details,
        "attempts": [
            {
                "resolver": attempt.resolver,
                "source": attempt.source,
                "success": attempt.success,
                "details": attempt.details,
            }
            for attempt in info.attempts
        ],
    }
