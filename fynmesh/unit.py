"""Unit records: a loaded unit, its per-invocation runtime, and the module hooks it exposes."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# Expose names with special meaning to the loader
MAIN_EXPOSE = "./main"
CONFIG_EXPOSE = "./config"
EXTENSION_EXPOSE_PREFIX = "./extension"

PROVIDER = "provider"
CONSUMER = "consumer"


def get_export(module: Any, name: str, default: Any = None) -> Any:
    """Read one export from a loaded module: dicts by key, anything else by attribute."""
    if isinstance(module, Mapping):
        return module.get(name, default)
    return getattr(module, name, default)


def iter_exports(module: Any) -> list[tuple[str, Any]]:
    if isinstance(module, Mapping):
        return list(module.items())
    return list(getattr(module, "__dict__", {}).items())


@dataclass(eq=False)
class Unit:
    """One loaded unit. `exposes` holds modules loaded so far, keyed by expose name."""

    name: str
    version: str
    package_name: str
    entry: Any
    exposes: dict[str, Any] = field(default_factory=dict)
    extension_context: dict[str, Any] = field(default_factory=dict)
    config: Any = None
    skip_apply_extensions: bool = False

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    def declared_exposes(self) -> list[str]:
        container = getattr(self.entry, "container", None)
        return list(getattr(container, "exposes", None) or {})

    @property
    def is_extension_provider(self) -> bool:
        """True when the unit exposes ./extension* modules, declared or loaded."""
        names = set(self.exposes) | set(self.declared_exposes())
        return any(n.startswith(EXTENSION_EXPOSE_PREFIX) for n in names)

    @property
    def main_module(self) -> Any:
        """The `main` export of ./main, or None if ./main is not loaded."""
        main_expose = self.exposes.get(MAIN_EXPOSE)
        if main_expose is None:
            return None
        return get_export(main_expose, "main")

    def __repr__(self) -> str:
        return f"Unit({self.key})"


@dataclass(eq=False)
class UnitRuntime:
    """Passed to a unit's initialize/execute. `share` is the last ready payload received."""

    unit: Unit
    extension_context: dict[str, Any] = field(default_factory=dict)
    share: Any = None
    shares: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitResult:
    """What a unit's initialize may return.

    status="defer" asks to wait for extensions; mode declares provider/consumer
    for every extension in the group; defer_ok lets the unit execute while its
    extensions are still deferred.
    """

    status: str | None = None
    mode: str | None = None
    defer_ok: bool = False

    @classmethod
    def coerce(cls, value: Any) -> "InitResult":
        if isinstance(value, InitResult):
            return value
        if isinstance(value, Mapping):
            return cls(
                status=value.get("status"),
                mode=value.get("mode"),
                defer_ok=bool(value.get("defer_ok", value.get("deferOk", False))),
            )
        return cls()


@dataclass
class RuntimeData:
    """Kernel runtime data: loaded units and the extension registry."""

    units_loaded: dict[str, Unit] = field(default_factory=dict)
    extensions: dict[str, dict[str, Any]] = field(default_factory=dict)
    auto_apply: dict[str, list[Any]] | None = None
