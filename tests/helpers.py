"""Test helpers: an in-memory unit farm, a fake registry and call-context builders."""

from typing import Any

from fynmesh.extensions.contract import CallContext, ExtensionRegistration
from fynmesh.extensions.usage import ExtensionRequest
from fynmesh.resolver.manifest import RegistryResolution
from fynmesh.transport import MemoryTransport, ModuleEntry
from fynmesh.unit import Unit, UnitRuntime

BASE_URL = "http://units.test"


def dist_base(name: str) -> str:
    return f"{BASE_URL}/{name}/dist/"


def entry_url(name: str) -> str:
    return f"{dist_base(name)}fynapp_entry.py"


class UnitFarm:
    """Builds ModuleEntry units with embedded manifests and serves them by entry URL."""

    def __init__(self) -> None:
        self.transport = MemoryTransport()

    def add(
        self,
        name: str,
        version: str = "1.0.0",
        main: Any = None,
        exposes: dict[str, Any] | None = None,
        requires: tuple[str, ...] = (),
        **manifest_extra: Any,
    ) -> ModuleEntry:
        factories = dict(exposes or {})
        if main is not None:
            factories["./main"] = lambda m=main: {"main": m}
        manifest = {
            "name": name,
            "version": version,
            "requires": [{"name": r} for r in requires],
            **manifest_extra,
        }
        entry = ModuleEntry(name, version, factories, manifest=manifest)
        self.transport.add(entry_url(name), entry)
        return entry


class FakeRegistry:
    """Registry resolver with per-name versions. Records every call."""

    def __init__(self, versions: dict[str, str] | None = None, base_url: str = BASE_URL) -> None:
        self.versions = versions or {}
        self.base_url = base_url
        self.calls: list[tuple[str, str | None]] = []

    async def __call__(self, name: str, range: str | None = None) -> RegistryResolution:
        self.calls.append((name, range))
        return RegistryResolution(
            name=name,
            version=self.versions.get(name, "1.0.0"),
            manifest_url=f"{self.base_url}/{name}/dist/fynapp.manifest.json",
        )


def make_unit(name: str = "app", version: str = "1.0.0", exposes: dict[str, Any] | None = None) -> Unit:
    unit = Unit(name=name, version=version, package_name=name, entry=None)
    unit.exposes.update(exposes or {})
    return unit


def make_reg(extension: Any, provider: str = "ext-host", version: str = "1.0.0") -> ExtensionRegistration:
    host = make_unit(provider, version)
    return ExtensionRegistration.for_unit(
        host, "./extension/tools", f"__extension__{extension.name}", extension
    )


def make_cc(
    reg: ExtensionRegistration,
    unit: Unit,
    module: Any,
    runtime: UnitRuntime | None = None,
    require_ready: bool = True,
) -> CallContext:
    return CallContext(
        unit=unit,
        reg=reg,
        runtime=runtime or UnitRuntime(unit),
        request=ExtensionRequest(
            name=reg.name, provider=reg.host.name if reg.host else None, require_ready=require_ready
        ),
        module=module,
    )


