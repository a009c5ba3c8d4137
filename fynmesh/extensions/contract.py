"""Extension protocols and the records the executor passes around.

Capabilities are detected with isinstance(ext, Protocol); every hook may be sync or async.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from fynmesh.unit import Unit, UnitRuntime

if TYPE_CHECKING:
    from fynmesh.extensions.usage import ExtensionRequest

# Export names starting with this prefix are registered as extensions
EXTENSION_EXPORT_PREFIX = "__extension__"

# auto_apply_scope values
SCOPE_UNIT = "unit"
SCOPE_PROVIDER = "provider"
SCOPE_ALL = "all"


class CallStatus(str, Enum):
    UNSET = ""
    READY = "ready"
    DEFER = "defer"
    SKIP = "skip"


class ResumeMode(Enum):
    """FULL runs initialize/apply/execute; EXTENSIONS_ONLY resumes a unit that already executed."""

    FULL = "full"
    EXTENSIONS_ONLY = "extensions_only"


@runtime_checkable
class Extension(Protocol):
    """Base contract: a name. `auto_apply_scope` (list of scopes) is an optional attribute."""

    name: str


@runtime_checkable
class SetupHook(Protocol):
    def setup(self, context: "CallContext") -> Any:
        """Return SetupResult.ready(share), SetupResult.defer() or None."""


@runtime_checkable
class ApplyHook(Protocol):
    def apply(self, context: "CallContext") -> Any: ...


@runtime_checkable
class ApplyFilter(Protocol):
    """Auto-apply extensions may refuse individual units."""

    def should_apply(self, unit: Unit) -> bool: ...


@runtime_checkable
class ExecutionOverride(Protocol):
    """Auto-apply extension that runs a unit's module instead of the unit itself.

    `override_initialize(context)` is an optional companion hook.
    """

    def can_override_execution(self, unit: Unit, module: Any) -> bool: ...

    def override_execute(self, context: "CallContext") -> Any: ...


@dataclass(frozen=True)
class SetupResult:
    status: CallStatus
    share: Any = None

    @classmethod
    def ready(cls, share: Any = None) -> "SetupResult":
        return cls(CallStatus.READY, share)

    @classmethod
    def defer(cls) -> "SetupResult":
        return cls(CallStatus.DEFER)

    @classmethod
    def coerce(cls, value: Any) -> "SetupResult | None":
        if value is None or isinstance(value, SetupResult):
            return value
        if isinstance(value, Mapping):
            return cls(CallStatus(value.get("status", "")), value.get("share"))
        raise TypeError(f"setup() returned {type(value).__name__}, expected SetupResult")


def auto_apply_scope(extension: Any) -> list[str]:
    return list(getattr(extension, "auto_apply_scope", None) or [])


@dataclass(eq=False)
class ExtensionRegistration:
    """One extension hosted by one unit version.

    registry_key = provider::name (lookup), full_key = provider@version::name (readiness).
    """

    registry_key: str
    full_key: str
    host: Unit | None
    expose_name: str
    export_name: str
    extension: Any

    @classmethod
    def for_unit(
        cls, host: Unit, expose_name: str, export_name: str, extension: Any
    ) -> "ExtensionRegistration":
        name = extension.name
        return cls(
            registry_key=f"{host.name}::{name}",
            full_key=f"{host.name}@{host.version}::{name}",
            host=host,
            expose_name=expose_name,
            export_name=export_name,
            extension=extension,
        )

    @property
    def name(self) -> str:
        return getattr(self.extension, "name", "")

    @property
    def is_found(self) -> bool:
        return self.registry_key != ""

    def __repr__(self) -> str:
        return f"ExtensionRegistration({self.full_key or '<not found>'})"


# Returned by lookups that miss
NOT_FOUND = ExtensionRegistration("", "", None, "", "", None)


@dataclass(eq=False)
class CallContext:
    """One unit paired with one extension during one bootstrap attempt."""

    unit: Unit
    reg: ExtensionRegistration
    runtime: UnitRuntime
    request: "ExtensionRequest"
    module: Any = None
    kernel: Any = None
    status: CallStatus = CallStatus.UNSET

    @property
    def config(self) -> Any:
        return self.request.config
