"""fynmesh: runtime kernel that loads versioned units and coordinates their bootstrap."""

from fynmesh.coordinator import BootstrapCoordinator
from fynmesh.errors import (
    BootstrapError,
    DependencyCycleError,
    ExtensionError,
    KernelError,
    KernelErrorCode,
    ManifestError,
    ModuleLoadError,
    Result,
    TransportError,
)
from fynmesh.extensions import (
    CallContext,
    CallStatus,
    ExtensionRegistration,
    ExtensionRequest,
    SetupResult,
    use_extensions,
)
from fynmesh.kernel import ErrorPolicy, Kernel
from fynmesh.resolver import (
    CyclePolicy,
    ManifestResolver,
    RegistryResolution,
    TemplateRegistryResolver,
    UnitRequest,
)
from fynmesh.transport import LocalTransport, MemoryTransport, ModuleEntry
from fynmesh.unit import InitResult, Unit, UnitRuntime

__all__ = [
    "BootstrapCoordinator",
    "BootstrapError",
    "CallContext",
    "CallStatus",
    "CyclePolicy",
    "DependencyCycleError",
    "ErrorPolicy",
    "ExtensionError",
    "ExtensionRegistration",
    "ExtensionRequest",
    "InitResult",
    "Kernel",
    "KernelError",
    "KernelErrorCode",
    "LocalTransport",
    "ManifestError",
    "ManifestResolver",
    "MemoryTransport",
    "ModuleEntry",
    "ModuleLoadError",
    "RegistryResolution",
    "Result",
    "SetupResult",
    "TemplateRegistryResolver",
    "TransportError",
    "Unit",
    "UnitRequest",
    "UnitRuntime",
    "use_extensions",
]
