"""Extensions: contract, request parsing, registry and the readiness executor."""

from fynmesh.extensions.contract import (
    NOT_FOUND,
    CallContext,
    CallStatus,
    Extension,
    ExtensionRegistration,
    ResumeMode,
    SetupResult,
)
from fynmesh.extensions.executor import ExtensionExecutor
from fynmesh.extensions.manager import ExtensionManager
from fynmesh.extensions.usage import ExtensionRequest, ExtensionUsage, use_extensions

__all__ = [
    "NOT_FOUND",
    "CallContext",
    "CallStatus",
    "Extension",
    "ExtensionExecutor",
    "ExtensionManager",
    "ExtensionRegistration",
    "ExtensionRequest",
    "ExtensionUsage",
    "ResumeMode",
    "SetupResult",
    "use_extensions",
]
