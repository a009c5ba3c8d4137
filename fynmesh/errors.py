"""Kernel errors: numeric codes, typed exceptions, and a Result type for expected absences."""

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")


class KernelErrorCode(IntEnum):
    """Error codes grouped by kind: 1xxx module, 2xxx extension, 3xxx bootstrap,
    4xxx manifest, 5xxx transport."""

    MODULE_NOT_FOUND = 1001
    MODULE_LOAD_FAILED = 1002
    EXPOSE_NOT_FOUND = 1003
    DEPENDENCY_NOT_FOUND = 1004

    EXTENSION_NOT_FOUND = 2001
    EXTENSION_SETUP_FAILED = 2002
    EXTENSION_APPLY_FAILED = 2003
    EXTENSION_FILTER_ERROR = 2004

    BOOTSTRAP_FAILED = 3001
    REGISTRY_RESOLVER_MISSING = 3002

    MANIFEST_FETCH_FAILED = 4001
    MANIFEST_PARSE_FAILED = 4002
    DEPENDENCY_CYCLE = 4003

    TRANSPORT_NOT_LOADED = 5001
    ENTRY_FAILED = 5002


class KernelError(Exception):
    """Base error for all kernel errors. Chain the cause with `raise ... from`."""

    def __init__(
        self,
        code: KernelErrorCode,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = {k: v for k, v in (context or {}).items() if v is not None}

    def to_detailed_string(self) -> str:
        """`[Name:code] message` plus context and cause, one section per line."""
        lines = [f"[{type(self).__name__}:{int(self.code)}] {self.message}"]
        if self.context:
            lines.append(f"Context: {json.dumps(self.context, indent=2, default=str)}")
        if self.__cause__ is not None:
            lines.append(f"Caused by: {self.__cause__}")
        return "\n".join(lines)


class ModuleLoadError(KernelError):
    def __init__(
        self,
        code: KernelErrorCode,
        message: str,
        unit_name: str | None = None,
        unit_version: str | None = None,
        expose_name: str | None = None,
    ) -> None:
        super().__init__(
            code,
            message,
            {
                "unit_name": unit_name,
                "unit_version": unit_version,
                "expose_name": expose_name,
            },
        )


class ExtensionError(KernelError):
    def __init__(
        self,
        code: KernelErrorCode,
        message: str,
        extension_name: str | None = None,
        provider: str | None = None,
        unit_name: str | None = None,
        registry_keys: list[str] | None = None,
    ) -> None:
        super().__init__(
            code,
            message,
            {
                "extension_name": extension_name,
                "provider": provider,
                "unit_name": unit_name,
                "registry_keys": registry_keys,
            },
        )
        self.registry_keys = list(registry_keys or [])


class BootstrapError(KernelError):
    def __init__(
        self,
        code: KernelErrorCode,
        message: str,
        unit_name: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(code, message, {"unit_name": unit_name, "phase": phase})


class ManifestError(KernelError):
    def __init__(
        self,
        code: KernelErrorCode,
        message: str,
        manifest_url: str | None = None,
        package_name: str | None = None,
    ) -> None:
        super().__init__(
            code, message, {"manifest_url": manifest_url, "package_name": package_name}
        )


class DependencyCycleError(ManifestError):
    """Not every graph node drained during topological batching."""

    def __init__(self, stuck: list[str]) -> None:
        super().__init__(
            KernelErrorCode.DEPENDENCY_CYCLE,
            f"Dependency cycle detected among: {', '.join(stuck)}",
        )
        self.stuck = stuck
        self.context["stuck"] = stuck


class TransportError(KernelError):
    def __init__(
        self, code: KernelErrorCode, message: str, entry_url: str | None = None
    ) -> None:
        super().__init__(code, message, {"entry_url": entry_url})


@dataclass(frozen=True)
class Result(Generic[T, E]):
    """Tagged success/failure for recoverable conditions. Build with ok() / err()."""

    success: bool
    value: T | None = None
    error: E | None = None

    @property
    def is_ok(self) -> bool:
        return self.success

    @property
    def is_error(self) -> bool:
        return not self.success

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.success:
            return self.value  # type: ignore[return-value]
        if isinstance(self.error, BaseException):
            raise self.error
        raise ValueError(f"unwrap() on failed result: {self.error!r}")

    def unwrap_or(self, default: T) -> T:
        return self.value if self.success else default  # type: ignore[return-value]


def ok(value: Any = None) -> Result[Any, Any]:
    return Result(success=True, value=value)


def err(error: Any) -> Result[Any, Any]:
    return Result(success=False, error=error)


__all__ = [
    "BootstrapError",
    "DependencyCycleError",
    "ExtensionError",
    "KernelError",
    "KernelErrorCode",
    "ManifestError",
    "ModuleLoadError",
    "Result",
    "TransportError",
    "err",
    "ok",
]
