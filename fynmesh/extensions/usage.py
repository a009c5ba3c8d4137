"""Extension requests: how a unit's main module asks for extensions.

A request arrives as a marker string, a dict carrying that string plus config,
or the legacy `{"info": {...}}` dict. ExtensionRequest.parse() turns each form
into one ExtensionRequest when the module is declared; nothing downstream
inspects the raw shapes.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# "-FYNAPP_EXTENSION <package> <path> [semver]"
EXTENSION_MARKER = "-FYNAPP_EXTENSION"


@dataclass(frozen=True)
class ExtensionRequest:
    """A parsed request. `path` is set for the string form and names the provider's module."""

    name: str
    provider: str | None = None
    version: str = "*"
    path: str | None = None
    config: Any = field(default_factory=dict)
    require_ready: bool = True

    @classmethod
    def from_marker(
        cls, text: str, config: Any = None, require_ready: bool = True
    ) -> "ExtensionRequest":
        parts = text.split()
        if len(parts) < 3 or parts[0] != EXTENSION_MARKER:
            raise ValueError(
                f"Expected '{EXTENSION_MARKER} <package> <path> [semver]', got {text!r}"
            )
        package_name, path = parts[1], parts[2]
        return cls(
            name=path.rsplit("/", 1)[-1],
            provider=package_name,
            version=parts[3] if len(parts) > 3 else "*",
            path=path,
            config=config if config is not None else {},
            require_ready=require_ready,
        )

    @classmethod
    def parse(cls, value: Any) -> "ExtensionRequest":
        """Accepts every supported request form. Raises ValueError on anything else."""
        if isinstance(value, ExtensionRequest):
            return value
        if isinstance(value, str):
            return cls.from_marker(value)
        if isinstance(value, Mapping):
            require_ready = bool(value.get("require_ready", value.get("requireReady", True)))
            if isinstance(value.get("extension"), str):
                return cls.from_marker(value["extension"], value.get("config"), require_ready)
            info = value.get("info")
            if isinstance(info, Mapping) and info.get("name"):
                return cls(
                    name=info["name"],
                    provider=info.get("provider"),
                    version=info.get("version") or "*",
                    config=value.get("config") or {},
                    require_ready=require_ready,
                )
        raise ValueError(f"Unrecognized extension request: {value!r}")


@dataclass(frozen=True)
class ExtensionUsage:
    """A unit module bundled with the extensions it needs."""

    requests: tuple[ExtensionRequest, ...]
    module: Any


def use_extensions(module: Any, *requests: Any) -> ExtensionUsage:
    """Mark module as needing extensions. Export the result as `main` from ./main.

        main = use_extensions(MyModule(), "-FYNAPP_EXTENSION acme-ext extension/counter 1.x")
    """
    return ExtensionUsage(
        requests=tuple(ExtensionRequest.parse(r) for r in requests), module=module
    )
