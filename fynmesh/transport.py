"""Module transport: how a unit's remote entry is imported.

The kernel only needs `import_entry(url) -> UnitEntry`. Two transports ship here:
MemoryTransport (URL -> entry map, for embedding and tests) and LocalTransport
(imports the entry file from disk).
"""

import asyncio
import importlib.util
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable
from urllib.parse import urlparse
from urllib.request import url2pathname

from fynmesh.errors import KernelErrorCode, TransportError
from fynmesh.utils import clean_container_name

logger = logging.getLogger(__name__)


@dataclass
class UnitContainer:
    """Identity of a loaded entry and the names it exposes (expose name -> factory)."""

    name: str
    version: str = ""
    exposes: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class UnitEntry(Protocol):
    """What a transport returns. `setup()` and `manifest` are optional."""

    container: UnitContainer

    def init(self) -> Any: ...

    def get(self, expose_name: str) -> Any:
        """Factory for the exposed module. Calling it yields the module."""


@runtime_checkable
class Transport(Protocol):
    async def import_entry(self, url: str) -> UnitEntry: ...


class ModuleEntry:
    """Entry built from plain factories. Unit entry files usually export one of these as `entry`."""

    def __init__(
        self,
        name: str,
        version: str = "",
        exposes: dict[str, Callable[[], Any]] | None = None,
        manifest: dict[str, Any] | None = None,
        setup: Callable[[], Any] | None = None,
    ) -> None:
        self.container = UnitContainer(name=name, version=version, exposes=dict(exposes or {}))
        self.manifest = manifest
        if setup is not None:
            self.setup = setup
        self.initialized = False

    def init(self) -> None:
        self.initialized = True

    def get(self, expose_name: str) -> Callable[[], Any]:
        try:
            return self.container.exposes[expose_name]
        except KeyError:
            raise KeyError(f"{self.container.name} does not expose {expose_name}") from None

    def __repr__(self) -> str:
        return f"ModuleEntry({self.container.name}@{self.container.version})"


class MemoryTransport:
    """Serves pre-built entries by URL. Records every import in `imported`."""

    def __init__(self, entries: dict[str, UnitEntry] | None = None) -> None:
        self._entries: dict[str, UnitEntry] = dict(entries or {})
        self.imported: list[str] = []

    def add(self, url: str, entry: UnitEntry) -> None:
        self._entries[url] = entry

    async def import_entry(self, url: str) -> UnitEntry:
        self.imported.append(url)
        entry = self._entries.get(url)
        if entry is None:
            raise TransportError(
                KernelErrorCode.TRANSPORT_NOT_LOADED, f"No entry at {url}", entry_url=url
            )
        return entry


def _entry_path(url: str, entry_file: str) -> Path:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        path = Path(url2pathname(parsed.path))
    elif len(parsed.scheme) <= 1:
        # A bare scheme of one letter is a Windows drive
        path = Path(url)
    else:
        raise TransportError(
            KernelErrorCode.TRANSPORT_NOT_LOADED,
            f"LocalTransport cannot load {parsed.scheme}:// URLs",
            entry_url=url,
        )
    return path / entry_file if path.is_dir() else path


class LocalTransport:
    """Imports entry files from disk with importlib. Each file is imported once.

    The entry module either defines `entry` (a UnitEntry) or is one itself
    (module-level `container`, `init`, `get`).
    """

    def __init__(self, entry_file: str = "fynapp_entry.py") -> None:
        self._entry_file = entry_file
        self._loaded: dict[Path, UnitEntry] = {}
        self._lock = asyncio.Lock()

    def _load(self, path: Path) -> UnitEntry:
        if not path.exists():
            raise FileNotFoundError(f"{path} not found")
        module_name = f"fynapp_{clean_container_name(path.parent.name)}_{len(self._loaded)}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load {path}")
        mod = importlib.util.module_from_spec(spec)
        sys.modules[spec.name] = mod
        spec.loader.exec_module(mod)
        return getattr(mod, "entry", mod)

    async def import_entry(self, url: str) -> UnitEntry:
        path = _entry_path(url, self._entry_file).resolve()
        async with self._lock:
            cached = self._loaded.get(path)
            if cached is not None:
                return cached
            try:
                entry = self._load(path)
            except Exception as e:
                raise TransportError(
                    KernelErrorCode.ENTRY_FAILED, f"Failed to import {path}: {e}", entry_url=url
                ) from e
            if not isinstance(entry, UnitEntry):
                raise TransportError(
                    KernelErrorCode.ENTRY_FAILED,
                    f"{path} defines neither `entry` nor container/init/get",
                    entry_url=url,
                )
            self._loaded[path] = entry
            logger.debug("Imported entry %s from %s", entry.container.name, path)
            return entry

    def preload(self, url: str, depth: int) -> None:
        """Preload hook for ManifestResolver; local files need no warm-up."""
        logger.debug("Preload hint (depth %d): %s", depth, url)
