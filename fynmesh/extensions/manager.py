"""ExtensionManager: versioned extension registry and the auto-apply index."""

import logging
from typing import Any

from fynmesh.extensions.contract import (
    EXTENSION_EXPORT_PREFIX,
    NOT_FOUND,
    SCOPE_ALL,
    SCOPE_PROVIDER,
    SCOPE_UNIT,
    Extension,
    ExtensionRegistration,
    auto_apply_scope,
)
from fynmesh.unit import RuntimeData, Unit, iter_exports

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "default"


def _empty_auto_apply() -> dict[str, list[ExtensionRegistration]]:
    return {SCOPE_UNIT: [], SCOPE_PROVIDER: []}


class ExtensionManager:
    """Registry keyed provider::name -> {host version | "default" -> registration}.

    The first version registered for a key becomes its default.
    """

    def __init__(self) -> None:
        self._extensions: dict[str, dict[str, ExtensionRegistration]] = {}
        self._auto_apply: dict[str, list[ExtensionRegistration]] = _empty_auto_apply()
        # Key: "name@version::expose"
        self._scanned: set[str] = set()

    def register_extension(self, reg: ExtensionRegistration) -> bool:
        """Add reg. Returns False for a duplicate key+version, which is ignored."""
        version = reg.host.version if reg.host is not None else ""
        versions = self._extensions.setdefault(reg.registry_key, {})
        if version in versions:
            logger.debug("Extension %s@%s already registered", reg.registry_key, version)
            return False
        versions[version] = reg
        versions.setdefault(DEFAULT_VERSION, reg)

        scope = auto_apply_scope(reg.extension)
        if SCOPE_ALL in scope or SCOPE_UNIT in scope:
            self._auto_apply[SCOPE_UNIT].append(reg)
        if SCOPE_ALL in scope or SCOPE_PROVIDER in scope:
            self._auto_apply[SCOPE_PROVIDER].append(reg)
        if scope:
            logger.info("Registered auto-apply extension %s for %s", reg.full_key, scope)
        else:
            logger.debug("Registered extension %s", reg.full_key)
        return True

    def get_extension(self, name: str, provider: str | None = None) -> ExtensionRegistration:
        """provider::name default first, then the first *::name default, else NOT_FOUND."""
        if provider:
            reg = self._extensions.get(f"{provider}::{name}", {}).get(DEFAULT_VERSION)
            if reg is not None:
                return reg
        suffix = f"::{name}"
        for key, versions in self._extensions.items():
            if key.endswith(suffix) and DEFAULT_VERSION in versions:
                return versions[DEFAULT_VERSION]
        return NOT_FOUND

    def get_auto_apply_extensions(self) -> dict[str, list[ExtensionRegistration]]:
        return self._auto_apply

    def get_target_extensions(self, is_provider: bool) -> list[ExtensionRegistration]:
        """Auto-apply registrations for a provider unit or a plain unit."""
        return list(self._auto_apply[SCOPE_PROVIDER if is_provider else SCOPE_UNIT])

    def has_scanned(self, unit: Unit, expose_name: str) -> bool:
        return f"{unit.key}::{expose_name}" in self._scanned

    def scan_and_register(self, unit: Unit, expose_name: str, module: Any) -> list[str]:
        """Register every __extension__* export of module. Each unit+expose is scanned once."""
        scan_key = f"{unit.key}::{expose_name}"
        if scan_key in self._scanned:
            logger.debug("Skipping extension scan of %s, already scanned", scan_key)
            return []
        self._scanned.add(scan_key)

        registered: list[str] = []
        for export_name, value in iter_exports(module):
            if not export_name.startswith(EXTENSION_EXPORT_PREFIX):
                continue
            if not isinstance(value, Extension) or not value.name:
                logger.warning("Export %s of %s has no extension name", export_name, scan_key)
                continue
            self.register_extension(
                ExtensionRegistration.for_unit(unit, expose_name, export_name, value)
            )
            registered.append(export_name)
        if registered:
            logger.debug("Extensions in %s: %s", scan_key, ", ".join(registered))
        return registered

    def initialize_from_runtime(self, data: RuntimeData) -> None:
        if data.extensions:
            self._extensions = data.extensions
        if data.auto_apply:
            self._auto_apply = data.auto_apply

    def export_to_runtime(self) -> tuple[dict[str, dict[str, Any]], dict[str, list[Any]]]:
        """The live registry and auto-apply index, for RuntimeData."""
        return self._extensions, self._auto_apply

    def clear(self) -> None:
        self._extensions = {}
        self._auto_apply = _empty_auto_apply()
        self._scanned.clear()
