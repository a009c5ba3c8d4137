"""UnitLoader: turn an imported entry into a Unit and load its exposed modules."""

import logging
from typing import Any

from fynmesh.errors import KernelErrorCode, ModuleLoadError, Result, err, ok
from fynmesh.extensions.manager import ExtensionManager
from fynmesh.resolver.manifest import parse_manifest
from fynmesh.transport import UnitEntry
from fynmesh.unit import CONFIG_EXPOSE, MAIN_EXPOSE, Unit
from fynmesh.utils import maybe_await

logger = logging.getLogger(__name__)


def extension_expose_name(module_path: str) -> str:
    """'extension/design-tokens/design-tokens' -> './extension/design-tokens'.

    The last segment names the extension; the rest names the module exposing it.
    """
    idx = module_path.rfind("/")
    expose = module_path[:idx] if idx > 0 else module_path
    return f"./{expose}"


class UnitLoader:
    """Loads unit entries. Extension exports found while loading go to the ExtensionManager."""

    def __init__(self, manager: ExtensionManager) -> None:
        self._manager = manager

    async def load_expose_module(
        self, unit: Unit, expose_name: str, scan_extensions: bool = True
    ) -> Result[Any, ModuleLoadError]:
        """Load one exposed module into unit.exposes.

        Returns err(EXPOSE_NOT_FOUND) when the entry does not expose it. Raises
        ModuleLoadError(MODULE_LOAD_FAILED) when the factory itself fails.
        """
        if expose_name not in unit.declared_exposes():
            logger.debug("%s does not expose %s", unit.key, expose_name)
            return err(
                ModuleLoadError(
                    KernelErrorCode.EXPOSE_NOT_FOUND,
                    f"No expose module '{expose_name}' in {unit.key}",
                    unit_name=unit.name,
                    unit_version=unit.version,
                    expose_name=expose_name,
                )
            )
        try:
            factory = await maybe_await(unit.entry.get(expose_name))
            module = await maybe_await(factory() if callable(factory) else factory)
        except Exception as e:
            raise ModuleLoadError(
                KernelErrorCode.MODULE_LOAD_FAILED,
                f"Loading {expose_name} of {unit.key} failed: {e}",
                unit_name=unit.name,
                unit_version=unit.version,
                expose_name=expose_name,
            ) from e
        if module is None:
            return err(
                ModuleLoadError(
                    KernelErrorCode.MODULE_NOT_FOUND,
                    f"Expose module '{expose_name}' of {unit.key} is empty",
                    unit_name=unit.name,
                    unit_version=unit.version,
                    expose_name=expose_name,
                )
            )
        if scan_extensions:
            self._manager.scan_and_register(unit, expose_name, module)
        unit.exposes[expose_name] = module
        return ok(module)

    async def load_extension_from_dependency(
        self, package_name: str, module_path: str, units_loaded: dict[str, Unit]
    ) -> Result[Any, ModuleLoadError]:
        """Load the module hosting an extension from an already loaded unit."""
        dependency = units_loaded.get(package_name)
        if dependency is None:
            logger.debug("Dependency %s is not loaded", package_name)
            return err(
                ModuleLoadError(
                    KernelErrorCode.DEPENDENCY_NOT_FOUND,
                    f"Dependency {package_name} is not loaded",
                    unit_name=package_name,
                )
            )
        # import-exposed keys name the expose itself; request paths add the extension name
        expose_name = f"./{module_path}"
        if expose_name not in dependency.declared_exposes():
            expose_name = extension_expose_name(module_path)
        logger.debug("Loading %s from %s for %s", expose_name, package_name, module_path)
        if expose_name in dependency.exposes:
            return ok(dependency.exposes[expose_name])
        return await self.load_expose_module(dependency, expose_name)

    async def load_unit_basics(self, entry: UnitEntry, units_loaded: dict[str, Unit]) -> Unit:
        """init entry, build the Unit, load ./config, run entry.setup(), load ./main,
        then preload extension modules the manifest imports from other units."""
        container = entry.container
        logger.debug("Initializing entry %s %s", container.name, container.version)
        await maybe_await(entry.init())

        unit = Unit(
            name=container.name,
            version=container.version or "1.0.0",
            package_name=container.name,
            entry=entry,
        )

        config = await self.load_expose_module(unit, CONFIG_EXPOSE, scan_extensions=False)
        if config.is_ok:
            unit.config = config.value

        setup = getattr(entry, "setup", None)
        if callable(setup):
            logger.debug("Invoking entry.setup for %s", unit.key)
            await maybe_await(setup())

        main = await self.load_expose_module(unit, MAIN_EXPOSE)
        if main.is_error:
            logger.debug("%s has no main module", unit.key)

        embedded = getattr(entry, "manifest", None)
        if embedded:
            manifest = parse_manifest(embedded)
            for package_name, module_path in manifest.extension_imports():
                logger.debug("Preloading extension %s/%s", package_name, module_path)
                result = await self.load_extension_from_dependency(
                    package_name, module_path, units_loaded
                )
                if result.is_error:
                    logger.warning(
                        "Extension %s/%s for %s not available: %s",
                        package_name,
                        module_path,
                        unit.key,
                        result.error,
                    )

        units_loaded[unit.name] = unit
        logger.info("Loaded %s", unit.key)
        return unit
