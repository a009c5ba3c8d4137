"""Entry point for `python -m fynmesh`: load the configured units from local disk and run them."""

import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from fynmesh.kernel import Kernel
from fynmesh.logging_config import setup_logging
from fynmesh.resolver import TemplateRegistryResolver
from fynmesh.settings import get_setting, load_settings
from fynmesh.transport import LocalTransport

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _build_kernel(settings: dict) -> Kernel:
    entry_file = get_setting(settings, "kernel.entry_file", "fynapp_entry.py")
    base_url = get_setting(settings, "registry.base_url", "") or str(_PROJECT_ROOT / "units")
    transport = LocalTransport(entry_file=entry_file)
    resolver = TemplateRegistryResolver(
        base_url=base_url,
        version=get_setting(settings, "registry.version", "0.0.0"),
        manifest_file=get_setting(settings, "kernel.manifest_file", "fynapp.manifest.json"),
    )
    kernel = Kernel(transport, registry_resolver=resolver, settings=settings)
    kernel.set_preload_callback(transport.preload)
    return kernel


async def main_async(unit_names: list[str]) -> int:
    """Load units and their dependencies, wait for deferred work, shut down."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    names = unit_names or list(get_setting(settings, "units", []) or [])
    if not names:
        logger.error("No units to load: pass names or set `units` in config/settings.yaml")
        return 2
    async with _build_kernel(settings) as kernel:
        units = await kernel.load_units_by_name(names)
        await kernel.settle()
        state = kernel.coordinator.get_bootstrap_state()
        logger.info(
            "Loaded %d unit(s); bootstrapped: %s",
            len(units),
            ", ".join(sorted(state.bootstrapped)) or "none",
        )
    return 0


def main() -> None:
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        code = asyncio.run(main_async(sys.argv[1:]))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)
