"""Kernel: one session owning the resolver, registry, coordinator, executor and event bus.

Nothing is process-global; two Kernel instances share no state.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Iterable

import httpx

from fynmesh.coordinator import BootstrapCoordinator
from fynmesh.errors import BootstrapError, KernelError, KernelErrorCode, TransportError
from fynmesh.events import EventBus, KernelTopics
from fynmesh.events.models import Event
from fynmesh.extensions.contract import CallContext, CallStatus, ExtensionRegistration
from fynmesh.extensions.executor import DeferredGroup, ExtensionExecutor
from fynmesh.extensions.manager import ExtensionManager
from fynmesh.extensions.usage import ExtensionUsage
from fynmesh.loader import UnitLoader
from fynmesh.resolver.manifest import UnitRequest
from fynmesh.resolver.registry import RegistryResolver
from fynmesh.resolver.resolver import ManifestResolver, PreloadCallback
from fynmesh.settings import KernelSettings, merge_settings
from fynmesh.transport import Transport, UnitEntry
from fynmesh.unit import EXTENSION_EXPOSE_PREFIX, RuntimeData, Unit, UnitRuntime
from fynmesh.utils import clean_container_name, maybe_await, url_join

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
MAX_CONCURRENCY = 8


class ErrorPolicy(Enum):
    """isolate: log, publish failure, return False. propagate: same, then raise BootstrapError."""

    ISOLATE = "isolate"
    PROPAGATE = "propagate"


class Kernel:
    """Kernel session. Build one per application; use as an async context manager."""

    def __init__(
        self,
        transport: Transport,
        registry_resolver: RegistryResolver | None = None,
        settings: dict[str, Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = merge_settings(settings)
        self.config = KernelSettings.from_settings(self.settings)
        self.version = VERSION
        self.transport = transport
        self.entry_file = self.config.entry_file
        self.error_policy = ErrorPolicy(self.config.error_policy)
        self.concurrency = self.config.concurrency

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=self.config.http_timeout)
        self.events = EventBus(max_queue=self.config.max_queue)
        self.resolver = ManifestResolver(
            transport=transport,
            http_client=self._http_client,
            on_cycle=self.config.on_cycle,
            manifest_file=self.config.manifest_file,
            legacy_manifest_file=self.config.legacy_manifest_file,
            entry_file=self.entry_file,
        )
        if registry_resolver is not None:
            self.resolver.set_registry_resolver(registry_resolver)
        self.coordinator = BootstrapCoordinator(self.events, timeout=self.config.bootstrap_timeout)
        self.extensions = ExtensionManager()
        self.loader = UnitLoader(self.extensions)
        self.executor = ExtensionExecutor(
            self.extensions,
            kernel=self,
            signal_ready=self._signal_ready,
            register_provider_mode=self.coordinator.register_provider_mode,
            load_from_dependency=self._load_from_dependency,
        )
        self.runtime = RuntimeData()
        self._sync_runtime()
        self._resume_tasks: set[asyncio.Task[None]] = set()
        self.events.subscribe(KernelTopics.EXTENSION_READY, self._on_extension_ready, "kernel")

    # --- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Start the event bus dispatch loop. Idempotent."""
        await self.events.start()

    async def settle(self) -> None:
        """Wait until queued events are delivered and resumed extension groups finished."""
        while True:
            await self.events.drain()
            pending = [t for t in self._resume_tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def stop(self) -> None:
        """Settle, stop the bus, cancel deferred bootstraps, close the owned HTTP client."""
        if self.events.running:
            await self.settle()
        await self.events.stop()
        self.coordinator.clear()
        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> "Kernel":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # --- registry and runtime data -----------------------------------------

    def _sync_runtime(self) -> None:
        extensions, auto_apply = self.extensions.export_to_runtime()
        self.runtime.extensions = extensions
        self.runtime.auto_apply = auto_apply

    def init_run_time(self, data: RuntimeData) -> RuntimeData:
        """Adopt data as this kernel's runtime (loaded units and extension registry)."""
        self.runtime = RuntimeData(
            units_loaded=data.units_loaded,
            extensions=data.extensions,
            auto_apply=data.auto_apply,
        )
        self.extensions.initialize_from_runtime(self.runtime)
        self._sync_runtime()
        return self.runtime

    def register_extension(self, reg: ExtensionRegistration) -> bool:
        added = self.extensions.register_extension(reg)
        self._sync_runtime()
        return added

    def get_extension(self, name: str, provider: str | None = None) -> ExtensionRegistration:
        return self.extensions.get_extension(name, provider)

    def set_registry_resolver(self, resolver: RegistryResolver) -> None:
        self.resolver.set_registry_resolver(resolver)

    def set_preload_callback(self, callback: PreloadCallback | None) -> None:
        self.resolver.set_preload_callback(callback)

    @staticmethod
    def clean_container_name(name: str) -> str:
        return clean_container_name(name)

    # --- readiness -------------------------------------------------------

    async def signal_extension_ready(
        self,
        cc: CallContext,
        share: Any = None,
        name: str | None = None,
        status: str = CallStatus.READY.value,
    ) -> None:
        """Extensions call this to announce readiness. The ready map updates before publishing."""
        payload_share = share if share is not None else {}
        self.executor.set_ready(cc.reg.full_key, payload_share)
        await self.events.publish(
            KernelTopics.EXTENSION_READY,
            cc.reg.registry_key,
            {
                "name": name or cc.reg.name,
                "status": status,
                "call_context": cc,
                "share": payload_share,
            },
        )

    async def _signal_ready(self, cc: CallContext, share: Any) -> None:
        await self.signal_extension_ready(cc, share)

    async def _on_extension_ready(self, event: Event) -> None:
        cc: CallContext = event.payload["call_context"]
        share = event.payload.get("share")
        resumes = self.executor.process_ready_extension(
            cc.reg.full_key, share if share is not None else {}
        )
        logger.debug(
            "Extension %s is %s (%s)",
            event.payload.get("name"),
            event.payload.get("status"),
            cc.reg.registry_key,
        )
        if not resumes:
            return
        # Run outside the dispatch loop: resumed unit code may publish and await events
        task = asyncio.create_task(self._run_resumes(resumes))
        self._resume_tasks.add(task)
        task.add_done_callback(self._resume_tasks.discard)

    async def _run_resumes(self, resumes: list[DeferredGroup]) -> None:
        for group in resumes:
            unit = group.contexts[0].unit
            try:
                status = await self.executor.call_extensions(
                    group.contexts, resume_mode=group.resume_mode
                )
                logger.debug("Resumed %s: %s", unit.key, status.value)
            except Exception as e:
                logger.exception("Resumed extensions for %s failed: %s", unit.key, e)

    # --- loading ---------------------------------------------------------

    async def _load_from_dependency(self, package_name: str, module_path: str) -> None:
        result = await self.loader.load_extension_from_dependency(
            package_name, module_path, self.runtime.units_loaded
        )
        if result.is_error:
            logger.debug("%s", result.error)

    async def load_unit_basics(self, entry: UnitEntry) -> Unit:
        unit = await self.loader.load_unit_basics(entry, self.runtime.units_loaded)
        self._sync_runtime()
        return unit

    async def load_unit(self, base_url: str, load_id: str | None = None) -> Unit | None:
        """Import the entry under base_url, load its basics and bootstrap it.

        Returns None when the entry cannot be imported and the error policy isolates.
        """
        load_id = load_id or base_url
        entry_url = url_join(base_url, self.entry_file)
        logger.debug("Loading unit %s from %s", load_id, entry_url)
        try:
            entry = await self.transport.import_entry(entry_url)
            unit = await self.load_unit_basics(entry)
        except Exception as e:
            logger.exception("Failed to load unit from %s: %s", base_url, e)
            if self.error_policy is ErrorPolicy.PROPAGATE:
                if isinstance(e, KernelError):
                    raise
                raise TransportError(
                    KernelErrorCode.ENTRY_FAILED, f"Cannot load unit from {base_url}: {e}", entry_url
                ) from e
            return None
        await self.bootstrap_unit(unit)
        return unit

    async def load_units_by_name(
        self, requests: Iterable[UnitRequest | str], concurrency: int | None = None
    ) -> list[Unit]:
        """Resolve the dependency graph of requests and load it batch by batch.

        Batches run in order; units inside a batch load concurrently (clamped to 1..8).
        """
        reqs = [UnitRequest(name=r) if isinstance(r, str) else r for r in requests]
        await self.start()

        preloaded: set[str] = set()
        if self.resolver.has_registry_resolver:
            for req in reqs:
                res = await self.resolver.resolve(req.name, req.range)
                self.resolver.preload(self.resolver.entry_url_for(res), 0, preloaded)

        graph = await self.resolver.build_graph(reqs, preloaded)
        batches = self.resolver.topo_batches(graph)
        limit = max(1, min(concurrency if concurrency is not None else self.concurrency, MAX_CONCURRENCY))
        semaphore = asyncio.Semaphore(limit)
        all_meta = self.resolver.get_all_node_meta()
        loaded: list[Unit] = []

        async def load_one(key: str) -> Unit | None:
            meta = all_meta[key]
            async with semaphore:
                logger.info("Loading %s from %s", key, meta.dist_base)
                return await self.load_unit(meta.dist_base, load_id=key)

        for i, batch in enumerate(batches):
            logger.debug("Batch %d: %s", i, batch)
            results = await asyncio.gather(*(load_one(key) for key in batch))
            loaded.extend(u for u in results if u is not None)
        return loaded

    # --- bootstrap -------------------------------------------------------

    async def bootstrap_unit(self, unit: Unit) -> bool:
        """Run unit's main module under the bootstrap lock. True on success.

        Waits in the coordinator queue when another unit holds the lock or a
        provider has not bootstrapped yet. A timed-out wait skips the unit.
        """
        await self.start()
        if not self.coordinator.can_bootstrap(unit):
            resumed = await self.coordinator.defer_bootstrap(unit)
            if not resumed:
                logger.error("Skipping bootstrap of %s after timeout", unit.key)
                return False
            logger.debug("Resuming bootstrap of %s", unit.key)
        self.coordinator.acquire_lock(unit.name)

        try:
            await self._bootstrap(unit)
        except asyncio.CancelledError:
            logger.warning("Bootstrap of %s cancelled", unit.key)
            published = self.events.publish_nowait(
                KernelTopics.UNIT_BOOTSTRAP_FAILED,
                "kernel",
                {"name": unit.name, "version": unit.version, "error": "cancelled"},
            )
            if published is None:
                self.coordinator.release_lock()
                self.coordinator.resume_next()
            raise
        except Exception as e:
            logger.exception("Bootstrap failed for %s: %s", unit.key, e)
            await self.events.publish(
                KernelTopics.UNIT_BOOTSTRAP_FAILED,
                "kernel",
                {"name": unit.name, "version": unit.version, "error": e},
            )
            if self.error_policy is ErrorPolicy.PROPAGATE:
                raise BootstrapError(
                    KernelErrorCode.BOOTSTRAP_FAILED,
                    f"Bootstrap failed for {unit.key}: {e}",
                    unit_name=unit.name,
                    phase="bootstrap",
                ) from e
            return False

        logger.info("Bootstrapped %s", unit.key)
        await self.events.publish(
            KernelTopics.UNIT_BOOTSTRAPPED,
            "kernel",
            {"name": unit.name, "version": unit.version},
        )
        return True

    async def _bootstrap(self, unit: Unit) -> None:
        for expose_name in unit.declared_exposes():
            if expose_name.startswith(EXTENSION_EXPOSE_PREFIX):
                result = await self.loader.load_expose_module(unit, expose_name)
                if result.is_error:
                    logger.warning("%s", result.error)
        self._sync_runtime()

        main = unit.main_module
        if main is None:
            logger.debug("%s has no main module to run", unit.key)
            return

        module = main.module if isinstance(main, ExtensionUsage) else main
        await self.executor.apply_auto_scope_extensions(unit, module)

        if isinstance(main, ExtensionUsage):
            status = await self.executor.use_extensions_on_module(main, unit)
            if status is CallStatus.DEFER:
                logger.info("%s is waiting for its extensions", unit.key)
        elif hasattr(main, "execute") or hasattr(main, "initialize"):
            await self.executor.invoke_module(main, unit)
        elif callable(main):
            await self._call_main(main, unit)
        else:
            logger.warning("%s main export is not runnable: %r", unit.key, main)

    async def _call_main(self, main: Any, unit: Unit) -> None:
        logger.debug("Calling main of %s", unit.key)
        await maybe_await(main(UnitRuntime(unit)))
