"""ExtensionExecutor: setup -> defer/retry -> initialize -> apply -> execute for a unit's extensions.

Readiness is tracked per full key (provider@version::name). A group of call
contexts that cannot complete is parked until a ready notification lets every
context in it through.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fynmesh.errors import ExtensionError, KernelErrorCode
from fynmesh.extensions.contract import (
    ApplyFilter,
    ApplyHook,
    CallContext,
    CallStatus,
    ExecutionOverride,
    ExtensionRegistration,
    ResumeMode,
    SetupHook,
    SetupResult,
)
from fynmesh.extensions.manager import ExtensionManager
from fynmesh.extensions.usage import ExtensionRequest, ExtensionUsage
from fynmesh.unit import InitResult, Unit, UnitRuntime
from fynmesh.utils import maybe_await

logger = logging.getLogger(__name__)

MAX_TRIES = 2

SignalReady = Callable[[CallContext, Any], Awaitable[None]]
ProviderModeRegistrar = Callable[[str, str, str], None]
DependencyLoader = Callable[[str, str], Awaitable[Any]]


@dataclass(eq=False)
class DeferredGroup:
    contexts: list[CallContext]
    resume_mode: ResumeMode
    key: str


def group_key(contexts: list[CallContext]) -> str:
    """Sorted full keys joined by "|". Groups with the same extension set share a key."""
    return "|".join(sorted(cc.reg.full_key for cc in contexts))


class ExtensionExecutor:
    """Runs extension groups for units. One executor per kernel session."""

    def __init__(
        self,
        manager: ExtensionManager,
        kernel: Any = None,
        signal_ready: SignalReady | None = None,
        register_provider_mode: ProviderModeRegistrar | None = None,
        load_from_dependency: DependencyLoader | None = None,
    ) -> None:
        self._manager = manager
        self.kernel = kernel
        self._signal_ready = signal_ready
        self._register_provider_mode = register_provider_mode
        self._load_from_dependency = load_from_dependency
        # Key: full_key -> share payload
        self._ready: dict[str, Any] = {}
        self._deferred: list[DeferredGroup] = []

    # --- readiness -------------------------------------------------------

    def set_ready(self, full_key: str, share: Any) -> None:
        self._ready[full_key] = share

    def is_ready(self, full_key: str) -> bool:
        return full_key in self._ready

    def get_ready_extensions(self) -> dict[str, Any]:
        return dict(self._ready)

    def get_deferred_groups(self) -> list[DeferredGroup]:
        return list(self._deferred)

    def _check_single(self, cc: CallContext) -> bool:
        """Mark cc ready and hand it the share if its extension is ready."""
        key = cc.reg.full_key
        if key not in self._ready:
            return False
        share = self._ready[key]
        cc.runtime.share = share
        cc.runtime.shares[cc.reg.name] = share
        cc.status = CallStatus.READY
        return True

    def _check_all(self, contexts: list[CallContext]) -> bool:
        """True when every context is ready or skipped. Visits every context."""
        results = [self._check_single(cc) or cc.status is CallStatus.SKIP for cc in contexts]
        return all(results)

    def _enqueue(self, contexts: list[CallContext], resume_mode: ResumeMode) -> bool:
        """Park the group unless one with the same key set is already parked."""
        key = group_key(contexts)
        if any(g.key == key for g in self._deferred):
            logger.debug("Deferred group %s already queued", key)
            return False
        self._deferred.append(DeferredGroup(contexts, resume_mode, key))
        logger.debug("Deferred group %s (%s)", key, resume_mode.value)
        return True

    def process_ready_extension(self, ready_key: str, share: Any) -> list[DeferredGroup]:
        """Record ready_key and pop, in queue order, every group that can now resume."""
        self.set_ready(ready_key, share)
        resumes: list[DeferredGroup] = []
        remaining: list[DeferredGroup] = []
        for group in self._deferred:
            if self._check_all(group.contexts):
                resumes.append(group)
            else:
                remaining.append(group)
        self._deferred = remaining
        if resumes:
            logger.debug("%s ready, resuming %d group(s)", ready_key, len(resumes))
        return resumes

    async def _signal(self, cc: CallContext, share: Any) -> None:
        self.set_ready(cc.reg.full_key, share)
        if self._signal_ready is not None:
            await self._signal_ready(cc, share)

    # --- group protocol --------------------------------------------------

    async def _run_setups(self, contexts: list[CallContext]) -> bool:
        """Invoke setup on every non-skipped context. Returns True if the group must defer."""
        deferred = False
        for cc in contexts:
            ext = cc.reg.extension
            if cc.status is CallStatus.SKIP or not isinstance(ext, SetupHook):
                continue
            logger.debug("Setup %s for %s", cc.reg.registry_key, cc.unit.key)
            result = SetupResult.coerce(await maybe_await(ext.setup(cc)))
            if result is None:
                continue
            if result.status == CallStatus.READY:
                if not self.is_ready(cc.reg.full_key):
                    await self._signal(cc, result.share)
                self._check_single(cc)
            elif result.status == CallStatus.DEFER:
                if cc.request.require_ready:
                    deferred = True
                else:
                    logger.debug("Soft request %s deferred; skipping it", cc.reg.registry_key)
                    cc.status = CallStatus.SKIP
        return deferred

    async def _initialize(self, contexts: list[CallContext]) -> InitResult:
        first = contexts[0]
        initialize = getattr(first.module, "initialize", None)
        if initialize is None:
            return InitResult()
        logger.debug("Initialize %s", first.unit.key)
        result = InitResult.coerce(await maybe_await(initialize(first.runtime)))
        if result.mode and self._register_provider_mode is not None:
            for cc in contexts:
                self._register_provider_mode(cc.unit.name, cc.reg.name, result.mode)
            logger.debug("%s registered as %s", first.unit.name, result.mode)
        return result

    async def _apply(self, contexts: list[CallContext]) -> None:
        for cc in contexts:
            ext = cc.reg.extension
            if cc.status is CallStatus.SKIP or not isinstance(ext, ApplyHook):
                continue
            logger.debug("Apply %s to %s", cc.reg.registry_key, cc.unit.key)
            await maybe_await(ext.apply(cc))

    async def _execute(self, contexts: list[CallContext]) -> None:
        first = contexts[0]
        override = self.find_execution_override(first.unit, first.module)
        if override is not None:
            logger.debug("%s overrides execute for %s", override.registry_key, first.unit.key)
            cc = self._auto_context(override, first.unit, first.module, first.runtime)
            await maybe_await(override.extension.override_execute(cc))
            return
        execute = getattr(first.module, "execute", None)
        if execute is not None:
            logger.debug("Execute %s", first.unit.key)
            await maybe_await(execute(first.runtime))

    async def call_extensions(
        self,
        contexts: list[CallContext],
        tries: int = 0,
        resume_mode: ResumeMode = ResumeMode.FULL,
    ) -> CallStatus:
        """Run one group. Returns READY when the unit ran, DEFER when the group was parked.

        Raises ExtensionError(EXTENSION_SETUP_FAILED) once MAX_TRIES attempts deferred.
        """
        if not contexts:
            logger.debug("No extension contexts to call")
            return CallStatus.READY
        unit = contexts[0].unit

        if tries >= MAX_TRIES:
            keys = [cc.reg.registry_key for cc in contexts]
            logger.error("Extension setup for %s failed after %d tries: %s", unit.key, tries, keys)
            raise ExtensionError(
                KernelErrorCode.EXTENSION_SETUP_FAILED,
                f"Extension setup failed after {tries} tries: {', '.join(keys)}",
                unit_name=unit.name,
                registry_keys=keys,
            )

        self._check_all(contexts)
        deferred = await self._run_setups(contexts)

        if deferred:
            if self._check_all(contexts):
                return await self.call_extensions(contexts, tries + 1, resume_mode)
            self._enqueue(contexts, resume_mode)
            return CallStatus.DEFER

        if resume_mode is ResumeMode.FULL:
            init = await self._initialize(contexts)
            if init.status == CallStatus.DEFER:
                if self._check_all(contexts):
                    return await self.call_extensions(contexts, tries + 1, resume_mode)
                if init.defer_ok:
                    # Execute now; apply runs when the group resumes
                    logger.info(
                        "%s continues while %s are deferred", unit.key, group_key(contexts)
                    )
                    self._enqueue(contexts, ResumeMode.EXTENSIONS_ONLY)
                    await self._execute(contexts)
                    return CallStatus.READY
                self._enqueue(contexts, resume_mode)
                return CallStatus.DEFER

        await self._apply(contexts)
        if resume_mode is ResumeMode.FULL:
            await self._execute(contexts)
        return CallStatus.READY

    # --- entry points used by the kernel ----------------------------------

    async def use_extensions_on_module(self, usage: ExtensionUsage, unit: Unit) -> CallStatus:
        """Build call contexts for usage's requests and run them as one group."""
        runtime = UnitRuntime(unit)
        contexts: list[CallContext] = []
        for request in usage.requests:
            if request.path and request.provider and self._load_from_dependency is not None:
                await self._load_from_dependency(request.provider, request.path)
            reg = self._manager.get_extension(request.name, request.provider)
            if not reg.is_found:
                error = ExtensionError(
                    KernelErrorCode.EXTENSION_NOT_FOUND,
                    f"Extension {request.name} not found for {unit.key}",
                    extension_name=request.name,
                    provider=request.provider,
                    unit_name=unit.name,
                )
                logger.warning("%s", error.to_detailed_string())
                continue
            contexts.append(
                CallContext(
                    unit=unit,
                    reg=reg,
                    runtime=runtime,
                    request=request,
                    module=usage.module,
                    kernel=self.kernel,
                )
            )
        if not contexts:
            await self.invoke_module(usage.module, unit)
            return CallStatus.READY
        logger.debug("Calling %d extension(s) for %s", len(contexts), unit.key)
        return await self.call_extensions(contexts)

    def find_execution_override(self, unit: Unit, module: Any) -> ExtensionRegistration | None:
        """First auto-apply registration for the unit's scope that claims module's execution."""
        for reg in self._manager.get_target_extensions(unit.is_extension_provider):
            ext = reg.extension
            if isinstance(ext, ExecutionOverride) and ext.can_override_execution(unit, module):
                return reg
        return None

    def _auto_context(
        self,
        reg: ExtensionRegistration,
        unit: Unit,
        module: Any,
        runtime: UnitRuntime | None = None,
    ) -> CallContext:
        host = reg.host
        return CallContext(
            unit=unit,
            reg=reg,
            runtime=runtime or UnitRuntime(unit),
            request=ExtensionRequest(
                name=reg.name,
                provider=host.name if host else None,
                version=host.version if host else "*",
            ),
            module=module,
            kernel=self.kernel,
            status=CallStatus.READY,
        )

    async def invoke_module(self, module: Any, unit: Unit) -> None:
        """Run a plain module. An execution override takes both initialize and execute."""
        runtime = UnitRuntime(unit)
        override = self.find_execution_override(unit, module)
        if override is not None:
            ext = override.extension
            cc = self._auto_context(override, unit, module, runtime)
            logger.debug("%s overrides execution of %s", override.registry_key, unit.key)
            override_initialize = getattr(ext, "override_initialize", None)
            if override_initialize is not None and hasattr(module, "initialize"):
                await maybe_await(override_initialize(cc))
            if callable(getattr(module, "execute", None)):
                await maybe_await(ext.override_execute(cc))
            return

        initialize = getattr(module, "initialize", None)
        if initialize is not None:
            logger.debug("Initialize %s", unit.key)
            await maybe_await(initialize(runtime))
        execute = getattr(module, "execute", None)
        if execute is not None:
            logger.debug("Execute %s", unit.key)
            await maybe_await(execute(runtime))

    async def apply_auto_scope_extensions(self, unit: Unit, module: Any) -> None:
        """Setup and apply every auto-apply extension for the unit's scope.

        A failing filter, setup or apply is logged and skips only that extension.
        """
        if unit.skip_apply_extensions:
            logger.debug("%s skips auto-apply extensions", unit.key)
            return
        for reg in self._manager.get_target_extensions(unit.is_extension_provider):
            ext = reg.extension
            if isinstance(ext, ApplyFilter):
                try:
                    if not ext.should_apply(unit):
                        logger.debug("%s filtered out %s", reg.registry_key, unit.key)
                        continue
                except Exception as e:
                    self._report(KernelErrorCode.EXTENSION_FILTER_ERROR, reg, unit, e)
                    continue

            logger.debug("Auto-applying %s to %s", reg.registry_key, unit.key)
            cc = self._auto_context(reg, unit, module)
            try:
                if isinstance(ext, SetupHook):
                    result = SetupResult.coerce(await maybe_await(ext.setup(cc)))
                    if result is not None and result.status == CallStatus.READY:
                        await self._signal(cc, result.share)
            except Exception as e:
                self._report(KernelErrorCode.EXTENSION_SETUP_FAILED, reg, unit, e)
                continue
            try:
                if isinstance(ext, ApplyHook):
                    await maybe_await(ext.apply(cc))
            except Exception as e:
                self._report(KernelErrorCode.EXTENSION_APPLY_FAILED, reg, unit, e)

    def _report(
        self,
        code: KernelErrorCode,
        reg: ExtensionRegistration,
        unit: Unit,
        cause: Exception,
    ) -> None:
        error = ExtensionError(
            code,
            f"{code.name} for {reg.registry_key} on {unit.key}: {cause}",
            extension_name=reg.name,
            provider=reg.host.name if reg.host else None,
            unit_name=unit.name,
        )
        logger.error("%s", error.to_detailed_string(), exc_info=cause)

    def clear(self) -> None:
        self._ready.clear()
        self._deferred = []
