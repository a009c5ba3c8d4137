"""BootstrapCoordinator: one unit bootstraps at a time; consumers wait for their providers.

Completion arrives as FYNAPP_BOOTSTRAPPED / FYNAPP_BOOTSTRAP_FAILED on the event
bus. The handler releases the lock and passes it straight to the first deferred
unit whose dependencies are satisfied.
"""

import asyncio
import logging
from dataclasses import dataclass

from fynmesh.events import EventBus, KernelTopics
from fynmesh.events.models import Event
from fynmesh.unit import CONSUMER, PROVIDER, Unit

logger = logging.getLogger(__name__)

DEFAULT_BOOTSTRAP_TIMEOUT = 30.0


@dataclass(eq=False)
class DeferredBootstrap:
    unit: Unit
    future: "asyncio.Future[bool]"
    reason: str
    timer: asyncio.TimerHandle | None = None


@dataclass(frozen=True)
class BootstrapState:
    """Snapshot returned by get_bootstrap_state()."""

    bootstrapping: str | None
    deferred: tuple[str, ...]
    bootstrapped: frozenset[str]
    provider_modes: dict[str, dict[str, str]]


class BootstrapCoordinator:
    """Bootstrap lock, deferred queue and provider/consumer bookkeeping for one kernel."""

    def __init__(self, event_bus: EventBus, timeout: float = DEFAULT_BOOTSTRAP_TIMEOUT) -> None:
        self._bus = event_bus
        self.timeout = timeout
        self._bootstrapping: str | None = None
        self._deferred: list[DeferredBootstrap] = []
        self._bootstrapped: set[str] = set()
        # Key: unit name -> {extension name -> "provider" | "consumer"}
        self._modes: dict[str, dict[str, str]] = {}
        event_bus.subscribe(KernelTopics.UNIT_BOOTSTRAPPED, self._on_bootstrap_done, "coordinator")
        event_bus.subscribe(KernelTopics.UNIT_BOOTSTRAP_FAILED, self._on_bootstrap_done, "coordinator")

    @property
    def bootstrapping(self) -> str | None:
        return self._bootstrapping

    def is_bootstrapped(self, name: str) -> bool:
        return name in self._bootstrapped

    def can_bootstrap(self, unit: Unit) -> bool:
        return self._bootstrapping is None and self.dependencies_satisfied(unit)

    def acquire_lock(self, name: str) -> bool:
        """Take the lock. True also when name already holds it (handed over on resume)."""
        if self._bootstrapping is not None and self._bootstrapping != name:
            return False
        self._bootstrapping = name
        logger.debug("%s holds the bootstrap lock", name)
        return True

    def release_lock(self) -> None:
        self._bootstrapping = None

    def register_provider_mode(self, unit_name: str, extension_name: str, mode: str) -> None:
        if mode not in (PROVIDER, CONSUMER):
            raise ValueError(f"mode must be {PROVIDER!r} or {CONSUMER!r}, got {mode!r}")
        self._modes.setdefault(unit_name, {})[extension_name] = mode
        logger.debug("%s is %s for %s", unit_name, mode, extension_name)

    def find_provider(self, extension_name: str, exclude: str) -> str | None:
        for unit_name, modes in self._modes.items():
            if unit_name != exclude and modes.get(extension_name) == PROVIDER:
                return unit_name
        return None

    def dependencies_satisfied(self, unit: Unit) -> bool:
        """A consumer waits while a known provider of the same extension has not bootstrapped."""
        for extension_name, mode in self._modes.get(unit.name, {}).items():
            if mode != CONSUMER:
                continue
            provider = self.find_provider(extension_name, unit.name)
            if provider is not None and provider not in self._bootstrapped:
                logger.debug(
                    "%s waits for provider %s (%s)", unit.name, provider, extension_name
                )
                return False
        return True

    async def defer_bootstrap(self, unit: Unit) -> bool:
        """Queue unit and wait. True when resumed (lock handed over), False on timeout."""
        if self._bootstrapping is not None:
            reason = f"{self._bootstrapping} is currently bootstrapping"
        else:
            reason = "waiting for provider dependencies"
        logger.debug("Deferring bootstrap of %s (%s)", unit.name, reason)

        loop = asyncio.get_running_loop()
        deferred = DeferredBootstrap(unit=unit, future=loop.create_future(), reason=reason)
        deferred.timer = loop.call_later(self.timeout, self._expire, deferred)
        self._deferred.append(deferred)
        try:
            return await deferred.future
        except asyncio.CancelledError:
            if deferred in self._deferred:
                self._deferred.remove(deferred)
            elif self._bootstrapping == unit.name:
                # Cancelled right after the lock was handed over
                self.release_lock()
                self.resume_next()
            raise
        finally:
            deferred.timer.cancel()

    def _expire(self, deferred: DeferredBootstrap) -> None:
        if deferred.future.done():
            return
        if deferred in self._deferred:
            self._deferred.remove(deferred)
        unit = deferred.unit
        logger.error(
            "Bootstrap timeout (%ss): %s gave up %s; skipping it",
            self.timeout,
            unit.name,
            deferred.reason,
        )
        self._bus.publish_nowait(
            KernelTopics.UNIT_BOOTSTRAP_TIMEOUT,
            "coordinator",
            {
                "name": unit.name,
                "version": unit.version,
                "reason": deferred.reason,
                "timeout": self.timeout,
            },
        )
        deferred.future.set_result(False)

    def resume_next(self) -> str | None:
        """If the lock is free, hand it to the first satisfied deferred unit and wake it."""
        if self._bootstrapping is not None:
            return None
        for deferred in self._deferred:
            if deferred.future.done():
                continue
            if self.dependencies_satisfied(deferred.unit):
                self._deferred.remove(deferred)
                self._bootstrapping = deferred.unit.name
                logger.debug("Resuming deferred bootstrap of %s", deferred.unit.name)
                deferred.future.set_result(True)
                return deferred.unit.name
        if self._deferred:
            logger.debug("%d deferred bootstrap(s) still waiting", len(self._deferred))
        return None

    async def _on_bootstrap_done(self, event: Event) -> None:
        name = event.payload.get("name", "")
        self._bootstrapped.add(name)
        if self._bootstrapping == name:
            self.release_lock()
        logger.debug("%s: %s", event.topic, name)
        self.resume_next()

    def get_bootstrap_state(self) -> BootstrapState:
        return BootstrapState(
            bootstrapping=self._bootstrapping,
            deferred=tuple(d.unit.name for d in self._deferred),
            bootstrapped=frozenset(self._bootstrapped),
            provider_modes={k: dict(v) for k, v in self._modes.items()},
        )

    def clear(self) -> None:
        for deferred in self._deferred:
            if deferred.timer is not None:
                deferred.timer.cancel()
            if not deferred.future.done():
                deferred.future.cancel()
        self._deferred = []
        self._bootstrapping = None
        self._bootstrapped.clear()
        self._modes.clear()
