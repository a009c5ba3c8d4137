"""Tests for ExtensionExecutor: group protocol, deferral, resume, auto-apply, overrides."""

from typing import Any

import pytest

from fynmesh.errors import ExtensionError, KernelErrorCode
from fynmesh.extensions import (
    CallContext,
    CallStatus,
    ExtensionExecutor,
    ExtensionManager,
    ResumeMode,
    SetupResult,
)
from fynmesh.extensions.usage import ExtensionRequest, ExtensionUsage
from fynmesh.unit import InitResult, Unit, UnitRuntime
from helpers import make_cc, make_reg, make_unit


class FakeExtension:
    """Setup answers come from `answers` in order; ready(share) once they run out."""

    def __init__(self, name: str, answers: list[Any] | None = None, scope: list[str] | None = None):
        self.name = name
        self.answers = list(answers or [])
        self.share = {"from": name}
        self.setup_calls = 0
        self.applied: list[str] = []
        if scope is not None:
            self.auto_apply_scope = scope

    def setup(self, context: CallContext) -> Any:
        self.setup_calls += 1
        if self.answers:
            return self.answers.pop(0)
        return SetupResult.ready(self.share)

    def apply(self, context: CallContext) -> None:
        self.applied.append(context.unit.name)


class FakeModule:
    def __init__(self, init_result: Any = None) -> None:
        self.init_result = init_result
        self.calls: list[str] = []
        # (hook, runtime.share at call time)
        self.seen: list[tuple[str, Any]] = []
        self.runtime: UnitRuntime | None = None

    def initialize(self, runtime: UnitRuntime) -> Any:
        self.calls.append("initialize")
        self.seen.append(("initialize", runtime.share))
        return self.init_result

    def execute(self, runtime: UnitRuntime) -> None:
        self.calls.append("execute")
        self.seen.append(("execute", runtime.share))
        self.runtime = runtime


class Recorder:
    """Collects signal_ready and register_provider_mode callbacks."""

    def __init__(self) -> None:
        self.signals: list[tuple[str, Any]] = []
        self.modes: list[tuple[str, str, str]] = []

    async def signal(self, cc: CallContext, share: Any) -> None:
        self.signals.append((cc.reg.full_key, share))

    def mode(self, unit_name: str, extension_name: str, mode: str) -> None:
        self.modes.append((unit_name, extension_name, mode))


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def executor(recorder: Recorder) -> ExtensionExecutor:
    return ExtensionExecutor(
        ExtensionManager(), signal_ready=recorder.signal, register_provider_mode=recorder.mode
    )


class TestCallExtensions:
    """One group: setup, initialize, apply, execute."""

    @pytest.mark.asyncio
    async def test_ready_runs_everything(self, executor: ExtensionExecutor, recorder: Recorder) -> None:
        ext = FakeExtension("counter")
        module = FakeModule()
        cc = make_cc(make_reg(ext), make_unit("app"), module)

        status = await executor.call_extensions([cc])

        assert status is CallStatus.READY
        assert module.calls == ["initialize", "execute"]
        assert ext.applied == ["app"]
        assert recorder.signals == [("ext-host@1.0.0::counter", {"from": "counter"})]
        assert executor.is_ready("ext-host@1.0.0::counter")
        assert module.runtime is not None
        assert module.runtime.shares == {"counter": {"from": "counter"}}

    @pytest.mark.asyncio
    async def test_empty_group_is_ready(self, executor: ExtensionExecutor) -> None:
        assert await executor.call_extensions([]) is CallStatus.READY

    @pytest.mark.asyncio
    async def test_already_ready_is_not_signalled_again(
        self, executor: ExtensionExecutor, recorder: Recorder
    ) -> None:
        ext = FakeExtension("counter")
        reg = make_reg(ext)
        executor.set_ready(reg.full_key, {"n": 1})
        module = FakeModule()

        await executor.call_extensions([make_cc(reg, make_unit("app"), module)])

        assert recorder.signals == []
        assert module.runtime.share == {"n": 1}

    @pytest.mark.asyncio
    async def test_repeated_defer_raises(self, executor: ExtensionExecutor) -> None:
        ext = FakeExtension("counter", answers=[SetupResult.defer()] * 5)
        reg = make_reg(ext)
        executor.set_ready(reg.full_key, None)
        module = FakeModule()

        with pytest.raises(ExtensionError) as exc_info:
            await executor.call_extensions([make_cc(reg, make_unit("app"), module)])

        assert exc_info.value.code is KernelErrorCode.EXTENSION_SETUP_FAILED
        assert exc_info.value.registry_keys == ["ext-host::counter"]
        assert ext.setup_calls == 2
        assert ext.applied == []
        assert module.calls == []

    @pytest.mark.asyncio
    async def test_setup_result_from_dict(self, executor: ExtensionExecutor) -> None:
        ext = FakeExtension("counter", answers=[{"status": "ready", "share": 7}])
        module = FakeModule()

        await executor.call_extensions([make_cc(make_reg(ext), make_unit("app"), module)])

        assert module.runtime.share == 7

    @pytest.mark.asyncio
    async def test_provider_mode_registered(
        self, executor: ExtensionExecutor, recorder: Recorder
    ) -> None:
        module = FakeModule(init_result={"mode": "provider"})
        contexts = [
            make_cc(make_reg(FakeExtension("a")), make_unit("app"), module),
            make_cc(make_reg(FakeExtension("b")), make_unit("app"), module),
        ]

        await executor.call_extensions(contexts)

        assert recorder.modes == [("app", "a", "provider"), ("app", "b", "provider")]


class TestDeferral:
    @pytest.mark.asyncio
    async def test_park_and_resume(self, executor: ExtensionExecutor) -> None:
        ext = FakeExtension("counter", answers=[SetupResult.defer()])
        module = FakeModule()
        reg = make_reg(ext)
        cc = make_cc(reg, make_unit("app"), module)

        assert await executor.call_extensions([cc]) is CallStatus.DEFER
        assert ext.applied == []
        assert module.calls == []
        [group] = executor.get_deferred_groups()
        assert group.resume_mode is ResumeMode.FULL
        assert group.key == "ext-host@1.0.0::counter"

        resumes = executor.process_ready_extension(reg.full_key, {"count": 3})
        assert resumes == [group]
        assert executor.get_deferred_groups() == []
        assert cc.status is CallStatus.READY

        status = await executor.call_extensions(group.contexts, 0, group.resume_mode)
        assert status is CallStatus.READY
        assert ext.setup_calls == 2
        assert ext.applied == ["app"]
        assert module.seen == [("initialize", {"count": 3}), ("execute", {"count": 3})]

    @pytest.mark.asyncio
    async def test_same_group_parked_once(self, executor: ExtensionExecutor) -> None:
        reg = make_reg(FakeExtension("counter", answers=[SetupResult.defer()] * 3))
        unit = make_unit("app")

        await executor.call_extensions([make_cc(reg, unit, FakeModule())])
        await executor.call_extensions([make_cc(reg, unit, FakeModule())])
        await executor.call_extensions([make_cc(reg, make_unit("other"), FakeModule())])

        assert len(executor.get_deferred_groups()) == 1

    @pytest.mark.asyncio
    async def test_unrelated_ready_keeps_group_parked(self, executor: ExtensionExecutor) -> None:
        reg = make_reg(FakeExtension("counter", answers=[SetupResult.defer()]))
        await executor.call_extensions([make_cc(reg, make_unit("app"), FakeModule())])

        assert executor.process_ready_extension("other@1.0.0::thing", None) == []
        assert len(executor.get_deferred_groups()) == 1
        assert "other@1.0.0::thing" in executor.get_ready_extensions()

    @pytest.mark.asyncio
    async def test_resumes_in_queue_order(self, executor: ExtensionExecutor) -> None:
        reg = make_reg(FakeExtension("counter", answers=[SetupResult.defer()] * 3))
        for name in ("first", "second", "third"):
            extra = make_reg(FakeExtension(name, answers=[None]))
            executor.set_ready(extra.full_key, None)
            unit = make_unit(name)
            contexts = [make_cc(reg, unit, FakeModule()), make_cc(extra, unit, FakeModule())]
            await executor.call_extensions(contexts)

        resumes = executor.process_ready_extension(reg.full_key, None)

        assert [g.contexts[0].unit.name for g in resumes] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_defer_ok_executes_degraded(self, executor: ExtensionExecutor) -> None:
        ext = FakeExtension("counter", answers=[None])
        module = FakeModule(init_result=InitResult(status="defer", defer_ok=True))
        reg = make_reg(ext)
        cc = make_cc(reg, make_unit("app"), module)

        assert await executor.call_extensions([cc]) is CallStatus.READY
        assert module.calls == ["initialize", "execute"]
        assert ext.applied == []
        [group] = executor.get_deferred_groups()
        assert group.resume_mode is ResumeMode.EXTENSIONS_ONLY

        [resumed] = executor.process_ready_extension(reg.full_key, None)
        await executor.call_extensions(resumed.contexts, 0, resumed.resume_mode)

        assert ext.setup_calls == 2
        assert ext.applied == ["app"]
        assert module.calls == ["initialize", "execute"]

    @pytest.mark.asyncio
    async def test_setup_defer_skips_initialize_even_with_defer_ok(
        self, executor: ExtensionExecutor, recorder: Recorder
    ) -> None:
        ext = FakeExtension("counter", answers=[SetupResult.defer()])
        module = FakeModule(init_result=InitResult(mode="consumer", defer_ok=True))
        cc = make_cc(make_reg(ext), make_unit("app"), module)

        assert await executor.call_extensions([cc]) is CallStatus.DEFER
        assert module.calls == []
        assert recorder.modes == []
        [group] = executor.get_deferred_groups()
        assert group.resume_mode is ResumeMode.FULL

    @pytest.mark.asyncio
    async def test_initialize_can_defer(self, executor: ExtensionExecutor) -> None:
        module = FakeModule(init_result={"status": "defer"})
        reg = make_reg(FakeExtension("other"))
        waiting = make_reg(FakeExtension("counter", answers=[None]), provider="late-host")
        cc = make_cc(waiting, make_unit("app"), module)

        assert await executor.call_extensions([cc]) is CallStatus.DEFER
        assert module.calls == ["initialize"]
        assert executor.process_ready_extension(reg.full_key, None) == []
        assert len(executor.process_ready_extension(waiting.full_key, None)) == 1

    @pytest.mark.asyncio
    async def test_soft_request_is_skipped(self, executor: ExtensionExecutor) -> None:
        ext = FakeExtension("counter", answers=[SetupResult.defer()])
        module = FakeModule()
        cc = make_cc(make_reg(ext), make_unit("app"), module, require_ready=False)

        assert await executor.call_extensions([cc]) is CallStatus.READY
        assert cc.status is CallStatus.SKIP
        assert ext.applied == []
        assert module.calls == ["initialize", "execute"]
        assert executor.get_deferred_groups() == []


class Overrider:
    """Auto-apply extension that takes over execution of matching modules."""

    def __init__(self, name: str = "runner", scope: list[str] | None = None) -> None:
        self.name = name
        self.auto_apply_scope = scope or ["all"]
        self.calls: list[str] = []

    def can_override_execution(self, unit: Unit, module: Any) -> bool:
        return getattr(module, "managed", False)

    def override_initialize(self, context: CallContext) -> None:
        self.calls.append("override_initialize")

    def override_execute(self, context: CallContext) -> None:
        self.calls.append(f"override_execute:{context.unit.name}")


class TestExecutionOverride:
    @pytest.mark.asyncio
    async def test_invoke_module_uses_override(self, executor: ExtensionExecutor) -> None:
        overrider = Overrider()
        executor._manager.register_extension(make_reg(overrider, provider="runtime"))
        module = FakeModule()
        module.managed = True

        await executor.invoke_module(module, make_unit("app"))

        assert overrider.calls == ["override_initialize", "override_execute:app"]
        assert module.calls == []

    @pytest.mark.asyncio
    async def test_invoke_module_without_override(self, executor: ExtensionExecutor) -> None:
        executor._manager.register_extension(make_reg(Overrider(), provider="runtime"))
        module = FakeModule()

        await executor.invoke_module(module, make_unit("app"))

        assert module.calls == ["initialize", "execute"]

    @pytest.mark.asyncio
    async def test_group_execute_uses_override(self, executor: ExtensionExecutor) -> None:
        overrider = Overrider()
        executor._manager.register_extension(make_reg(overrider, provider="runtime"))
        module = FakeModule()
        module.managed = True
        cc = make_cc(make_reg(FakeExtension("counter")), make_unit("app"), module)

        await executor.call_extensions([cc])

        assert module.calls == ["initialize"]
        assert overrider.calls == ["override_execute:app"]

    @pytest.mark.asyncio
    async def test_override_follows_unit_scope(self, executor: ExtensionExecutor) -> None:
        overrider = Overrider(scope=["provider"])
        executor._manager.register_extension(make_reg(overrider, provider="runtime"))
        module = FakeModule()
        module.managed = True
        provider_unit = make_unit("host", exposes={"./extension/tools": {}})

        await executor.invoke_module(module, make_unit("app"))
        await executor.invoke_module(module, provider_unit)

        assert overrider.calls == ["override_initialize", "override_execute:host"]
        assert module.calls == ["initialize", "execute"]


class FilteredExtension(FakeExtension):
    def __init__(self, name: str, allow: Any, scope: list[str]) -> None:
        super().__init__(name, scope=scope)
        self.allow = allow

    def should_apply(self, unit: Unit) -> bool:
        if isinstance(self.allow, Exception):
            raise self.allow
        return self.allow


class BrokenSetup(FakeExtension):
    def setup(self, context: CallContext) -> Any:
        raise RuntimeError("setup exploded")


class TestAutoApply:
    @pytest.mark.asyncio
    async def test_applies_unit_scope(self, executor: ExtensionExecutor, recorder: Recorder) -> None:
        ext = FakeExtension("logger", scope=["unit"])
        provider_only = FakeExtension("audit", scope=["provider"])
        executor._manager.register_extension(make_reg(ext, provider="tools"))
        executor._manager.register_extension(make_reg(provider_only, provider="tools"))

        await executor.apply_auto_scope_extensions(make_unit("app"), FakeModule())

        assert ext.applied == ["app"]
        assert provider_only.applied == []
        assert recorder.signals == [("tools@1.0.0::logger", {"from": "logger"})]

    @pytest.mark.asyncio
    async def test_provider_units_get_provider_scope(self, executor: ExtensionExecutor) -> None:
        unit_only = FakeExtension("logger", scope=["unit"])
        provider_only = FakeExtension("audit", scope=["provider"])
        executor._manager.register_extension(make_reg(unit_only, provider="tools"))
        executor._manager.register_extension(make_reg(provider_only, provider="tools"))

        host = make_unit("host", exposes={"./extension/theme": {}})
        await executor.apply_auto_scope_extensions(host, FakeModule())

        assert provider_only.applied == ["host"]
        assert unit_only.applied == []

    @pytest.mark.asyncio
    async def test_filter_decides(self, executor: ExtensionExecutor) -> None:
        ext = FilteredExtension("logger", allow=False, scope=["unit"])
        executor._manager.register_extension(make_reg(ext, provider="tools"))

        await executor.apply_auto_scope_extensions(make_unit("app"), FakeModule())

        assert ext.setup_calls == 0
        assert ext.applied == []

    @pytest.mark.asyncio
    async def test_failures_are_isolated(
        self, executor: ExtensionExecutor, caplog: pytest.LogCaptureFixture
    ) -> None:
        bad_filter = FilteredExtension("picky", allow=ValueError("filter exploded"), scope=["unit"])
        bad_setup = BrokenSetup("fragile", scope=["unit"])
        good = FakeExtension("logger", scope=["unit"])
        for ext in (bad_filter, bad_setup, good):
            executor._manager.register_extension(make_reg(ext, provider="tools"))

        await executor.apply_auto_scope_extensions(make_unit("app"), FakeModule())

        assert good.applied == ["app"]
        assert bad_filter.applied == []
        assert bad_setup.applied == []
        assert "ExtensionError:2004" in caplog.text
        assert "ExtensionError:2002" in caplog.text
        assert "filter exploded" in caplog.text

    @pytest.mark.asyncio
    async def test_unit_can_opt_out(self, executor: ExtensionExecutor) -> None:
        ext = FakeExtension("logger", scope=["all"])
        executor._manager.register_extension(make_reg(ext, provider="tools"))
        unit = make_unit("app")
        unit.skip_apply_extensions = True

        await executor.apply_auto_scope_extensions(unit, FakeModule())

        assert ext.setup_calls == 0


class TestUseExtensionsOnModule:
    @pytest.mark.asyncio
    async def test_loads_dependency_then_runs_group(self) -> None:
        manager = ExtensionManager()
        ext = FakeExtension("counter")
        loaded: list[tuple[str, str]] = []

        async def load_from_dependency(package_name: str, module_path: str) -> None:
            loaded.append((package_name, module_path))
            manager.register_extension(make_reg(ext, provider=package_name))

        executor = ExtensionExecutor(manager, load_from_dependency=load_from_dependency)
        module = FakeModule()
        usage = ExtensionUsage(
            requests=(ExtensionRequest.parse("-FYNAPP_EXTENSION host extension/counter/counter"),),
            module=module,
        )

        status = await executor.use_extensions_on_module(usage, make_unit("app"))

        assert status is CallStatus.READY
        assert loaded == [("host", "extension/counter/counter")]
        assert ext.applied == ["app"]
        assert module.runtime.shares["counter"] == {"from": "counter"}

    @pytest.mark.asyncio
    async def test_missing_extensions_fall_back_to_plain_run(
        self, executor: ExtensionExecutor, caplog: pytest.LogCaptureFixture
    ) -> None:
        module = FakeModule()
        usage = ExtensionUsage(requests=(ExtensionRequest(name="ghost", provider="nowhere"),), module=module)

        status = await executor.use_extensions_on_module(usage, make_unit("app"))

        assert status is CallStatus.READY
        assert module.calls == ["initialize", "execute"]
        assert "ExtensionError:2001" in caplog.text
        assert "ghost not found for app@1.0.0" in caplog.text

    @pytest.mark.asyncio
    async def test_clear(self, executor: ExtensionExecutor) -> None:
        reg = make_reg(FakeExtension("counter", answers=[SetupResult.defer()]))
        await executor.call_extensions([make_cc(reg, make_unit("app"), FakeModule())])
        executor.set_ready("x@1::y", None)

        executor.clear()

        assert executor.get_deferred_groups() == []
        assert executor.get_ready_extensions() == {}
