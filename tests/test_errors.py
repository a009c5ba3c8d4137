"""Tests for kernel errors and Result."""

import pytest

from fynmesh.errors import (
    BootstrapError,
    DependencyCycleError,
    ExtensionError,
    KernelError,
    KernelErrorCode,
    ManifestError,
    ModuleLoadError,
    err,
    ok,
)


class TestKernelError:
    def test_codes_grouped_by_kind(self) -> None:
        assert 1000 < KernelErrorCode.EXPOSE_NOT_FOUND < 2000
        assert 2000 < KernelErrorCode.EXTENSION_SETUP_FAILED < 3000
        assert 3000 < KernelErrorCode.BOOTSTRAP_FAILED < 4000
        assert 4000 < KernelErrorCode.MANIFEST_FETCH_FAILED < 5000
        assert 5000 < KernelErrorCode.ENTRY_FAILED < 6000

    def test_context_drops_missing_fields(self) -> None:
        e = ModuleLoadError(
            KernelErrorCode.EXPOSE_NOT_FOUND, "missing", unit_name="app", expose_name="./main"
        )
        assert e.context == {"unit_name": "app", "expose_name": "./main"}
        assert isinstance(e, KernelError)
        assert str(e) == "missing"

    def test_detailed_string_includes_cause(self) -> None:
        try:
            try:
                raise ValueError("bad json")
            except ValueError as cause:
                raise ManifestError(
                    KernelErrorCode.MANIFEST_PARSE_FAILED,
                    "cannot parse",
                    manifest_url="http://x/m.json",
                ) from cause
        except ManifestError as e:
            text = e.to_detailed_string()

        assert text.startswith("[ManifestError:4002] cannot parse")
        assert "http://x/m.json" in text
        assert "Caused by: bad json" in text

    def test_extension_error_keeps_registry_keys(self) -> None:
        e = ExtensionError(
            KernelErrorCode.EXTENSION_SETUP_FAILED, "failed", registry_keys=["p::a", "p::b"]
        )
        assert e.registry_keys == ["p::a", "p::b"]
        assert e.context["registry_keys"] == ["p::a", "p::b"]

    def test_cycle_error_names_stuck_nodes(self) -> None:
        e = DependencyCycleError(["a@1", "b@1"])
        assert e.code is KernelErrorCode.DEPENDENCY_CYCLE
        assert e.stuck == ["a@1", "b@1"]
        assert "a@1, b@1" in str(e)
        assert isinstance(e, ManifestError)


class TestResult:
    def test_ok(self) -> None:
        r = ok(42)
        assert r.is_ok and not r.is_error
        assert r.unwrap() == 42
        assert r.unwrap_or(0) == 42

    def test_err_unwrap_raises_carried_error(self) -> None:
        error = BootstrapError(KernelErrorCode.BOOTSTRAP_FAILED, "nope", unit_name="x")
        r = err(error)
        assert r.is_error
        assert r.unwrap_or("fallback") == "fallback"
        with pytest.raises(BootstrapError):
            r.unwrap()

    def test_err_with_plain_value(self) -> None:
        with pytest.raises(ValueError, match="not-found"):
            err("not-found").unwrap()
