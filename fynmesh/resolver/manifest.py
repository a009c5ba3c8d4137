"""Unit manifest: Pydantic models for manifest documents and registry results."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Module kind in import-exposed that names an extension module of the dependency
EXTENSION_MODULE_TYPE = "extension"


class UnitRequest(BaseModel):
    """A name plus optional semver range. Used for load requests and manifest `requires`."""

    model_config = ConfigDict(frozen=True)

    name: str
    range: str | None = None


class ExposedModuleInfo(BaseModel):
    """One module a unit imports from another unit's exposes."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = "module"
    require_version: str | None = Field(default=None, alias="requireVersion")


class SharedProviderInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    require_version: str | None = Field(default=None, alias="requireVersion")


class UnitManifest(BaseModel):
    """Manifest schema for fynapp.manifest.json (or the legacy federation.json).

    Accepts the legacy `{"app": {"name", "version"}}` header form as well.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    name: str = ""
    version: str = ""
    requires: list[UnitRequest] = Field(default_factory=list)
    import_exposed: dict[str, dict[str, ExposedModuleInfo]] = Field(
        default_factory=dict, alias="import-exposed"
    )
    shared_providers: dict[str, SharedProviderInfo] = Field(
        default_factory=dict, alias="shared-providers"
    )

    @model_validator(mode="before")
    @classmethod
    def _lift_app_header(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("app"), dict):
            app = data["app"]
            data = {**data}
            data.setdefault("name", app.get("name", ""))
            data.setdefault("version", app.get("version", ""))
        return data

    def import_exposed_versions(self) -> list[tuple[str, str | None]]:
        """(package, requireVersion) per import-exposed package; first module with a version wins."""
        result: list[tuple[str, str | None]] = []
        for package_name, modules in self.import_exposed.items():
            version = next(
                (m.require_version for m in modules.values() if m.require_version),
                None,
            )
            result.append((package_name, version))
        return result

    def extension_imports(self) -> list[tuple[str, str]]:
        """(package, modulePath) for every import-exposed module of type extension."""
        return [
            (package_name, module_path)
            for package_name, modules in self.import_exposed.items()
            for module_path, info in modules.items()
            if info.type == EXTENSION_MODULE_TYPE
        ]


class RegistryResolution(BaseModel):
    """What a registry resolver returns for (name, range)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    version: str
    manifest_url: str = Field(alias="manifestUrl")
    dist_base: str | None = Field(default=None, alias="distBase")


class ManifestMeta(BaseModel):
    """Node metadata cached per name@version; used to derive load URLs."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    manifest_url: str
    dist_base: str


class ResolvedManifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    resolution: RegistryResolution
    manifest: UnitManifest


def parse_manifest(data: Any) -> UnitManifest:
    """Validate a decoded manifest document. Raises ValueError / ValidationError."""
    if isinstance(data, UnitManifest):
        return data
    if not isinstance(data, dict):
        raise ValueError("Manifest must be a JSON object")
    return UnitManifest.model_validate(data)
