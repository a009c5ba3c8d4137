"""Registry resolver contract and a template-based resolver for static hosting layouts."""

from typing import Awaitable, Protocol, runtime_checkable

from fynmesh.resolver.manifest import RegistryResolution
from fynmesh.utils import url_join


@runtime_checkable
class RegistryResolver(Protocol):
    """Maps (name, range) to a concrete version and manifest location.

    Must be deterministic per name+range within one kernel session.
    """

    def __call__(self, name: str, range: str | None = None) -> Awaitable[RegistryResolution]: ...


class TemplateRegistryResolver:
    """Resolves every unit to <base_url>/<name>/dist/<manifest_file>.

    The version is fixed; keying by name is enough when one version is hosted.
    """

    def __init__(
        self,
        base_url: str = "",
        version: str = "0.0.0",
        manifest_file: str = "fynapp.manifest.json",
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._version = version
        self._manifest_file = manifest_file

    async def __call__(self, name: str, range: str | None = None) -> RegistryResolution:
        dist_base = f"{self._base_url}/{name}/dist/"
        return RegistryResolution(
            name=name,
            version=self._version,
            manifest_url=url_join(dist_base, self._manifest_file),
            dist_base=dist_base,
        )
