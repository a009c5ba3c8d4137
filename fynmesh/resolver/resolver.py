"""ManifestResolver: fetch and cache unit manifests, build the dependency graph, batch it."""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx
from pydantic import ValidationError

from fynmesh.errors import BootstrapError, KernelErrorCode, ManifestError
from fynmesh.resolver.graph import CyclePolicy, DependencyGraph, topo_batches
from fynmesh.resolver.manifest import (
    ManifestMeta,
    RegistryResolution,
    ResolvedManifest,
    UnitManifest,
    UnitRequest,
    parse_manifest,
)
from fynmesh.resolver.registry import RegistryResolver
from fynmesh.utils import url_dirname, url_join

logger = logging.getLogger(__name__)

PreloadCallback = Callable[[str, int], None]


class ManifestResolver:
    """Manifest cache and graph builder for one kernel session.

    Lookup order for a manifest not yet cached: embedded in the remote entry,
    canonical document, legacy document, synthesized empty manifest.
    """

    def __init__(
        self,
        transport: Any = None,
        http_client: httpx.AsyncClient | None = None,
        http_timeout: float = 10.0,
        on_cycle: CyclePolicy | str = CyclePolicy.FAIL,
        manifest_file: str = "fynapp.manifest.json",
        legacy_manifest_file: str = "federation.json",
        entry_file: str = "fynapp_entry.py",
    ) -> None:
        self._transport = transport
        self._http_client = http_client
        self._owns_client = http_client is None
        self._http_timeout = http_timeout
        self.on_cycle = CyclePolicy.parse(on_cycle)
        self._manifest_file = manifest_file
        self._legacy_manifest_file = legacy_manifest_file
        self._entry_file = entry_file
        self._registry_resolver: RegistryResolver | None = None
        self._preload_callback: PreloadCallback | None = None
        # Key: name@resolvedVersion (registry answer) -> manifest
        self._manifest_cache: dict[str, UnitManifest] = {}
        # Key: name@resolvedVersion -> node key (name@manifest version)
        self._node_keys: dict[str, str] = {}
        self._node_meta: dict[str, ManifestMeta] = {}

    def set_registry_resolver(self, resolver: RegistryResolver) -> None:
        self._registry_resolver = resolver

    def set_preload_callback(self, callback: PreloadCallback | None) -> None:
        """callback(entry_url, depth) is called once per entry URL while building a graph."""
        self._preload_callback = callback

    @property
    def preload_callback(self) -> PreloadCallback | None:
        return self._preload_callback

    @property
    def has_registry_resolver(self) -> bool:
        return self._registry_resolver is not None

    def get_node_meta(self, key: str) -> ManifestMeta | None:
        return self._node_meta.get(key)

    def get_all_node_meta(self) -> dict[str, ManifestMeta]:
        return self._node_meta

    def clear_cache(self) -> None:
        self._manifest_cache.clear()
        self._node_keys.clear()
        self._node_meta.clear()

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def resolve(self, name: str, range: str | None = None) -> RegistryResolution:
        """Ask the registry resolver. Raises BootstrapError when none is installed."""
        if self._registry_resolver is None:
            raise BootstrapError(
                KernelErrorCode.REGISTRY_RESOLVER_MISSING,
                "No registry resolver configured",
                unit_name=name,
            )
        res = await self._registry_resolver(name, range)
        if isinstance(res, dict):
            res = RegistryResolution.model_validate(res)
        return res

    @staticmethod
    def calculate_dist_base(res: RegistryResolution) -> str:
        return res.dist_base or url_dirname(res.manifest_url)

    def entry_url_for(self, res: RegistryResolution) -> str:
        """Entry sits next to the manifest document."""
        if res.manifest_url.endswith(self._manifest_file):
            return res.manifest_url[: -len(self._manifest_file)] + self._entry_file
        return url_join(self.calculate_dist_base(res), self._entry_file)

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._http_timeout)
            self._owns_client = True
        return self._http_client

    async def _fetch_json(self, url: str) -> Any:
        """GET url (http/https) or read it from disk (file:// or plain path) and decode JSON."""
        parsed = urlparse(url)
        try:
            if parsed.scheme in ("http", "https"):
                resp = await self._client().get(url)
                if resp.status_code >= 400:
                    raise ManifestError(
                        KernelErrorCode.MANIFEST_FETCH_FAILED,
                        f"HTTP {resp.status_code} for {url}",
                        manifest_url=url,
                    )
                text = resp.text
            else:
                path = Path(url2pathname(parsed.path)) if parsed.scheme == "file" else Path(url)
                text = path.read_text(encoding="utf-8")
        except (httpx.HTTPError, OSError) as e:
            raise ManifestError(
                KernelErrorCode.MANIFEST_FETCH_FAILED,
                f"Cannot fetch {url}: {e}",
                manifest_url=url,
            ) from e
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestError(
                KernelErrorCode.MANIFEST_PARSE_FAILED,
                f"Invalid JSON in {url}: {e}",
                manifest_url=url,
            ) from e

    async def fetch_manifest(self, url: str) -> UnitManifest:
        data = await self._fetch_json(url)
        try:
            return parse_manifest(data)
        except (ValueError, ValidationError) as e:
            raise ManifestError(
                KernelErrorCode.MANIFEST_PARSE_FAILED,
                f"Invalid manifest {url}: {e}",
                manifest_url=url,
            ) from e

    async def _embedded_manifest(self, res: RegistryResolution) -> UnitManifest | None:
        """Manifest carried by the entry module itself; costs no extra document fetch."""
        if self._transport is None:
            return None
        entry_url = self.entry_url_for(res)
        try:
            entry = await self._transport.import_entry(entry_url)
            embedded = getattr(entry, "manifest", None)
            if embedded:
                return parse_manifest(embedded)
        except Exception as e:
            logger.debug("No embedded manifest in %s: %s", entry_url, e)
        return None

    async def _locate_manifest(self, name: str, res: RegistryResolution) -> UnitManifest:
        manifest = await self._embedded_manifest(res)
        if manifest is not None:
            return manifest
        try:
            return await self.fetch_manifest(res.manifest_url)
        except ManifestError as e1:
            logger.debug("Primary manifest failed for %s: %s", name, e1)
        legacy_url = url_join(url_dirname(res.manifest_url), self._legacy_manifest_file)
        try:
            return await self.fetch_manifest(legacy_url)
        except ManifestError as e2:
            logger.debug("Legacy manifest failed for %s: %s", name, e2)
        logger.info("No manifest for %s@%s; using an empty one", name, res.version)
        return UnitManifest(name=name, version=res.version)

    async def resolve_and_fetch(self, name: str, range: str | None = None) -> ResolvedManifest:
        """Resolve name/range and return its manifest, fetching at most once per name@version."""
        res = await self.resolve(name, range)
        cache_key = f"{res.name}@{res.version}"
        manifest = self._manifest_cache.get(cache_key)
        if manifest is None:
            manifest = await self._locate_manifest(name, res)
            self._manifest_cache[cache_key] = manifest
            self._node_keys[cache_key] = f"{res.name}@{manifest.version or res.version}"
        key = self._node_keys[cache_key]
        self._node_meta[key] = ManifestMeta(
            name=res.name,
            version=manifest.version or res.version,
            manifest_url=res.manifest_url,
            dist_base=self.calculate_dist_base(res),
        )
        return ResolvedManifest(key=key, resolution=res, manifest=manifest)

    def preload(self, url: str, depth: int, seen: set[str]) -> None:
        """Hand url to the preload callback unless it is already in seen."""
        if self._preload_callback is None or url in seen:
            return
        seen.add(url)
        try:
            self._preload_callback(url, depth)
        except Exception as e:
            logger.warning("Preload callback failed for %s: %s", url, e)

    async def build_graph(
        self, requests: Iterable[UnitRequest], preloaded: set[str] | None = None
    ) -> DependencyGraph:
        """Resolve manifests recursively. Edges run dependency -> dependent.

        preloaded holds entry URLs already handed to the preload callback.
        """
        graph = DependencyGraph()
        preloaded = set() if preloaded is None else preloaded

        async def visit(
            name: str, range: str | None, parent_key: str | None, depth: int
        ) -> str:
            resolved = await self.resolve_and_fetch(name, range)
            key = resolved.key
            is_new = graph.add_node(key)
            if parent_key is not None:
                graph.add_edge(key, parent_key)
                self.preload(self.entry_url_for(resolved.resolution), depth, preloaded)
            if not is_new:
                return key

            manifest = resolved.manifest
            for req in manifest.requires:
                await visit(req.name, req.range, key, depth + 1)
            for package_name, version in manifest.import_exposed_versions():
                await visit(package_name, version, key, depth + 1)
            if manifest.shared_providers:
                logger.debug(
                    "Shared providers for %s: %s", key, list(manifest.shared_providers)
                )
            for package_name, info in manifest.shared_providers.items():
                await visit(package_name, info.require_version, key, depth + 1)
            return key

        for req in requests:
            await visit(req.name, req.range, None, 0)

        logger.debug("Dependency graph built: %s", list(graph.nodes))
        return graph

    def topo_batches(self, graph: DependencyGraph) -> list[list[str]]:
        return topo_batches(graph, self.on_cycle)
