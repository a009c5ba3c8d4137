"""Manifest resolution: registry lookup, manifest documents, dependency graph and batching."""

from fynmesh.resolver.graph import CyclePolicy, DependencyGraph, topo_batches
from fynmesh.resolver.manifest import (
    ManifestMeta,
    RegistryResolution,
    ResolvedManifest,
    UnitManifest,
    UnitRequest,
    parse_manifest,
)
from fynmesh.resolver.registry import RegistryResolver, TemplateRegistryResolver
from fynmesh.resolver.resolver import ManifestResolver

__all__ = [
    "CyclePolicy",
    "DependencyGraph",
    "ManifestMeta",
    "ManifestResolver",
    "RegistryResolution",
    "RegistryResolver",
    "ResolvedManifest",
    "TemplateRegistryResolver",
    "UnitManifest",
    "UnitRequest",
    "parse_manifest",
    "topo_batches",
]
