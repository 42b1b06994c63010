from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from .config import ResolutionPolicy
from .errors import CyclicDependencyError, InstallerError, NotFoundError, VersionTooLowError
from .models import ConstraintKind, DependencySpec, ModuleDescriptor, ResolvedEntry, parse_version

LOG = logging.getLogger(__name__)


class ModuleLookup(Protocol):
    def find_module(self, name: str, repository: str, exact_version: Optional[str] = None) -> ModuleDescriptor:
        ...


@dataclass
class ResolutionFailure:
    spec: DependencySpec
    repository: str
    depth: int
    parent: Optional[str]
    error: InstallerError


class DependencyResolver:
    """Expand a module into one entry per occurrence in its dependency tree.

    Every occurrence is looked up again, so a module shared by two parents
    yields two entries (possibly at different depths). Deduplication is the
    planner's job.
    """

    def __init__(
        self,
        registry: ModuleLookup,
        *,
        policy: ResolutionPolicy = ResolutionPolicy.LENIENT,
        max_depth: int = 32,
    ):
        self.registry = registry
        self.policy = policy
        self.max_depth = max_depth
        self.failures: List[ResolutionFailure] = []

    def resolve(
        self,
        module_name: str,
        repository: str,
        constraint: Optional[DependencySpec] = None,
        depth: int = 0,
    ) -> List[ResolvedEntry]:
        spec = constraint or DependencySpec(name=module_name)
        return self._resolve(spec, repository, depth, path=())

    def _resolve(
        self,
        spec: DependencySpec,
        repository: str,
        depth: int,
        path: Tuple[Tuple[str, str], ...],
    ) -> List[ResolvedEntry]:
        key = (spec.name.lower(), repository.lower())
        if key in path:
            raise CyclicDependencyError([name for name, _ in path] + [spec.name.lower()])
        if len(path) >= self.max_depth:
            raise CyclicDependencyError(
                [name for name, _ in path] + [spec.name.lower()],
                reason=f"dependency chain deeper than {self.max_depth}",
            )

        try:
            descriptor = self._lookup(spec, repository)
        except (NotFoundError, VersionTooLowError) as exc:
            if not path or self.policy == ResolutionPolicy.STRICT:
                raise
            parent = path[-1][0]
            LOG.warning("Dropping dependency %s of %s: %s", spec, parent, exc)
            self.failures.append(
                ResolutionFailure(spec=spec, repository=repository, depth=depth, parent=parent, error=exc)
            )
            return []

        LOG.info("Resolved %s -> %s %s (depth %s)", spec, descriptor.name, descriptor.version, depth)
        entries = [ResolvedEntry(descriptor=descriptor, depth=depth)]
        child_path = path + (key,)
        for dependency in descriptor.dependencies:
            # Dependencies are looked up in the parent's repository.
            entries.extend(self._resolve(dependency, repository, depth + 1, child_path))
        return entries

    def _lookup(self, spec: DependencySpec, repository: str) -> ModuleDescriptor:
        if spec.constraint_kind == ConstraintKind.EXACT:
            return self.registry.find_module(spec.name, repository, exact_version=spec.constraint_version)
        descriptor = self.registry.find_module(spec.name, repository)
        if spec.constraint_kind == ConstraintKind.MINIMUM:
            if parse_version(descriptor.version) < parse_version(spec.constraint_version):
                raise VersionTooLowError(spec.name, descriptor.version, spec.constraint_version)
        return descriptor


def root_constraint(module_name: str, version: Optional[str]) -> DependencySpec:
    if version:
        return DependencySpec.exact(module_name, version)
    return DependencySpec(name=module_name)
