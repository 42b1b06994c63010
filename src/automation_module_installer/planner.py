from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Set, Tuple

from packaging.version import Version

from .models import InstallationPhase, PlannedModule, ResolvedEntry


def plan_phases(entries: Iterable[ResolvedEntry]) -> List[InstallationPhase]:
    """Group resolved entries into phases, deepest dependencies first.

    Entries are sorted by depth (descending, stable) before deduplication, so
    a module seen at several depths lands in the phase of its deepest
    occurrence.
    """
    ordered = sorted(entries, key=lambda entry: entry.depth, reverse=True)
    seen: Set[Tuple[str, Version, str]] = set()
    by_phase: Dict[int, List[PlannedModule]] = defaultdict(list)
    for entry in ordered:
        descriptor = entry.descriptor
        if descriptor.key in seen:
            continue
        seen.add(descriptor.key)
        by_phase[entry.depth].append(
            PlannedModule(
                name=descriptor.name,
                version=descriptor.version,
                repository=descriptor.repository,
                phase=entry.depth,
            )
        )
    return [InstallationPhase(index=index, members=by_phase[index]) for index in sorted(by_phase, reverse=True)]


def planned_modules(phases: Iterable[InstallationPhase]) -> List[PlannedModule]:
    return [module for phase in phases for module in phase.members]
