from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from packaging.version import InvalidVersion, Version


class ConstraintKind(str, Enum):
    EXACT = "exact"
    MINIMUM = "minimum"
    LATEST = "latest"


class InstallationStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    SUBMITTED = "Submitted"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (InstallationStatus.SUCCEEDED, InstallationStatus.FAILED)


@dataclass(frozen=True)
class DependencySpec:
    name: str
    constraint_kind: ConstraintKind = ConstraintKind.LATEST
    constraint_version: Optional[str] = None

    def __post_init__(self) -> None:
        needs_version = self.constraint_kind in (ConstraintKind.EXACT, ConstraintKind.MINIMUM)
        if needs_version and not self.constraint_version:
            raise ValueError(f"{self.constraint_kind.value} constraint on {self.name} requires a version")
        if not needs_version and self.constraint_version:
            raise ValueError(f"latest constraint on {self.name} cannot carry a version")

    @classmethod
    def exact(cls, name: str, version: str) -> "DependencySpec":
        return cls(name=name, constraint_kind=ConstraintKind.EXACT, constraint_version=version)

    @classmethod
    def minimum(cls, name: str, version: str) -> "DependencySpec":
        return cls(name=name, constraint_kind=ConstraintKind.MINIMUM, constraint_version=version)

    def __str__(self) -> str:
        if self.constraint_kind == ConstraintKind.EXACT:
            return f"{self.name}=={self.constraint_version}"
        if self.constraint_kind == ConstraintKind.MINIMUM:
            return f"{self.name}>={self.constraint_version}"
        return self.name


@dataclass
class ModuleDescriptor:
    name: str
    version: str
    repository: str
    dependencies: List[DependencySpec] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, Version, str]:
        return module_key(self.name, self.version, self.repository)


@dataclass
class ResolvedEntry:
    descriptor: ModuleDescriptor
    depth: int = 0


@dataclass
class PlannedModule:
    name: str
    version: str
    repository: str
    phase: int
    status: InstallationStatus = InstallationStatus.NOT_STARTED
    detail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def advance(self, status: InstallationStatus, detail: Optional[str] = None) -> bool:
        """Move to ``status`` unless that would leave a terminal state or return to NotStarted."""
        if self.is_terminal or status == InstallationStatus.NOT_STARTED:
            return False
        self.status = status
        if detail is not None:
            self.detail = detail
        return True


@dataclass
class InstallationPhase:
    index: int
    members: List[PlannedModule] = field(default_factory=list)

    @property
    def pending(self) -> List[PlannedModule]:
        return [module for module in self.members if not module.is_terminal]

    def snapshot(self) -> List[PlannedModule]:
        return [
            PlannedModule(
                name=m.name,
                version=m.version,
                repository=m.repository,
                phase=m.phase,
                status=m.status,
                detail=m.detail,
            )
            for m in self.members
        ]


@dataclass
class InstalledModule:
    name: str
    version: Optional[str]
    provisioning_state: Optional[str] = None


def module_key(name: str, version: str, repository: str) -> Tuple[str, Version, str]:
    return (name.lower(), parse_version(version), repository.lower())


def parse_version(version: str) -> Version:
    try:
        return Version(str(version))
    except InvalidVersion as exc:
        raise ValueError(f"Invalid version string: {version}") from exc
