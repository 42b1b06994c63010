from __future__ import annotations

from typing import List, Optional

from .models import PlannedModule


class InstallerError(RuntimeError):
    """Base class for failures that stop an installation run."""


class NotFoundError(InstallerError):
    def __init__(self, name: str, repository: str, version: Optional[str] = None):
        target = f"{name}=={version}" if version else name
        super().__init__(f"Module {target} was not found in repository {repository}")
        self.name = name
        self.repository = repository
        self.version = version


class VersionTooLowError(InstallerError):
    def __init__(self, name: str, resolved: str, minimum: str):
        super().__init__(f"Module {name} resolved to {resolved}, below required minimum {minimum}")
        self.name = name
        self.resolved = resolved
        self.minimum = minimum


class CyclicDependencyError(InstallerError):
    def __init__(self, chain: List[str], reason: str = "dependency cycle"):
        super().__init__(f"{reason}: {' -> '.join(chain)}")
        self.chain = chain


class RemovalTimeoutError(InstallerError):
    def __init__(self, name: str, timeout: float):
        super().__init__(f"Module {name} was still present {timeout:g}s after removal was requested")
        self.name = name
        self.timeout = timeout


class PhaseTimeoutError(InstallerError):
    def __init__(self, index: int, timeout: float, snapshot: List[PlannedModule]):
        pending = [m.name for m in snapshot if not m.is_terminal]
        super().__init__(
            f"Phase {index} did not finish within {timeout:g}s; still pending: {', '.join(pending) or 'none'}"
        )
        self.index = index
        self.timeout = timeout
        self.snapshot = snapshot


class ProvisioningError(InstallerError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProvisioningSubmitError(ProvisioningError):
    pass


class SessionError(InstallerError):
    pass
