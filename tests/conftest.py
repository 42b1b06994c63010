from typing import Dict, Iterable, List, Optional

from automation_module_installer.errors import NotFoundError, ProvisioningError, ProvisioningSubmitError
from automation_module_installer.executor import Clock
from automation_module_installer.models import DependencySpec, InstalledModule, ModuleDescriptor, parse_version


class FakeRegistry:
    """In-memory registry: ``publish`` versions, then look them up like the real client."""

    def __init__(self):
        self.modules: Dict[str, List[ModuleDescriptor]] = {}
        self.calls: List[tuple] = []

    def publish(self, name: str, version: str, dependencies: Iterable[DependencySpec] = (), repository: str = "PSGallery"):
        descriptor = ModuleDescriptor(name=name, version=version, repository=repository, dependencies=list(dependencies))
        self.modules.setdefault((name.lower(), repository.lower()), []).append(descriptor)
        return descriptor

    def find_module(self, name: str, repository: str, exact_version: Optional[str] = None) -> ModuleDescriptor:
        self.calls.append((name, repository, exact_version))
        versions = self.modules.get((name.lower(), repository.lower()), [])
        if exact_version:
            for descriptor in versions:
                if parse_version(descriptor.version) == parse_version(exact_version):
                    return descriptor
            raise NotFoundError(name, repository, exact_version)
        if not versions:
            raise NotFoundError(name, repository)
        return max(versions, key=lambda d: parse_version(d.version))

    def package_uri(self, repository: str, name: str, version: str) -> str:
        return f"https://registry.test/{repository}/package/{name}/{version}"


class FakeProvisioning:
    """Automation account double that scripts import progress per module."""

    def __init__(
        self,
        installed: Optional[Dict[str, str]] = None,
        progress: Optional[Dict[str, List[str]]] = None,
        submit_errors: Iterable[str] = (),
        flaky_reads: Optional[Dict[str, int]] = None,
        removal_delay: Optional[int] = 0,
    ):
        self.installed = {k.lower(): v for k, v in (installed or {}).items()}
        self.progress = {k.lower(): v for k, v in (progress or {}).items()}
        self.submit_errors = {name.lower() for name in submit_errors}
        self.flaky_reads = {k.lower(): v for k, v in (flaky_reads or {}).items()}
        self.removal_delay = removal_delay
        self.calls: List[tuple] = []
        self._removing: Dict[str, Optional[int]] = {}
        self._imports: Dict[str, List[str]] = {}
        self._import_versions: Dict[str, str] = {}

    def get_installed_module(self, name: str) -> Optional[InstalledModule]:
        key = name.lower()
        self.calls.append(("get", name))
        if key in self._removing:
            remaining = self._removing[key]
            if remaining is not None and remaining <= 0:
                del self._removing[key]
                self.installed.pop(key, None)
            else:
                if remaining is not None:
                    self._removing[key] = remaining - 1
                return InstalledModule(name=name, version=self.installed[key], provisioning_state="Succeeded")
        if key in self._imports:
            if self.flaky_reads.get(key, 0) > 0:
                self.flaky_reads[key] -= 1
                raise ProvisioningError(f"read of {name} failed", 503)
            states = self._imports[key]
            state = states.pop(0) if len(states) > 1 else states[0]
            version = self._import_versions[key] if state == "Succeeded" else None
            return InstalledModule(name=name, version=version, provisioning_state=state)
        if key in self.installed:
            return InstalledModule(name=name, version=self.installed[key], provisioning_state="Succeeded")
        return None

    def submit_install(self, name: str, version: str, content_uri: str) -> str:
        key = name.lower()
        self.calls.append(("submit", name, version, content_uri))
        if key in self.submit_errors:
            raise ProvisioningSubmitError(f"import of {name} rejected", 400)
        self._imports[key] = list(self.progress.get(key, ["Succeeded"]))
        self._import_versions[key] = version
        return "Creating"

    def remove_installed_module(self, name: str) -> None:
        self.calls.append(("remove", name))
        self._removing[name.lower()] = self.removal_delay

    def call_names(self, kind: str) -> List[str]:
        return [call[1] for call in self.calls if call[0] == kind]


class FakeClock:
    def __init__(self):
        self.current = 0.0
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds

    def clock(self) -> Clock:
        return Clock(now=self.now, sleep=self.sleep)


def sample_registry() -> FakeRegistry:
    """A 2.0 -> B (>=1.0), C (==3.0); B -> D (>=1.0)."""
    registry = FakeRegistry()
    registry.publish("A", "2.0", [DependencySpec.minimum("B", "1.0"), DependencySpec.exact("C", "3.0")])
    registry.publish("A", "1.0")
    registry.publish("B", "1.5", [DependencySpec.minimum("D", "1.0")])
    registry.publish("C", "3.0")
    registry.publish("C", "4.0")
    registry.publish("D", "1.0")
    return registry
