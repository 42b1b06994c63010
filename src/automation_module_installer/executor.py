from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from packaging.version import Version

from .config import PollingSettings
from .errors import PhaseTimeoutError, ProvisioningError, RemovalTimeoutError
from .history import InstallHistory
from .models import InstallationPhase, InstallationStatus, InstalledModule, PlannedModule, parse_version
from .provisioning import status_from_provisioning_state

LOG = logging.getLogger(__name__)


class Provisioner(Protocol):
    def get_installed_module(self, name: str) -> Optional[InstalledModule]:
        ...

    def submit_install(self, name: str, version: str, content_uri: str) -> str:
        ...

    def remove_installed_module(self, name: str) -> None:
        ...


@dataclass
class Clock:
    """Time source and sleeper used by every polling loop."""

    now: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep


def phase_timeout(size: int, polling: PollingSettings) -> float:
    timeout = polling.phase_timeout_base + polling.phase_timeout_per_module * size
    if size > polling.large_phase_threshold:
        return max(polling.phase_timeout_floor, timeout)
    return timeout


class PhaseExecutor:
    """Install planned modules phase by phase, waiting for each phase to settle."""

    def __init__(
        self,
        provisioning: Provisioner,
        content_uri: Callable[[str, str, str], str],
        polling: Optional[PollingSettings] = None,
        *,
        clock: Optional[Clock] = None,
        history: Optional[InstallHistory] = None,
        run_id: str = "local",
        account: Optional[str] = None,
    ):
        self.provisioning = provisioning
        self.content_uri = content_uri
        self.polling = polling or PollingSettings()
        self.clock = clock or Clock()
        self.history = history
        self.run_id = run_id
        self.account = account
        self._phase_started = 0.0
        self._settled: Dict[int, float] = {}

    def execute(self, phases: Iterable[InstallationPhase]) -> List[InstallationPhase]:
        """Run phases in order; the first timeout stops the run and propagates."""
        completed: List[InstallationPhase] = []
        for phase in phases:
            completed.append(self.execute_phase(phase))
        return completed

    def execute_phase(self, phase: InstallationPhase) -> InstallationPhase:
        LOG.info("Starting phase %s with %s module(s)", phase.index, len(phase.members))
        self._phase_started = self.clock.now()
        self._settled = {}
        for module in phase.members:
            self._submit(module)
            if module.is_terminal:
                self._mark_settled(module)

        timeout = phase_timeout(len(phase.members), self.polling)
        started = self.clock.now()
        while True:
            pending = phase.pending
            if not pending:
                break
            elapsed = self.clock.now() - started
            if elapsed >= timeout:
                snapshot = phase.snapshot()
                for module in pending:
                    LOG.error("Phase %s timed out waiting for %s (last status %s)", phase.index, module.name, module.status.value)
                    self._record(module, status="TimedOut")
                raise PhaseTimeoutError(phase.index, timeout, snapshot)
            LOG.info(
                "Phase %s: %s/%s module(s) finished, waiting %ss",
                phase.index,
                len(phase.members) - len(pending),
                len(phase.members),
                self.polling.interval,
            )
            self.clock.sleep(self.polling.interval)
            for module in pending:
                self._refresh(module)
                if module.is_terminal:
                    self._mark_settled(module)

        for module in phase.members:
            self._record(module)
        LOG.info("Phase %s finished", phase.index)
        return phase

    def _submit(self, module: PlannedModule) -> None:
        try:
            installed = self.provisioning.get_installed_module(module.name)
            installed_version = _installed_version(installed)
            if installed_version is not None:
                if installed_version >= parse_version(module.version):
                    LOG.info("%s %s already installed (have %s), skipping", module.name, module.version, installed.version)
                    module.advance(InstallationStatus.SUCCEEDED, f"already installed at {installed.version}")
                    return
                LOG.info("Removing %s %s before installing %s", module.name, installed.version, module.version)
                self._remove(module)
            uri = self.content_uri(module.repository, module.name, module.version)
            LOG.info("Importing %s %s from %s", module.name, module.version, uri)
            state = self.provisioning.submit_install(module.name, module.version, uri)
        except RemovalTimeoutError as exc:
            module.advance(InstallationStatus.FAILED, str(exc))
            self._record(module)
            raise
        except ProvisioningError as exc:
            LOG.error("Could not submit %s %s: %s", module.name, module.version, exc)
            module.advance(InstallationStatus.FAILED, str(exc))
            return

        status = status_from_provisioning_state(state)
        if status == InstallationStatus.UNKNOWN:
            status = InstallationStatus.SUBMITTED
        module.advance(status, f"provisioning state {state}")

    def _remove(self, module: PlannedModule) -> None:
        self.provisioning.remove_installed_module(module.name)
        deadline = self.clock.now() + self.polling.removal_timeout
        while True:
            if self.provisioning.get_installed_module(module.name) is None:
                LOG.info("Removed %s", module.name)
                return
            if self.clock.now() >= deadline:
                raise RemovalTimeoutError(module.name, self.polling.removal_timeout)
            self.clock.sleep(self.polling.removal_interval)

    def _refresh(self, module: PlannedModule) -> None:
        try:
            installed = self.provisioning.get_installed_module(module.name)
        except ProvisioningError as exc:
            LOG.debug("Status read for %s failed: %s", module.name, exc)
            module.advance(InstallationStatus.UNKNOWN, str(exc))
            return
        if installed is None:
            module.advance(InstallationStatus.UNKNOWN, "module not reported by the account")
            return
        status = status_from_provisioning_state(installed.provisioning_state)
        if module.advance(status, f"provisioning state {installed.provisioning_state}") and status.is_terminal:
            log = LOG.info if status == InstallationStatus.SUCCEEDED else LOG.error
            log("%s %s finished: %s", module.name, module.version, installed.provisioning_state)

    def _mark_settled(self, module: PlannedModule) -> None:
        self._settled[id(module)] = self.clock.now() - self._phase_started

    def _record(self, module: PlannedModule, status: Optional[str] = None) -> None:
        if not self.history:
            return
        elapsed = self._settled.get(id(module), self.clock.now() - self._phase_started)
        self.history.record_result(
            run_id=self.run_id,
            account=self.account,
            name=module.name,
            version=module.version,
            repository=module.repository,
            phase=module.phase,
            status=status or module.status.value,
            detail=module.detail,
            elapsed=elapsed,
        )


def _installed_version(installed: Optional[InstalledModule]) -> Optional[Version]:
    """Parsed version of an installed module; None when absent or not comparable."""
    if installed is None or not installed.version:
        return None
    try:
        return parse_version(installed.version)
    except ValueError:
        LOG.warning("%s reports unparseable version %r; replacing it", installed.name, installed.version)
        return None
