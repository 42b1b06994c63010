from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

from .config import InstallerConfig
from .errors import ProvisioningError, ProvisioningSubmitError
from .models import InstallationStatus, InstalledModule
from .session import AzureSession
from .transport import TransportError, send

LOG = logging.getLogger(__name__)

_FAILED_STATES = {"failed", "cancelled", "canceled"}


def status_from_provisioning_state(state: Optional[str]) -> InstallationStatus:
    """Map an Automation module provisioning state onto an installation status."""
    if not state:
        return InstallationStatus.UNKNOWN
    normalized = state.strip().lower()
    if normalized == "succeeded":
        return InstallationStatus.SUCCEEDED
    if normalized in _FAILED_STATES:
        return InstallationStatus.FAILED
    # Creating, ContentValidated, ContentDownloaded, RunningImportModuleRunbook, ...
    return InstallationStatus.SUBMITTED


class ProvisioningClient:
    """Manage modules of one Automation account through Azure Resource Manager."""

    def __init__(self, config: InstallerConfig, session: AzureSession):
        if not config.automation_account or not config.resource_group:
            raise ValueError("An automation account and resource group are required.")
        self.config = config
        self.session = session

    def get_installed_module(self, name: str) -> Optional[InstalledModule]:
        resp = self._call("GET", name)
        if resp.status == 404:
            return None
        if resp.status >= 400:
            raise ProvisioningError(f"Reading module {name} failed ({resp.status}): {_error_text(resp.body)}", resp.status)
        body = resp.json() or {}
        props = body.get("properties") or {}
        return InstalledModule(
            name=body.get("name", name),
            version=props.get("version") or None,
            provisioning_state=props.get("provisioningState"),
        )

    def submit_install(self, name: str, version: str, content_uri: str) -> str:
        payload = {"properties": {"contentLink": {"uri": content_uri, "version": version}}}
        try:
            resp = self._call("PUT", name, payload=payload)
        except ProvisioningError as exc:
            raise ProvisioningSubmitError(str(exc)) from exc
        if resp.status >= 400:
            raise ProvisioningSubmitError(
                f"Import of {name} {version} was rejected ({resp.status}): {_error_text(resp.body)}", resp.status
            )
        body = resp.json() or {}
        state = (body.get("properties") or {}).get("provisioningState") or "Creating"
        LOG.debug("Import of %s %s accepted with state %s", name, version, state)
        return state

    def remove_installed_module(self, name: str) -> None:
        resp = self._call("DELETE", name)
        if resp.status == 404:
            return
        if resp.status >= 400:
            raise ProvisioningError(f"Removing module {name} failed ({resp.status}): {_error_text(resp.body)}", resp.status)

    def module_url(self, name: str) -> str:
        return (
            f"{self.config.management_endpoint.rstrip('/')}/subscriptions/{self.session.subscription_id}"
            f"/resourceGroups/{quote(self.config.resource_group)}"
            f"/providers/Microsoft.Automation/automationAccounts/{quote(self.config.automation_account)}"
            f"/modules/{quote(name)}?api-version={self.config.api_version}"
        )

    def _call(self, method: str, name: str, payload: Optional[dict] = None):
        try:
            return send(
                method,
                self.module_url(name),
                headers=self.session.headers(),
                payload=payload,
                timeout=self.config.request_timeout,
            )
        except TransportError as exc:
            raise ProvisioningError(str(exc)) from exc


def _error_text(body: str) -> str:
    return body.strip()[:300] if body else "no response body"
