from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import SessionError

LOG = logging.getLogger(__name__)

MANAGEMENT_RESOURCE = "https://management.azure.com/"
_REFRESH_MARGIN = 300  # seconds


@dataclass
class AzureSession:
    """Credential for Azure Resource Manager calls, created once per process."""

    subscription_id: str
    access_token: str
    expires_on: Optional[float] = None
    refresher: Optional[Callable[[], "AzureSession"]] = None

    @classmethod
    def from_az_cli(cls, subscription_id: Optional[str] = None, *, resource: str = MANAGEMENT_RESOURCE) -> "AzureSession":
        """Borrow a bearer token from a logged-in Azure CLI."""
        cmd = ["az", "account", "get-access-token", "--resource", resource, "-o", "json"]
        if subscription_id:
            cmd.extend(["--subscription", subscription_id])
        LOG.debug("Running: %s", " ".join(cmd[:3]))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=120)
        except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
            raise SessionError(f"Azure CLI token request failed: {exc}") from exc
        if result.returncode != 0:
            raise SessionError(f"Azure CLI token request failed: {result.stderr.strip()[:200]}")
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise SessionError("Azure CLI returned an unreadable token payload") from exc

        subscription = subscription_id or data.get("subscription")
        if not subscription:
            raise SessionError("No subscription id given and the Azure CLI did not report one.")
        expires_on = data.get("expires_on")
        return cls(
            subscription_id=subscription,
            access_token=data["accessToken"],
            expires_on=float(expires_on) if expires_on is not None else None,
            refresher=lambda: cls.from_az_cli(subscription, resource=resource),
        )

    @classmethod
    def from_env(cls, subscription_id: Optional[str] = None) -> Optional["AzureSession"]:
        token = os.environ.get("AZURE_ACCESS_TOKEN")
        subscription = subscription_id or os.environ.get("AZURE_SUBSCRIPTION_ID")
        if not token or not subscription:
            return None
        return cls(subscription_id=subscription, access_token=token)

    @property
    def expired(self) -> bool:
        if self.expires_on is None:
            return False
        return time.time() >= self.expires_on - _REFRESH_MARGIN

    def headers(self) -> Dict[str, str]:
        if self.expired and self.refresher:
            LOG.info("Refreshing Azure access token")
            fresh = self.refresher()
            self.access_token = fresh.access_token
            self.expires_on = fresh.expires_on
        return {"Authorization": f"Bearer {self.access_token}"}


def open_session(subscription_id: Optional[str] = None) -> AzureSession:
    """Prefer an explicit token from the environment, then fall back to the Azure CLI."""
    session = AzureSession.from_env(subscription_id)
    if session:
        LOG.debug("Using access token from AZURE_ACCESS_TOKEN")
        return session
    return AzureSession.from_az_cli(subscription_id)
