from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import yaml

DEFAULT_REPOSITORY = "PSGallery"
DEFAULT_REPOSITORIES = {DEFAULT_REPOSITORY: "https://www.powershellgallery.com/api/v2"}


class ResolutionPolicy(str, Enum):
    """What to do when a dependency branch cannot be resolved."""

    LENIENT = "lenient"
    STRICT = "strict"


@dataclass
class PollingSettings:
    interval: float = 5  # seconds
    removal_timeout: float = 90  # seconds
    removal_interval: float = 2  # seconds
    phase_timeout_base: float = 300  # seconds
    phase_timeout_per_module: float = 10  # seconds
    phase_timeout_floor: float = 550  # seconds, applied to large phases only
    large_phase_threshold: int = 20


@dataclass
class InstallerConfig:
    automation_account: Optional[str] = None
    resource_group: Optional[str] = None
    subscription_id: Optional[str] = None
    repository: str = DEFAULT_REPOSITORY
    repositories: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_REPOSITORIES))
    resolution_policy: ResolutionPolicy = ResolutionPolicy.LENIENT
    max_depth: int = 32
    polling: PollingSettings = field(default_factory=PollingSettings)
    api_version: str = "2023-11-01"
    management_endpoint: str = "https://management.azure.com"
    request_timeout: int = 60  # seconds

    def feed_url(self, repository: Optional[str] = None) -> str:
        """Return the NuGet v2 feed URL registered for a repository name."""
        name = repository or self.repository
        for key, url in self.repositories.items():
            if key.lower() == name.lower():
                return url.rstrip("/")
        raise ValueError(f"Unknown repository '{name}'. Configure it under [installer.repositories].")


def load_config(path: Optional[Path]) -> Dict:
    """Load a config file from TOML, JSON or YAML."""
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file {path} was not found.")
    if path.suffix in {".toml", ".tml"}:
        return tomllib.loads(path.read_text())
    if path.suffix in {".json"}:
        return json.loads(path.read_text())
    if path.suffix in {".yaml", ".yml"}:
        return yaml.safe_load(path.read_text()) or {}
    raise ValueError(f"Unsupported config format for {path}. Use TOML, JSON or YAML.")


def build_config(
    *,
    automation_account: Optional[str] = None,
    resource_group: Optional[str] = None,
    subscription_id: Optional[str] = None,
    repository: Optional[str] = None,
    config_file: Optional[Path] = None,
    strict: Optional[bool] = None,
    max_depth: Optional[int] = None,
    poll_interval: Optional[float] = None,
    api_version: Optional[str] = None,
    request_timeout: Optional[int] = None,
) -> InstallerConfig:
    """Merge CLI inputs with any file-based configuration."""
    file_data = load_config(config_file)
    cfg = file_data.get("installer", {}) if isinstance(file_data, dict) else {}

    repositories = dict(DEFAULT_REPOSITORIES)
    repositories.update(cfg.get("repositories", {}))

    polling_section = cfg.get("polling", {})
    defaults = PollingSettings()
    polling = PollingSettings(
        interval=poll_interval or polling_section.get("interval", defaults.interval),
        removal_timeout=polling_section.get("removal_timeout", defaults.removal_timeout),
        removal_interval=polling_section.get("removal_interval", defaults.removal_interval),
        phase_timeout_base=polling_section.get("phase_timeout_base", defaults.phase_timeout_base),
        phase_timeout_per_module=polling_section.get("phase_timeout_per_module", defaults.phase_timeout_per_module),
        phase_timeout_floor=polling_section.get("phase_timeout_floor", defaults.phase_timeout_floor),
        large_phase_threshold=polling_section.get("large_phase_threshold", defaults.large_phase_threshold),
    )

    if strict is not None:
        policy = ResolutionPolicy.STRICT if strict else ResolutionPolicy.LENIENT
    else:
        policy = ResolutionPolicy(cfg.get("resolution_policy", ResolutionPolicy.LENIENT.value))

    return InstallerConfig(
        automation_account=automation_account or cfg.get("automation_account"),
        resource_group=resource_group or cfg.get("resource_group"),
        subscription_id=subscription_id or cfg.get("subscription_id"),
        repository=repository or cfg.get("repository", DEFAULT_REPOSITORY),
        repositories=repositories,
        resolution_policy=policy,
        max_depth=max_depth or cfg.get("max_depth", 32),
        polling=polling,
        api_version=api_version or cfg.get("api_version", "2023-11-01"),
        management_endpoint=cfg.get("management_endpoint", "https://management.azure.com"),
        request_timeout=request_timeout or cfg.get("request_timeout", 60),
    )
