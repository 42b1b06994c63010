from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .models import PlannedModule


@dataclass
class Manifest:
    run_id: str
    account: Optional[str]
    resource_group: Optional[str]
    outcome: str  # succeeded, failed, aborted
    modules: List[PlannedModule] = field(default_factory=list)
    error: Optional[str] = None


def write_manifest(manifest: Manifest, path: Path) -> None:
    payload = {
        "run_id": manifest.run_id,
        "account": manifest.account,
        "resource_group": manifest.resource_group,
        "outcome": manifest.outcome,
        "error": manifest.error,
        "modules": [
            {
                "name": module.name,
                "version": module.version,
                "repository": module.repository,
                "phase": module.phase,
                "status": module.status.value,
                "detail": module.detail,
            }
            for module in manifest.modules
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))
