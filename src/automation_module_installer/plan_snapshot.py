from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, List

from .models import InstallationPhase


def phases_to_payload(phases: Iterable[InstallationPhase]) -> List[dict]:
    return [
        {
            "phase": phase.index,
            "modules": [
                {
                    "name": module.name,
                    "version": module.version,
                    "repository": module.repository,
                    "status": module.status.value,
                }
                for module in phase.members
            ],
        }
        for phase in phases
    ]


def write_plan_snapshot(phases: List[InstallationPhase], path: Path, *, run_id: str, root: str) -> Path:
    """Serialize the phase plan to JSON before anything is installed."""
    payload = {"run_id": run_id, "root": root, "phases": phases_to_payload(phases)}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))
    return path
