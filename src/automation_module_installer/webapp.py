"""ASGI entry point: ``uvicorn automation_module_installer.webapp:build_app --factory``."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from .config import build_config
from .history import InstallHistory
from .registry import RegistryClient
from .web import create_app


def _history_path() -> Path:
    env_path = os.environ.get("HISTORY_DB")
    if env_path:
        return Path(env_path)
    return Path("history.db")


def _config_path() -> Optional[Path]:
    env_path = os.environ.get("INSTALLER_CONFIG")
    return Path(env_path) if env_path else None


def build_app() -> FastAPI:
    config = build_config(config_file=_config_path())
    history = InstallHistory(_history_path())
    return create_app(history, registry=RegistryClient(config), config=config)
