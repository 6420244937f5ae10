from __future__ import annotations

import os
from pathlib import Path

AGENT_DIR = ".agent"
FEATURES_FILE = "features.json"
PROGRESS_FILE = "progress.md"
AGENT_SUBDIRS = ("sessions", "screenshots", "runs")


def project_dir() -> Path:
    override = os.environ.get("LRA_PROJECT_DIR")
    return Path(override).expanduser() if override else Path.cwd()


def agent_dir(root: Path | None = None) -> Path:
    return (root or project_dir()) / AGENT_DIR


def features_path(root: Path | None = None) -> Path:
    return agent_dir(root) / FEATURES_FILE


def progress_path(root: Path | None = None) -> Path:
    return agent_dir(root) / PROGRESS_FILE


def ensure_agent_dir(root: Path | None = None) -> Path:
    base = agent_dir(root)
    base.mkdir(parents=True, exist_ok=True)
    for subdir in AGENT_SUBDIRS:
        (base / subdir).mkdir(parents=True, exist_ok=True)
    return base


def screenshots_dir(override: str | Path | None = None) -> Path:
    if override:
        candidate = Path(override).expanduser()
        return candidate if candidate.is_absolute() else project_dir() / candidate
    return agent_dir() / "screenshots"


def runs_dir() -> Path:
    return agent_dir() / "runs"
