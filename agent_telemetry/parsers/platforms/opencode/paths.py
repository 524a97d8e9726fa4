"""OpenCode storage location and layout detection."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Mapping, Optional


def default_storage_path(
    env: Optional[Mapping[str, str]] = None,
    platform: Optional[str] = None,
    home: Optional[Path] = None,
) -> Path:
    """Where OpenCode keeps `storage/`; XDG_DATA_HOME wins on every platform."""
    env = os.environ if env is None else env
    platform = sys.platform if platform is None else platform
    home = Path.home() if home is None else home

    xdg = env.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "opencode" / "storage"
    if platform == "darwin":
        return home / "Library" / "Application Support" / "opencode" / "storage"
    if platform == "win32":
        local_app_data = env.get("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data) / "opencode" / "storage"
    return home / ".local" / "share" / "opencode" / "storage"


def resolve_storage_path(**kwargs) -> Optional[Path]:
    path = default_storage_path(**kwargs)
    return path if path.is_dir() else None


def detect_storage_layout(storage_path: Path) -> dict:
    """Classify the storage tree as post-migration, legacy, mixed or unknown."""
    migration_version = 0
    migration_file = storage_path / "migration"
    if migration_file.is_file():
        try:
            migration_version = int(migration_file.read_text(encoding="utf-8").strip() or 0)
        except (OSError, ValueError):
            migration_version = 0

    has_post_migration = all((storage_path / name).is_dir() for name in ("session", "message", "part"))
    legacy_dir = storage_path.parent / "project"
    has_legacy = legacy_dir.is_dir()

    if migration_version >= 1 and has_post_migration:
        layout = "post-migration"
    elif has_post_migration and has_legacy:
        layout = "mixed"
    elif has_post_migration:
        layout = "post-migration"
    elif has_legacy:
        layout = "legacy"
    else:
        layout = "unknown"
    return {
        "layout": layout,
        "migrationVersion": migration_version,
        "legacyPaths": [str(legacy_dir)] if has_legacy else [],
    }
