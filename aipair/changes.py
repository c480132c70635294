"""
AI Pair Change Tracker

Takes content snapshots of the watched source/test trees and diffs two
snapshots into a ChangeSummary. Whether a touched file counts as a build
descriptor is decided by a pluggable predicate.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable

from loguru import logger

from aipair.state import ChangeSummary

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SKIP_DIRS = {
    ".git", ".ai-pair", ".gradle", ".idea", ".venv", "venv", "env",
    "node_modules", "target", "dist", "build", "__pycache__",
    ".tox", ".mypy_cache", ".pytest_cache", ".ruff_cache",
}

BUILD_FILES = {
    "build.gradle", "build.gradle.kts", "settings.gradle", "settings.gradle.kts",
    "gradle.properties", "pom.xml", "package.json", "pyproject.toml",
    "setup.py", "setup.cfg", "Cargo.toml", "go.mod", "Makefile", "CMakeLists.txt",
}

BuildFilePredicate = Callable[[str], bool]


def is_build_file(rel_path: str) -> bool:
    """Default predicate: well-known build descriptor names."""
    return Path(rel_path).name in BUILD_FILES


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

@dataclass
class Snapshot:
    taken_at: datetime
    files: Dict[str, str] = field(default_factory=dict)  # rel path → content digest


def _digest(path: Path) -> str:
    return hashlib.sha1(path.read_bytes()).hexdigest()


class ChangeTracker:
    """Snapshot/diff collaborator used once per cycle by the orchestrator."""

    def __init__(
        self,
        project_root: Path,
        watch_dirs: Iterable[Path],
        build_file_predicate: BuildFilePredicate = is_build_file,
    ):
        self.project_root = project_root.resolve()
        self.watch_dirs = [Path(d).resolve() for d in watch_dirs]
        self.is_build_file = build_file_predicate

    def snapshot(self) -> Snapshot:
        snap = Snapshot(taken_at=datetime.now(timezone.utc))

        for directory in self.watch_dirs:
            if not directory.is_dir():
                logger.debug(f"[CHANGES] Watched directory missing: {directory}")
                continue
            for path in directory.rglob("*"):
                if not path.is_file():
                    continue
                rel = self._relative(path)
                if any(part in SKIP_DIRS for part in Path(rel).parts[:-1]):
                    continue
                snap.files[rel] = _digest(path)

        # Build descriptors live at the project root, outside src/test
        if self.project_root.is_dir():
            for path in self.project_root.iterdir():
                if path.is_file() and self.is_build_file(path.name):
                    snap.files[self._relative(path)] = _digest(path)

        return snap

    def diff(self, before: Snapshot, after: Snapshot) -> ChangeSummary:
        old, new = set(before.files), set(after.files)
        added = new - old
        modified = {p for p in old & new if before.files[p] != after.files[p]}

        summary = ChangeSummary(
            last_change_time=after.taken_at,
            new_files=added,
            deleted_files=old - new,
            modified_files=modified,
            build_files={p for p in added | modified if self.is_build_file(p)},
        )
        logger.debug(
            f"[CHANGES] +{len(summary.new_files)} -{len(summary.deleted_files)} "
            f"~{len(summary.modified_files)} (build: {len(summary.build_files)})"
        )
        return summary

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.project_root).as_posix()
        except ValueError:
            return path.resolve().as_posix()
