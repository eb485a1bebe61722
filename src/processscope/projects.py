"""Group processes by the project they were started from."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import structlog

from processscope.models import ProcessRecord

log = structlog.get_logger()

PROJECT_MARKERS = (
    ".git",
    "package.json",
    "Cargo.toml",
    "go.mod",
    "Gemfile",
    "pyproject.toml",
    "setup.py",
    "Makefile",
    "CMakeLists.txt",
    "Package.swift",
    "build.gradle",
    "pom.xml",
    "composer.json",
    "mix.exs",
    "Dockerfile",
)

# Working directories that never identify a project
_IGNORED_DIRS = {"/", "/usr"}
# Walking up stops at these
_STOP_DIRS = {Path("/"), Path("/Users"), Path("/home")}


@dataclass(frozen=True)
class ProjectGroup:
    """Processes sharing a project root directory."""

    root: str
    processes: tuple[ProcessRecord, ...]

    @property
    def display_name(self) -> str:
        return Path(self.root).name or self.root

    @property
    def count(self) -> int:
        return len(self.processes)


def _has_marker(directory: Path) -> bool:
    # Unreadable directories count as having no marker
    try:
        return any((directory / marker).exists() for marker in PROJECT_MARKERS)
    except OSError as e:
        log.debug("project_marker_unreadable", directory=str(directory), error=str(e))
        return False


def infer_project_root(working_directory: str) -> str:
    """Walk up from a directory until a project marker is found.

    Returns the directory itself when no ancestor looks like a project.
    """
    current = Path(working_directory)
    while current not in _STOP_DIRS and current != current.parent:
        if _has_marker(current):
            return str(current)
        current = current.parent
    return working_directory


def group_by_project(processes: Iterable[ProcessRecord]) -> list[ProjectGroup]:
    """Group processes by inferred project root.

    Processes without a usable working directory are left out. Groups are
    ordered by size (largest first), then by root path.
    """
    groups: dict[str, list[ProcessRecord]] = {}
    for process in processes:
        cwd = process.working_directory
        if not cwd or cwd in _IGNORED_DIRS:
            continue
        groups.setdefault(infer_project_root(cwd), []).append(process)

    result = [
        ProjectGroup(root=root, processes=tuple(sorted(procs, key=lambda p: p.name)))
        for root, procs in groups.items()
    ]
    result.sort(key=lambda g: (-g.count, g.root))
    return result
