"""Sweep temporary export directories.

Dgraph leaves `export<N>` working directories under its temp root when an
export is streamed to remote storage. The sweeper removes the immediate
children of the root that are directories with a name fully matching the
configured pattern. Files and non-matching directories are never touched.

Deletion has no rollback, so symlinks are not followed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from dgraph_export.errors import CleanupFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SweepResult:
    """Directories removed by one sweep."""

    removed: list[Path] = field(default_factory=list)


class CleanupSweeper:
    def __init__(self, root: Path | str, pattern: str | re.Pattern[str]):
        self.root = Path(root)
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern

    def targets(self) -> list[Path]:
        """List matching directories under the root, computed fresh each call."""
        try:
            with os.scandir(self.root) as entries:
                return sorted(
                    Path(entry.path)
                    for entry in entries
                    if entry.is_dir(follow_symlinks=False) and self.pattern.fullmatch(entry.name)
                )
        except OSError as e:
            raise CleanupFailure(f"cannot list {self.root}: {e}") from e

    def sweep(self) -> SweepResult:
        """Remove all matching directories.

        Removal errors are collected and the sweep continues; CleanupFailure
        is raised afterwards if any entry could not be removed.
        """
        removed: list[Path] = []
        errors: list[tuple[Path, OSError]] = []

        for path in self.targets():
            logger.info("removing directory: %s", path)
            try:
                shutil.rmtree(path)
            except OSError as e:
                logger.error("failed to remove %s: %s", path, e)
                errors.append((path, e))
                continue
            removed.append(path)

        if errors:
            failed = ", ".join(str(path) for path, _ in errors)
            raise CleanupFailure(
                f"failed to remove {len(errors)} of {len(errors) + len(removed)} directories: {failed}",
                errors=errors,
                removed=removed,
            )

        return SweepResult(removed=removed)

    async def asweep(self) -> SweepResult:
        return await asyncio.to_thread(self.sweep)
