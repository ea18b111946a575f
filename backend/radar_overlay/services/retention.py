"""Count-based retention for flat artifact directories.

Policy is "keep the N most recently modified files matching a pattern,
delete the rest". Content is never inspected. Cleanup is advisory: every
filesystem error is logged and swallowed so it can never fail a request.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RetainedFileSet:
    def __init__(
        self,
        directory: Path,
        pattern: str,
        *,
        exclude: Optional[Callable[[Path], bool]] = None,
        on_delete: Optional[Callable[[Path], None]] = None,
    ) -> None:
        self.directory = Path(directory)
        self.pattern = pattern
        self._exclude = exclude
        self._on_delete = on_delete

    def members(self) -> list[tuple[float, str, Path]]:
        """Matching files as (mtime, name, path), newest first."""
        if not self.directory.is_dir():
            return []
        found: list[tuple[float, str, Path]] = []
        for path in self.directory.glob(self.pattern):
            if self._exclude is not None and self._exclude(path):
                continue
            try:
                if not path.is_file():
                    continue
                mtime = path.stat().st_mtime
            except OSError as exc:
                logger.warning("Skipping unreadable artifact %s: %s", path, exc)
                continue
            found.append((mtime, path.name, path))
        # Name breaks mtime ties so the order is deterministic.
        found.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return found

    def cleanup(self, keep_count: int) -> list[Path]:
        """Delete all but the newest *keep_count* files. Returns deleted paths."""
        keep = max(0, int(keep_count))
        try:
            members = self.members()
        except OSError as exc:
            logger.warning("Retention scan failed for %s: %s", self.directory, exc)
            return []

        deleted: list[Path] = []
        for _, _, path in members[keep:]:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to delete old artifact %s: %s", path, exc)
                continue
            deleted.append(path)
            logger.info("Deleted old artifact: %s", path.name)
            if self._on_delete is not None:
                try:
                    self._on_delete(path)
                except OSError as exc:
                    logger.warning("Post-delete hook failed for %s: %s", path, exc)
        return deleted
