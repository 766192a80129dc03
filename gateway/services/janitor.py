"""Background removal of workspaces orphaned by crashes or lost cleanups."""

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from gateway.services.workspace import WORKSPACE_PREFIX, WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counters from one janitor sweep."""

    scanned: int = 0
    removed: int = 0
    skipped_active: int = 0
    failed: int = 0


def _last_modified(path: Path) -> float:
    """Newest mtime of a directory and its immediate children."""
    newest = path.stat().st_mtime
    for child in path.iterdir():
        try:
            newest = max(newest, child.stat().st_mtime)
        except FileNotFoundError:
            continue
    return newest


class Janitor:
    """Deletes ``job_*`` directories older than ``max_age_s``.

    Workspaces registered as active with the manager are never touched,
    whatever their age.
    """

    def __init__(self, manager: WorkspaceManager, interval_s: float, max_age_s: float):
        self.manager = manager
        self.interval_s = interval_s
        self.max_age_s = max_age_s
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        """Remove stale workspace directories once."""
        report = SweepReport()
        base_dir = self.manager.base_dir
        if self.max_age_s <= 0 or not base_dir.is_dir():
            return report

        cutoff = (time.time() if now is None else now) - self.max_age_s
        for child in base_dir.iterdir():
            if not child.name.startswith(WORKSPACE_PREFIX) or not child.is_dir():
                continue
            report.scanned += 1
            if self.manager.is_active(child.name):
                report.skipped_active += 1
                continue

            try:
                if _last_modified(child) >= cutoff:
                    continue
                shutil.rmtree(child)
            except FileNotFoundError:
                continue
            except OSError as exc:
                report.failed += 1
                logger.warning("Failed to remove stale workspace %s: %s", child.name, exc)
                continue
            report.removed += 1
            logger.info("Removed stale workspace %s", child.name)

        if report.removed or report.failed:
            logger.info(
                "Janitor sweep: scanned=%d removed=%d active=%d failed=%d",
                report.scanned,
                report.removed,
                report.skipped_active,
                report.failed,
            )
        return report

    async def run_forever(self) -> None:
        """Sweep every ``interval_s`` seconds until cancelled."""
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await asyncio.to_thread(self.sweep)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Periodic workspace cleanup failed: %s", exc)

    def start(self) -> None:
        if self.running:
            return
        logger.info("Janitor started (interval=%ss, max_age=%ss)", self.interval_s, self.max_age_s)
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
