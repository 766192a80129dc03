"""Per-request temporary workspaces.

Each request gets its own directory under ``settings.work_dir`` named
``job_<request_id>_<random>``, holding at most ``input.<ext>`` and
``output.<ext>``. Nothing is ever written to a shared, fixed filename.
"""

import asyncio
import logging
import re
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from gateway.config import Settings, get_settings
from gateway.exceptions import MissingUploadError, UploadTooLargeError, WorkspaceError

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "job_"
_SAFE_EXT_RE = re.compile(r"^[A-Za-z0-9]{1,8}$")
_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_-]")


@dataclass(frozen=True)
class Workspace:
    """Filesystem resources owned by one request."""

    request_id: str
    root: Path
    output_path: Path
    input_path: Optional[Path] = None
    created_at: float = field(default_factory=time.time)

    @property
    def paths(self) -> list[Path]:
        paths = [self.output_path]
        if self.input_path is not None:
            paths.insert(0, self.input_path)
        return paths


class CleanupToken:
    """One-shot capability to release a workspace.

    ``release()`` may be called from any code path, any number of times and
    from any thread; the workspace is released by the first call only.
    """

    def __init__(self, manager: "WorkspaceManager", workspace: Workspace):
        self.manager = manager
        self.workspace = workspace
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Release the workspace.

        Returns:
            True if this call performed the release, False if it had
            already happened. Filesystem errors are logged, never raised.
        """
        with self._lock:
            if self._released:
                return False
            self._released = True
        try:
            self.manager.release(self.workspace)
        except WorkspaceError as e:
            logger.warning("[%s] Workspace cleanup failed: %s", self.workspace.request_id, e)
        return True

    async def release_async(self) -> bool:
        """Run ``release()`` on a worker thread.

        The call is handed to the thread before the first suspension point,
        so the workspace is still released if the awaiting task is cancelled.
        """
        return await asyncio.to_thread(self.release)


class WorkspaceManager:
    """Allocates and releases request workspaces."""

    def __init__(self, base_dir: str | Path | None = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.base_dir = Path(base_dir or self.settings.work_dir)
        self._active: dict[str, Workspace] = {}
        self._lock = threading.Lock()

    def ensure_base_dir(self) -> Path:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"Cannot create work directory: {e}") from e
        return self.base_dir

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        request_id: str,
        has_upload: bool,
        output_ext: str,
        input_ext: str = "mp4",
    ) -> Workspace:
        """Create a fresh workspace directory for a request.

        Args:
            request_id: Request-scoped identifier, used as part of the name
            has_upload: Whether an input path is needed
            output_ext: Extension of the output file
            input_ext: Extension of the input file (ignored without upload)

        Returns:
            The allocated Workspace

        Raises:
            WorkspaceError: If the directory cannot be created
        """
        self.ensure_base_dir()
        safe_id = _SAFE_ID_RE.sub("", request_id)[:64] or "anon"
        try:
            root = Path(tempfile.mkdtemp(prefix=f"{WORKSPACE_PREFIX}{safe_id}_", dir=self.base_dir))
        except OSError as e:
            raise WorkspaceError(f"Cannot allocate workspace: {e}") from e

        out_ext = output_ext.lower().lstrip(".")
        in_ext = input_ext.lower().lstrip(".")
        if not _SAFE_EXT_RE.match(in_ext):
            in_ext = "bin"

        workspace = Workspace(
            request_id=request_id,
            root=root,
            output_path=root / f"output.{out_ext}",
            input_path=root / f"input.{in_ext}" if has_upload else None,
        )
        with self._lock:
            self._active[root.name] = workspace
        logger.debug("[%s] Allocated workspace %s", request_id, root)
        return workspace

    def lease(
        self,
        request_id: str,
        has_upload: bool,
        output_ext: str,
        input_ext: str = "mp4",
    ) -> CleanupToken:
        """Allocate a workspace and wrap it in a CleanupToken."""
        return CleanupToken(self, self.allocate(request_id, has_upload, output_ext, input_ext))

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self, workspace: Workspace) -> None:
        """Delete everything a workspace owns.

        Idempotent: missing files and directories are ignored.

        Raises:
            WorkspaceError: On unexpected filesystem errors. Every path is
                still attempted before the error is raised.
        """
        errors: list[str] = []
        for path in workspace.paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                errors.append(f"{path.name}: {e}")

        try:
            shutil.rmtree(workspace.root)
        except FileNotFoundError:
            pass
        except OSError as e:
            errors.append(f"{workspace.root.name}: {e}")

        with self._lock:
            self._active.pop(workspace.root.name, None)

        if errors:
            raise WorkspaceError("; ".join(errors))
        logger.debug("[%s] Released workspace %s", workspace.request_id, workspace.root)

    # ------------------------------------------------------------------
    # Introspection (used by the janitor)
    # ------------------------------------------------------------------

    def is_active(self, name: str) -> bool:
        """Whether a workspace directory name belongs to an in-flight request."""
        with self._lock:
            return name in self._active

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def receive_upload(self, upload: UploadFile, workspace: Workspace) -> int:
        """Copy an uploaded file into the workspace input path in chunks.

        Returns:
            Number of bytes written

        Raises:
            MissingUploadError: If the upload is empty or the workspace has
                no input path
            UploadTooLargeError: If the upload exceeds ``max_upload_size_mb``
        """
        if workspace.input_path is None:
            raise MissingUploadError()

        max_bytes = self.settings.max_upload_size_mb * 1024 * 1024
        chunk_size = self.settings.upload_chunk_size
        written = 0
        fh = await asyncio.to_thread(open, workspace.input_path, "wb")
        try:
            while True:
                chunk = await upload.read(chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if max_bytes and written > max_bytes:
                    raise UploadTooLargeError(self.settings.max_upload_size_mb)
                await asyncio.to_thread(fh.write, chunk)
        finally:
            fh.close()

        if written == 0:
            raise MissingUploadError()
        logger.info("[%s] Received upload %s (%d bytes)", workspace.request_id, upload.filename, written)
        return written
