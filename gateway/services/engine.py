"""Locate the external media engine."""

import logging
import shutil
from typing import Optional

from gateway.config import Settings, get_settings
from gateway.exceptions import EngineNotFoundError

logger = logging.getLogger(__name__)


class EngineLocator:
    """Resolves the ffmpeg binary once and remembers the answer.

    A missing engine never prevents startup; job endpoints call
    ``require()`` and fail fast instead.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._ffmpeg: Optional[str] = None
        self._ffprobe: Optional[str] = None
        self._resolved = False

    def locate(self) -> Optional[str]:
        """Resolve engine paths, logging the outcome. Safe to call repeatedly."""
        self._ffmpeg = shutil.which(self.settings.ffmpeg_path)
        self._ffprobe = shutil.which(self.settings.ffprobe_path)
        self._resolved = True
        if self._ffmpeg:
            logger.info("FFmpeg path: %s", self._ffmpeg)
        else:
            logger.error("FFmpeg not found (looked for %r)", self.settings.ffmpeg_path)
        return self._ffmpeg

    @property
    def ffmpeg_path(self) -> Optional[str]:
        if not self._resolved:
            self.locate()
        return self._ffmpeg

    @property
    def ffprobe_path(self) -> Optional[str]:
        if not self._resolved:
            self.locate()
        return self._ffprobe

    @property
    def available(self) -> bool:
        return self.ffmpeg_path is not None

    def require(self) -> str:
        """Return the ffmpeg path or raise EngineNotFoundError."""
        path = self.ffmpeg_path
        if path is None:
            # The binary may have been installed since startup.
            path = self.locate()
        if path is None:
            raise EngineNotFoundError(
                f"FFmpeg not found: '{self.settings.ffmpeg_path}' is not on this server"
            )
        return path
