"""Inspect media files with ffprobe."""

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from gateway.config import get_settings


@dataclass
class MediaInfo:
    """What ffprobe reports about a file."""

    format_name: str = ""
    duration_s: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None

    @property
    def has_video(self) -> bool:
        return self.video_codec is not None

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None


def _run_ffprobe(path: str | Path, ffprobe_path: Optional[str] = None) -> dict:
    cmd = [
        ffprobe_path or get_settings().ffprobe_path,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr.strip()[-500:]}")
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}")


def probe_media(path: str | Path, ffprobe_path: Optional[str] = None) -> MediaInfo:
    """
    Probe a media file.

    Raises:
        RuntimeError: If ffprobe fails or its output cannot be parsed
    """
    data = _run_ffprobe(path, ffprobe_path)
    format_info = data.get("format", {})
    info = MediaInfo(format_name=format_info.get("format_name", ""))
    if "duration" in format_info:
        info.duration_s = float(format_info["duration"])

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and info.video_codec is None:
            info.video_codec = stream.get("codec_name")
            info.width = stream.get("width")
            info.height = stream.get("height")
        elif codec_type == "audio" and info.audio_codec is None:
            info.audio_codec = stream.get("codec_name")
    return info


def get_duration_s(path: str | Path) -> float:
    """Duration in seconds; raises RuntimeError when ffprobe reports none."""
    info = probe_media(path)
    if info.duration_s is None:
        raise RuntimeError(f"Duration not found in: {Path(path).name}")
    return info.duration_s
