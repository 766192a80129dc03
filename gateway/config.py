import json
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Transcode Gateway"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # Server (PORT is the only override deployments are expected to set)
    host: str = "0.0.0.0"
    port: int = 3000

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "*"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Workspaces
    work_dir: str = str(Path(tempfile.gettempdir()) / "transcode-gateway")

    # Uploads and output
    max_upload_size_mb: int = 500
    upload_chunk_size: int = 1024 * 1024
    stream_chunk_size: int = 64 * 1024
    allowed_output_formats: list[str] = ["mp4", "webm", "mov", "mkv", "avi", "gif", "mp3"]

    # Clip defaults
    default_clip_start_s: float = 0.0
    default_clip_duration_s: float = 5.0

    # Overlay defaults (white box with black text across the top of the frame)
    overlay_default_box_color: str = "white"
    overlay_default_box_height: int = 100
    overlay_default_font_color: str = "black"
    overlay_default_font_size: int = 48
    overlay_max_text_length: int = 200
    overlay_max_box_height: int = 4320
    overlay_max_font_size: int = 512
    overlay_font_file: str = ""

    # Job execution
    job_log_max_lines: int = 500
    diagnostic_max_chars: int = 500
    # Wall-clock ceiling per job in seconds. 0 = no limit.
    job_timeout_s: float = 600.0
    # Soft ceiling on simultaneous engine processes. 0 = unbounded.
    max_concurrent_jobs: int = 4
    disconnect_poll_interval_s: float = 0.5
    terminate_grace_s: float = 5.0

    # Janitor
    janitor_enabled: bool = True
    janitor_interval_s: float = 900.0
    janitor_max_age_s: float = 1800.0

    # Remote manifests
    manifest_probe_enabled: bool = True
    manifest_probe_timeout_s: float = 10.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
