"""
Pytest fixtures for transcode gateway tests.

Most tests run against a fake engine: a small shell script written into a
temp dir that mimics ffmpeg's stderr, progress output and exit codes. Its
behaviour is selected with the FAKE_ENGINE_MODE environment variable:

- ok (default): writes a few bytes to the output path and exits 0
- fail: prints an error mentioning the output path and exits 1
- hang: reports progress then sleeps until terminated
- stubborn: like hang, but ignores SIGTERM
- empty: exits 0 without writing any output
- big: writes 1 MiB to the output path

Tests that need a real ffmpeg are marked with @pytest.mark.requires_ffmpeg
and skipped when ffmpeg/ffprobe are not installed.
"""

import shutil
import stat
import subprocess
import tempfile
from pathlib import Path

import pytest

from gateway.api.deps import clear_service_caches
from gateway.config import Settings, get_settings

FFMPEG_AVAILABLE = shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None

FAKE_ENGINE_SCRIPT = """#!/bin/sh
for last; do :; done
echo "Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'input':" >&2
echo "  Duration: 00:00:10.00, start: 0.000000, bitrate: 512 kb/s" >&2
case "$FAKE_ENGINE_MODE" in
  fail)
    echo "[NULL @ 0x55d0] Unable to choose an output format for '$last'" >&2
    echo "$last: Invalid argument" >&2
    exit 1
    ;;
  hang)
    echo "out_time_us=1000000"
    echo "progress=continue"
    exec sleep 30
    ;;
  stubborn)
    trap '' TERM
    echo "out_time_us=1000000"
    echo "progress=continue"
    exec sleep 30
    ;;
  empty)
    exit 0
    ;;
  big)
    head -c 1048576 /dev/zero > "$last"
    echo "progress=end"
    exit 0
    ;;
  *)
    echo "out_time_us=2500000"
    echo "progress=continue"
    printf 'fake-media-bytes' > "$last"
    echo "out_time_us=5000000"
    echo "progress=end"
    exit 0
    ;;
esac
"""


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg and ffprobe on PATH",
    )


def pytest_collection_modifyitems(config, items):
    if FFMPEG_AVAILABLE:
        return
    skip = pytest.mark.skip(reason="ffmpeg/ffprobe not installed")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="gateway_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def work_dir(tmp_path) -> Path:
    """Root directory for workspaces."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def fake_engine(tmp_path) -> Path:
    """Executable that behaves like ffmpeg as far as the runner can tell."""
    path = tmp_path / "bin" / "fake-ffmpeg"
    path.parent.mkdir()
    path.write_text(FAKE_ENGINE_SCRIPT)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def settings(work_dir, fake_engine) -> Settings:
    """Settings pointing at the fake engine and a temp work dir."""
    return Settings(
        _env_file=None,
        work_dir=str(work_dir),
        ffmpeg_path=str(fake_engine),
        janitor_enabled=False,
        manifest_probe_enabled=False,
        terminate_grace_s=1.0,
        disconnect_poll_interval_s=0.05,
    )


@pytest.fixture
def gateway_env(monkeypatch, work_dir, fake_engine):
    """Environment for app-level tests, with every cached service reset."""
    monkeypatch.setenv("WORK_DIR", str(work_dir))
    monkeypatch.setenv("FFMPEG_PATH", str(fake_engine))
    monkeypatch.setenv("JANITOR_ENABLED", "false")
    monkeypatch.setenv("MANIFEST_PROBE_ENABLED", "false")
    monkeypatch.setenv("TERMINATE_GRACE_S", "1")
    monkeypatch.setenv("DISCONNECT_POLL_INTERVAL_S", "0.05")
    get_settings.cache_clear()
    clear_service_caches()
    yield work_dir
    get_settings.cache_clear()
    clear_service_caches()


@pytest.fixture
def client(gateway_env):
    """TestClient bound to the app, with lifespan events run."""
    from fastapi.testclient import TestClient

    from gateway.main import app

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture(scope="session")
def sample_video():
    """A 10 second 320x240 test pattern with a sine tone, generated with ffmpeg."""
    if not FFMPEG_AVAILABLE:
        pytest.skip("ffmpeg/ffprobe not installed")
    with tempfile.TemporaryDirectory(prefix="gateway_sample_") as tmpdir:
        path = Path(tmpdir) / "sample.mp4"
        subprocess.run(
            [
                "ffmpeg", "-y", "-hide_banner",
                "-f", "lavfi", "-i", "testsrc=duration=10:size=320x240:rate=25",
                "-f", "lavfi", "-i", "sine=frequency=440:duration=10",
                "-c:v", "libx264", "-pix_fmt", "yuv420p",
                "-c:a", "aac",
                "-shortest",
                str(path),
            ],
            capture_output=True,
            check=True,
        )
        yield path


@pytest.fixture
def real_engine_env(monkeypatch, work_dir):
    """Like gateway_env, but with the real ffmpeg on PATH."""
    monkeypatch.setenv("WORK_DIR", str(work_dir))
    monkeypatch.setenv("FFMPEG_PATH", "ffmpeg")
    monkeypatch.setenv("JANITOR_ENABLED", "false")
    monkeypatch.setenv("MANIFEST_PROBE_ENABLED", "false")
    get_settings.cache_clear()
    clear_service_caches()
    yield work_dir
    get_settings.cache_clear()
    clear_service_caches()
