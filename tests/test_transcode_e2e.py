"""
End-to-end tests against a real ffmpeg.

Skipped unless ffmpeg and ffprobe are on PATH.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from gateway.utils.media_info import get_duration_s, probe_media

pytestmark = pytest.mark.requires_ffmpeg


@pytest.fixture
def e2e_client(real_engine_env):
    from gateway.main import app

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


def _post_clip(client, sample_video, data: dict):
    with open(sample_video, "rb") as fh:
        return client.post("/api/clip", files={"video": ("sample.mp4", fh, "video/mp4")}, data=data)


def _save(response, temp_output_dir, name: str):
    path = temp_output_dir / name
    path.write_bytes(response.content)
    return path


class TestClipE2E:
    """Real clips cut out of a generated test pattern."""

    def test_clip_duration(self, e2e_client, sample_video, temp_output_dir):
        response = _post_clip(e2e_client, sample_video, {"start": "2", "duration": "3"})

        assert response.status_code == 200, response.text
        info = probe_media(_save(response, temp_output_dir, "clip.mp4"))
        assert info.has_video
        assert info.has_audio
        assert abs(info.duration_s - 3.0) <= 0.5

    def test_default_window_is_five_seconds(self, e2e_client, sample_video, temp_output_dir):
        response = _post_clip(e2e_client, sample_video, {})

        assert response.status_code == 200, response.text
        assert abs(get_duration_s(_save(response, temp_output_dir, "default.mp4")) - 5.0) <= 0.5

    def test_webm_output(self, e2e_client, sample_video, temp_output_dir):
        response = _post_clip(e2e_client, sample_video, {"duration": "1", "format": "webm"})

        assert response.status_code == 200, response.text
        assert response.headers["content-type"] == "video/webm"
        info = probe_media(_save(response, temp_output_dir, "clip.webm"))
        assert "webm" in info.format_name or "matroska" in info.format_name

    def test_audio_only_output(self, e2e_client, sample_video, temp_output_dir):
        response = _post_clip(e2e_client, sample_video, {"duration": "1", "format": "mp3"})

        assert response.status_code == 200, response.text
        info = probe_media(_save(response, temp_output_dir, "clip.mp3"))
        assert info.has_audio
        assert not info.has_video

    def test_corrupt_upload_reports_engine_failure(self, e2e_client, real_engine_env):
        response = e2e_client.post(
            "/api/clip",
            files={"video": ("broken.mp4", b"definitely not a video", "video/mp4")},
        )

        assert response.status_code == 500
        assert response.text.startswith("Video processing failed")
        assert str(real_engine_env) not in response.text
        assert not [p for p in real_engine_env.iterdir() if p.name.startswith("job_")]

    def test_concurrent_clips_do_not_interfere(self, e2e_client, sample_video, temp_output_dir, real_engine_env):
        windows = [("0", "1"), ("1", "2"), ("2", "3"), ("3", "4")]

        with ThreadPoolExecutor(max_workers=4) as pool:
            responses = list(
                pool.map(
                    lambda w: _post_clip(e2e_client, sample_video, {"start": w[0], "duration": w[1]}),
                    windows,
                )
            )

        request_ids = {r.headers["X-Request-ID"] for r in responses}
        assert len(request_ids) == len(windows)
        for (_, duration), response in zip(windows, responses):
            assert response.status_code == 200, response.text
            info = probe_media(_save(response, temp_output_dir, f"{response.headers['X-Request-ID']}.mp4"))
            assert abs(info.duration_s - float(duration)) <= 0.5
        assert not [p for p in real_engine_env.iterdir() if p.name.startswith("job_")]


class TestOverlayE2E:
    """Text overlay rendered by a real ffmpeg."""

    def test_overlay_keeps_dimensions(self, e2e_client, sample_video, temp_output_dir):
        with open(sample_video, "rb") as fh:
            response = e2e_client.post(
                "/api/add-text-on-top",
                files={"video": ("sample.mp4", fh, "video/mp4")},
                data={"text": "Hello, World; 100% [ok]", "box_height": "60", "font_size": "24"},
            )

        if response.status_code == 500 and "drawtext" in response.text:
            pytest.skip("ffmpeg built without drawtext/fontconfig")
        assert response.status_code == 200, response.text
        info = probe_media(_save(response, temp_output_dir, "overlay.mp4"))
        assert (info.width, info.height) == (320, 240)
        assert abs(info.duration_s - 10.0) <= 0.5
