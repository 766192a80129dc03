"""HTTP-level tests for the gateway, using the fake engine."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from fastapi.testclient import TestClient

from gateway.api.deps import clear_service_caches, get_job_runner
from gateway.config import get_settings
from gateway.services.job_runner import JobState

VIDEO = ("input.mp4", b"\x00\x00\x00\x18ftypmp42 fake upload", "video/mp4")


def _workspaces(work_dir) -> list:
    return [p for p in work_dir.iterdir() if p.name.startswith("job_")]


class TestServiceEndpoints:
    """Tests for liveness and health."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.text == "FFmpeg API is online"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["engine_available"] is True
        assert data["active_jobs"] == 0

    def test_request_id_is_server_generated(self, client):
        response = client.get("/", headers={"X-Request-ID": "../../etc/passwd"})
        request_id = response.headers["X-Request-ID"]
        assert request_id != "../../etc/passwd"
        assert len(request_id) == 32
        assert "X-Processing-Time-Ms" in response.headers


class TestClip:
    """Tests for POST /api/clip."""

    def test_clip_streams_output(self, client, gateway_env):
        response = client.post(
            "/api/clip",
            files={"video": VIDEO},
            data={"start": "1", "duration": "2"},
        )

        assert response.status_code == 200
        assert response.content == b"fake-media-bytes"
        assert response.headers["content-type"] == "video/mp4"
        request_id = response.headers["X-Request-ID"]
        assert response.headers["content-disposition"] == f'inline; filename="clip_{request_id}.mp4"'
        assert _workspaces(gateway_env) == []

    def test_clip_with_format(self, client):
        response = client.post("/api/clip", files={"video": VIDEO}, data={"format": "webm"})
        assert response.status_code == 200
        assert response.headers["content-type"] == "video/webm"

    def test_missing_video(self, client, gateway_env):
        response = client.post("/api/clip", data={"start": "0"})

        assert response.status_code == 400
        assert response.text == "No video uploaded"
        assert response.headers["X-Error-Code"] == "MISSING_UPLOAD"
        assert response.headers["X-Retryable"] == "false"
        assert response.headers["X-Suggested-Fix"] == "Attach the source file as the multipart field 'video'"
        assert _workspaces(gateway_env) == []

    def test_unsupported_format(self, client, gateway_env):
        response = client.post("/api/clip", files={"video": VIDEO}, data={"format": "exe"})

        assert response.status_code == 400
        assert response.text.startswith("unsupported format")
        assert _workspaces(gateway_env) == []

    def test_non_numeric_start(self, client):
        response = client.post("/api/clip", files={"video": VIDEO}, data={"start": "abc"})

        assert response.status_code == 400
        assert response.headers["X-Error-Code"] == "VALIDATION_ERROR"

    def test_engine_failure(self, client, gateway_env, monkeypatch):
        monkeypatch.setenv("FAKE_ENGINE_MODE", "fail")

        response = client.post("/api/clip", files={"video": VIDEO})

        assert response.status_code == 500
        assert response.text.startswith("Video processing failed: ")
        assert "Invalid argument" in response.text
        assert str(gateway_env) not in response.text
        assert len(response.text) <= len("Video processing failed: ") + 500
        assert response.headers["X-Error-Code"] == "ENGINE_EXECUTION_FAILED"
        assert _workspaces(gateway_env) == []

    def test_engine_exits_cleanly_without_output(self, client, gateway_env, monkeypatch):
        monkeypatch.setenv("FAKE_ENGINE_MODE", "empty")

        response = client.post("/api/clip", files={"video": VIDEO})

        assert response.status_code == 500
        assert _workspaces(gateway_env) == []

    def test_large_output_is_streamed(self, client, gateway_env, monkeypatch):
        monkeypatch.setenv("FAKE_ENGINE_MODE", "big")

        response = client.post("/api/clip", files={"video": VIDEO})

        assert response.status_code == 200
        assert len(response.content) == 1024 * 1024
        assert response.headers["content-length"] == str(1024 * 1024)
        assert _workspaces(gateway_env) == []


class TestMpdToMp4:
    """Tests for POST /api/mpd-to-mp4."""

    def test_json_body(self, client, gateway_env):
        response = client.post("/api/mpd-to-mp4", json={"url": "https://cdn.example.com/a/manifest.mpd"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "video/mp4"
        assert response.content == b"fake-media-bytes"
        assert _workspaces(gateway_env) == []

    def test_form_body(self, client):
        response = client.post("/api/mpd-to-mp4", data={"url": "https://cdn.example.com/a/manifest.mpd"})
        assert response.status_code == 200

    def test_missing_url(self, client):
        response = client.post("/api/mpd-to-mp4", json={})

        assert response.status_code == 400
        assert response.headers["X-Error-Code"] == "MISSING_REQUIRED_FIELD"

    def test_no_body(self, client):
        assert client.post("/api/mpd-to-mp4").status_code == 400

    def test_invalid_scheme(self, client):
        response = client.post("/api/mpd-to-mp4", json={"url": "file:///etc/passwd"})

        assert response.status_code == 400
        assert response.headers["X-Error-Code"] == "INVALID_SOURCE_URL"

    def test_non_string_url(self, client):
        assert client.post("/api/mpd-to-mp4", json={"url": 42}).status_code == 400

    def test_malformed_json(self, client):
        response = client.post(
            "/api/mpd-to-mp4",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400


class TestAddTextOnTop:
    """Tests for POST /api/add-text-on-top."""

    def test_overlay_inline(self, client, gateway_env):
        response = client.post(
            "/api/add-text-on-top",
            files={"video": VIDEO},
            data={"text": "Hello World", "box_color": "#202020", "box_height": "120"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "video/mp4"
        assert response.headers["content-disposition"].startswith('inline; filename="overlay_')
        assert _workspaces(gateway_env) == []

    def test_overlay_download(self, client):
        response = client.post(
            "/api/add-text-on-top",
            files={"video": VIDEO},
            data={"text": "Hello", "download": "true"},
        )

        assert response.status_code == 200
        assert response.headers["content-disposition"].startswith("attachment;")

    def test_missing_text(self, client, gateway_env):
        response = client.post("/api/add-text-on-top", files={"video": VIDEO})

        assert response.status_code == 400
        assert response.headers["X-Error-Code"] == "MISSING_REQUIRED_FIELD"
        assert _workspaces(gateway_env) == []

    @pytest.mark.parametrize("text", ["it's", "a:b", "back\\slash"])
    def test_unsafe_text(self, client, text):
        response = client.post("/api/add-text-on-top", files={"video": VIDEO}, data={"text": text})

        assert response.status_code == 400
        assert response.text == "unsafe overlay text"

    def test_invalid_box_color(self, client):
        response = client.post(
            "/api/add-text-on-top",
            files={"video": VIDEO},
            data={"text": "Hi", "box_color": "white:t=fill"},
        )
        assert response.status_code == 400

    def test_invalid_position(self, client):
        response = client.post(
            "/api/add-text-on-top",
            files={"video": VIDEO},
            data={"text": "Hi", "position": "middle"},
        )
        assert response.status_code == 400

    def test_missing_video(self, client):
        response = client.post("/api/add-text-on-top", data={"text": "Hi"})

        assert response.status_code == 400
        assert response.text == "No video uploaded"


class TestEngineUnavailable:
    """The service starts without an engine and job endpoints fail fast."""

    @pytest.fixture
    def no_engine_client(self, gateway_env, monkeypatch):
        from gateway.main import app

        monkeypatch.setenv("FFMPEG_PATH", "/nonexistent/ffmpeg")
        get_settings.cache_clear()
        clear_service_caches()
        with TestClient(app, raise_server_exceptions=False) as test_client:
            yield test_client

    def test_health_reports_engine_missing(self, no_engine_client):
        response = no_engine_client.get("/health")
        assert response.status_code == 200
        assert response.json()["engine_available"] is False

    def test_job_endpoint_returns_503(self, no_engine_client, gateway_env):
        response = no_engine_client.post("/api/clip", files={"video": VIDEO})

        assert response.status_code == 503
        assert response.headers["X-Error-Code"] == "ENGINE_NOT_FOUND"
        assert _workspaces(gateway_env) == []

    def test_validation_still_comes_first(self, no_engine_client):
        response = no_engine_client.post("/api/clip", data={})
        assert response.status_code == 400


class TestConcurrentRequests:
    """Simultaneous requests get their own ids and workspaces."""

    def test_concurrent_clips_are_isolated(self, client, gateway_env):
        windows = [("0", "1"), ("1", "2"), ("2", "3"), ("3", "4")]

        def post(window):
            return client.post(
                "/api/clip",
                files={"video": VIDEO},
                data={"start": window[0], "duration": window[1]},
            )

        with ThreadPoolExecutor(max_workers=4) as pool:
            responses = list(pool.map(post, windows))

        assert [r.status_code for r in responses] == [200] * len(windows)
        assert all(r.content == b"fake-media-bytes" for r in responses)
        request_ids = {r.headers["X-Request-ID"] for r in responses}
        assert len(request_ids) == len(windows)
        filenames = {r.headers["content-disposition"] for r in responses}
        assert len(filenames) == len(windows)
        assert _workspaces(gateway_env) == []


class TestClientDisconnect:
    """A client hanging up mid-job stops the engine and frees the workspace.

    The app is driven as a raw ASGI callable so the connection can be
    dropped while the engine is still running.
    """

    @staticmethod
    def _overlay_request() -> tuple[dict, bytes]:
        request = httpx.Request(
            "POST",
            "http://testserver/api/add-text-on-top",
            files={"video": VIDEO},
            data={"text": "Hi"},
        )
        body = request.read()
        scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.4"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/api/add-text-on-top",
            "raw_path": b"/api/add-text-on-top",
            "root_path": "",
            "query_string": b"",
            "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in request.headers.items()],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
            "state": {},
        }
        return scope, body

    @pytest.mark.asyncio
    async def test_disconnect_during_job_cancels_engine(self, gateway_env, monkeypatch):
        from gateway.main import app

        monkeypatch.setenv("FAKE_ENGINE_MODE", "hang")
        runner = get_job_runner()
        scope, body = self._overlay_request()
        hung_up = asyncio.Event()
        body_sent = False
        messages = []

        async def receive():
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            await hung_up.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            messages.append(message)

        request_task = asyncio.create_task(app(scope, receive, send))
        job = None
        for _ in range(200):
            dirs = _workspaces(gateway_env)
            if dirs:
                # job_<request id>_<random>
                job = runner.get_job(dirs[0].name.split("_")[1])
            if job is not None and job.state is JobState.RUNNING:
                break
            await asyncio.sleep(0.05)
        else:
            pytest.fail("engine never started")

        hung_up.set()
        await asyncio.wait_for(request_task, timeout=10)

        assert job.state is JobState.CANCELLED
        assert job.cancel_reason == "client_disconnected"
        assert (await job.wait()).return_code == -15
        assert runner.active_jobs == 0
        assert _workspaces(gateway_env) == []
        assert messages[0]["status"] == 499
