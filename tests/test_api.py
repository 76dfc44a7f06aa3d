"""
HTTP-level tests for the FastAPI router, using TestClient and fake strategies.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import VIDEO_ID, FakeRunner, make_extractor
from ytaudio.cache import ResultCache
from ytaudio.main import create_app
from ytaudio.service import AudioService


@pytest.fixture
def runner(payload):
    return FakeRunner(payload=payload)


@pytest.fixture
def service(settings, clock, runner):
    return AudioService(
        settings,
        cache=ResultCache(settings.cache_ttl_seconds, clock=clock),
        extractor=make_extractor(settings, runner),
    )


@pytest.fixture
def client(service):
    with TestClient(create_app(service=service)) as c:
        yield c


# ─── /audio ───────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("bad_id", ["short", "dQw4w9WgXcQQ", "dQw4w9WgX%21Q", "dQw4w9WgX.Q"])
def test_invalid_id_returns_400_without_extraction(client, runner, bad_id):
    resp = client.get(f"/audio/{bad_id}")

    assert resp.status_code == 400
    assert resp.text == "Invalid video ID"
    assert runner.call_count == 0


def test_full_audio_response(client, payload):
    resp = client.get(f"/audio/{VIDEO_ID}")

    assert resp.status_code == 200
    assert resp.content == payload
    assert resp.headers["content-length"] == str(len(payload))
    assert resp.headers["content-type"] == "audio/mpeg"


def test_range_request_returns_partial_content(client, payload):
    resp = client.get(f"/audio/{VIDEO_ID}", headers={"Range": "bytes=0-99"})

    assert resp.status_code == 206
    assert resp.headers["content-range"] == "bytes 0-99/1000"
    assert resp.headers["content-length"] == "100"
    assert resp.headers["accept-ranges"] == "bytes"
    assert resp.content == payload[:100]


def test_unsatisfiable_range_returns_416(client):
    resp = client.get(f"/audio/{VIDEO_ID}", headers={"Range": "bytes=5000-"})

    assert resp.status_code == 416
    assert resp.headers["content-range"] == "bytes */1000"


def test_second_request_served_from_cache(client, runner, payload):
    first = client.get(f"/audio/{VIDEO_ID}")
    second = client.get(f"/audio/{VIDEO_ID}", headers={"Range": "bytes=100-199"})

    assert first.content == payload
    assert second.content == payload[100:200]
    assert runner.call_count == 1


def test_expired_entry_triggers_fresh_extraction(client, runner, clock, settings):
    client.get(f"/audio/{VIDEO_ID}")
    clock.advance(settings.cache_ttl_seconds + 1)
    client.get(f"/audio/{VIDEO_ID}")

    assert runner.call_count == 2


def test_extraction_failure_returns_500_and_caches_nothing(settings, clock):
    failing = FakeRunner(error="Video unavailable")
    service = AudioService(
        settings,
        cache=ResultCache(settings.cache_ttl_seconds, clock=clock),
        extractor=make_extractor(settings, failing, FakeRunner(error="This video is private")),
    )

    with TestClient(create_app(service=service)) as client:
        resp = client.get(f"/audio/{VIDEO_ID}")

    assert resp.status_code == 500
    assert resp.text == "Failed to extract audio: This video is private"
    assert len(service.cache) == 0


def test_audio_path_is_rate_limited(settings, clock, payload):
    settings.audio_rate_limit = "2 per 15 minutes"
    service = AudioService(
        settings,
        cache=ResultCache(settings.cache_ttl_seconds, clock=clock),
        extractor=make_extractor(settings, FakeRunner(payload=payload)),
    )

    with TestClient(create_app(service=service)) as client:
        codes = [client.get(f"/audio/{VIDEO_ID}").status_code for _ in range(3)]
        health = client.get("/health")

    assert codes == [200, 200, 429]
    assert health.status_code == 200


# ─── /clear-cache ─────────────────────────────────────────────────────────────

def test_clear_cache_then_fetch_extracts_again(client, runner):
    client.get(f"/audio/{VIDEO_ID}")

    resp = client.post("/clear-cache")

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "deletedFiles": 1}

    client.get(f"/audio/{VIDEO_ID}")
    assert runner.call_count == 2


# ─── Diagnostics ──────────────────────────────────────────────────────────────

def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.text == "OK"


def test_root_lists_endpoints(client):
    body = client.get("/").json()

    assert body["status"] == "running"
    assert body["endpoints"]["audio"] == "/audio/{video_id}"


def test_status_ok(client, service, monkeypatch):
    from ytaudio.models import StatusResponse

    async def fake_status_check():
        return StatusResponse(status="ok", message="YouTube API is accessible", formats=23)

    monkeypatch.setattr(service, "probe_upstream", fake_status_check)
    resp = client.get("/status")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "message": "YouTube API is accessible", "formats": 23}


def test_status_error(client, service, monkeypatch):
    async def failing_status_check():
        raise RuntimeError("Unable to download webpage")

    monkeypatch.setattr(service, "probe_upstream", failing_status_check)
    resp = client.get("/status")

    assert resp.status_code == 500
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"] == "Unable to download webpage"


def test_debug_reports_fixed_diagnostics(client, service, monkeypatch):
    async def no_version(prefix):
        return None

    monkeypatch.setattr(service, "_binary_version", no_version)
    body = client.get("/debug").json()

    assert body["strategies"] == ["fake 1"]
    assert body["cookies_configured"] is False
    assert "ytdlp_version" in body
    assert body["cache_entries"] == 0


def test_validate_cookies_missing(client):
    resp = client.get("/validate-cookies")

    assert resp.status_code == 404
    assert resp.json()["message"] == "No cookies file found"


def test_validate_cookies_present(client, settings):
    settings.cookies_path.write_text("# Netscape HTTP Cookie File\n")

    resp = client.get("/validate-cookies")

    assert resp.status_code == 200
    body = resp.json()
    assert body["cookiesPath"] == str(settings.cookies_path)
    assert body["fileSize"].endswith("bytes")


def test_unknown_route_returns_json_404(client):
    resp = client.get("/nope")

    assert resp.status_code == 404
    assert "detail" in resp.json()


# ─── App factory ──────────────────────────────────────────────────────────────

def test_log_level_comes_from_settings(service, settings):
    import logging
    root = logging.getLogger()
    previous = root.level
    settings.log_level = "DEBUG"
    try:
        create_app(service=service)
        assert root.level == logging.DEBUG
    finally:
        root.setLevel(previous)
