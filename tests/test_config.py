"""
Tests for environment configuration, cookie provisioning and error classification.
"""

import base64
from pathlib import Path

import pytest

from ytaudio.config import Settings, write_cookies_file
from ytaudio.errors import classify_error
from ytaudio.models import ErrorKind, is_valid_media_id


def test_from_env_reads_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("PORT", "5000")
    monkeypatch.setenv("FRONTEND_ORIGIN", "https://player.example.com, http://localhost:3001")
    monkeypatch.setenv("SCRATCH_DIR", str(tmp_path / "scratch"))
    monkeypatch.setenv("AUDIO_CACHE_TTL_SECONDS", "120")
    monkeypatch.setenv("PREFERRED_TOOL", "pytubefix")
    monkeypatch.setenv("ENABLE_PYTUBEFIX", "false")
    monkeypatch.setenv("AUDIO_RATE_LIMIT", "5 per minute")

    settings = Settings.from_env()

    assert settings.port == 5000
    assert settings.frontend_origins == ["https://player.example.com", "http://localhost:3001"]
    assert settings.scratch_dir == tmp_path / "scratch"
    assert settings.cache_ttl_seconds == 120
    assert settings.preferred_tool == "pytubefix"
    assert settings.enable_pytubefix is False
    assert settings.audio_rate_limit == "5 per minute"


def test_from_env_ignores_unknown_preferred_tool(monkeypatch):
    monkeypatch.setenv("PREFERRED_TOOL", "winamp")
    assert Settings.from_env().preferred_tool is None


def test_from_env_defaults(monkeypatch):
    for name in ("PORT", "FRONTEND_ORIGIN", "YOUTUBE_COOKIES_BASE64", "AUDIO_RATE_LIMIT"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.port == 3000
    assert settings.frontend_origins == ["*"]
    assert settings.cookies_b64 is None
    assert settings.audio_rate_limit == "30 per 15 minutes"


def test_write_cookies_file_decodes(tmp_path):
    content = b"# Netscape HTTP Cookie File\n.youtube.com\tTRUE\t/\tTRUE\t0\tSID\tabc\n"
    settings = Settings(
        cookies_b64=base64.b64encode(content).decode(),
        cookies_path=tmp_path / "nested" / "cookies.txt",
    )

    path = write_cookies_file(settings)

    assert path == settings.cookies_path
    assert Path(path).read_bytes() == content


def test_write_cookies_file_rejects_bad_base64(tmp_path):
    settings = Settings(cookies_b64="not base64!!", cookies_path=tmp_path / "cookies.txt")

    assert write_cookies_file(settings) is None
    assert not settings.cookies_path.exists()


def test_write_cookies_file_without_env(tmp_path):
    settings = Settings(cookies_path=tmp_path / "cookies.txt")
    assert write_cookies_file(settings) is None

    settings.cookies_path.write_text("# existing")
    assert write_cookies_file(settings) == settings.cookies_path


@pytest.mark.parametrize("media_id,valid", [
    ("dQw4w9WgXcQ", True),
    ("a-b_c1234XY", True),
    ("dQw4w9WgXc", False),
    ("dQw4w9WgXcQQ", False),
    ("dQw4w9WgX!Q", False),
    ("", False),
    ("../../etc/p", False),
])
def test_media_id_validation(media_id, valid):
    assert is_valid_media_id(media_id) is valid


@pytest.mark.parametrize("message,kind", [
    ("ERROR: [youtube] abc: Video unavailable", ErrorKind.VIDEO_UNAVAILABLE),
    ("Sign in to confirm you're not a bot", ErrorKind.RATE_LIMITED),
    ("HTTP Error 429: Too Many Requests", ErrorKind.RATE_LIMITED),
    ("strategy timed out after 300s", ErrorKind.TIMEOUT),
    ("yt-dlp exited with 127: executable not found: yt-dlp", ErrorKind.TOOL_MISSING),
    ("Connection reset by peer", ErrorKind.NETWORK_ERROR),
    ("ffmpeg exited with 1: Invalid data found", ErrorKind.EXTRACTION_FAILED),
    ("both audio streams failed to decode", ErrorKind.EXTRACTION_FAILED),
    ("disallowed by robots.txt", ErrorKind.EXTRACTION_FAILED),
    ("ERROR: please confirm you are not a bot", ErrorKind.RATE_LIMITED),
])
def test_classify_error(message, kind):
    assert classify_error(message) == kind
