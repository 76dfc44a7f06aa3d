"""
Runtime configuration for the audio proxy.

Everything is read from environment variables once, by Settings.from_env(),
and handed to AudioService explicitly.

Environment variables:
  PORT / HOST                    - uvicorn bind address (default 0.0.0.0:3000)
  FRONTEND_ORIGIN                - comma-separated CORS origins (default "*")
  YOUTUBE_COOKIES_BASE64         - Base64-encoded Netscape cookies.txt for yt-dlp
                                   Encode your cookies file with: base64 -w 0 cookies.txt
  COOKIES_PATH                   - where the decoded cookies are written
  SCRATCH_DIR                    - per-attempt temporary files
  AUDIO_CACHE_TTL_SECONDS        - lifetime of a cached payload (default 1 hour)
  CACHE_SWEEP_INTERVAL_SECONDS   - background expiry sweep interval
  STRATEGY_TIMEOUT_SECONDS       - wall-clock limit for a single strategy
  MIN_AUDIO_BYTES                - outputs smaller than this are treated as failures
  AUDIO_RATE_LIMIT               - slowapi limit string for /audio
  PREFERRED_TOOL                 - yt-dlp | yt-dlp-binary | pytubefix | resolve
  YTDLP_BINARY / FFMPEG_BINARY   - explicit executable paths
  YTDLP_PROXY                    - HTTP/SOCKS proxy URL passed to yt-dlp
  ENABLE_PYTUBEFIX               - set to "false" to drop the pytubefix strategies
  STATUS_PROBE_URL               - video used by /status
  LOG_LEVEL                      - logging level (default INFO)
"""

import base64
import binascii
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

_TMP = Path(tempfile.gettempdir())

PREFERRED_TOOLS = ("yt-dlp", "yt-dlp-binary", "pytubefix", "resolve")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Service settings. Construct directly in tests, via from_env() in production."""

    host: str = "0.0.0.0"
    port: int = 3000
    frontend_origins: List[str] = field(default_factory=lambda: ["*"])
    cookies_b64: Optional[str] = None
    cookies_path: Path = _TMP / "youtube_cookies.txt"
    scratch_dir: Path = _TMP / "yt-download"
    cache_ttl_seconds: float = 3600
    sweep_interval_seconds: float = 60
    strategy_timeout_seconds: float = 300
    min_audio_bytes: int = 1024
    audio_rate_limit: str = "30 per 15 minutes"
    preferred_tool: Optional[str] = None
    ytdlp_binary: Optional[str] = None
    ffmpeg_binary: Optional[str] = None
    proxy: Optional[str] = None
    enable_pytubefix: bool = True
    status_probe_url: str = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("FRONTEND_ORIGIN", "*")
        preferred = os.getenv("PREFERRED_TOOL", "").strip().lower() or None
        if preferred and preferred not in PREFERRED_TOOLS:
            logger.warning(f"⚠️ Unknown PREFERRED_TOOL={preferred!r}, using default strategy order")
            preferred = None

        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3000")),
            frontend_origins=[o.strip() for o in origins.split(",") if o.strip()],
            cookies_b64=os.getenv("YOUTUBE_COOKIES_BASE64", "").strip() or None,
            cookies_path=Path(os.getenv("COOKIES_PATH", str(_TMP / "youtube_cookies.txt"))),
            scratch_dir=Path(os.getenv("SCRATCH_DIR", str(_TMP / "yt-download"))),
            cache_ttl_seconds=float(os.getenv("AUDIO_CACHE_TTL_SECONDS", "3600")),
            sweep_interval_seconds=float(os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", "60")),
            strategy_timeout_seconds=float(os.getenv("STRATEGY_TIMEOUT_SECONDS", "300")),
            min_audio_bytes=int(os.getenv("MIN_AUDIO_BYTES", "1024")),
            audio_rate_limit=os.getenv("AUDIO_RATE_LIMIT", "30 per 15 minutes"),
            preferred_tool=preferred,
            ytdlp_binary=os.getenv("YTDLP_BINARY") or None,
            ffmpeg_binary=os.getenv("FFMPEG_BINARY") or None,
            proxy=os.getenv("YTDLP_PROXY") or None,
            enable_pytubefix=_env_bool("ENABLE_PYTUBEFIX", True),
            status_probe_url=os.getenv(
                "STATUS_PROBE_URL", "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def write_cookies_file(settings: Settings) -> Optional[Path]:
    """
    Decode YOUTUBE_COOKIES_BASE64 into settings.cookies_path.

    Returns the path when a cookie file is available afterwards (freshly written
    or already present from an earlier run), otherwise None.
    """
    if not settings.cookies_b64:
        if settings.cookies_path.is_file():
            logger.info(f"🍪 Using existing cookies file at {settings.cookies_path}")
            return settings.cookies_path
        logger.warning(
            "⚠️ Running without cookies - downloads may fail due to bot detection. "
            "Set YOUTUBE_COOKIES_BASE64 to enable cookie authentication."
        )
        return None

    try:
        cookies_bytes = base64.b64decode(settings.cookies_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.error(f"❌ Failed to decode YOUTUBE_COOKIES_BASE64: {e}")
        return None

    try:
        settings.cookies_path.parent.mkdir(parents=True, exist_ok=True)
        settings.cookies_path.write_bytes(cookies_bytes)
    except OSError as e:
        logger.error(f"❌ Failed to write cookies file {settings.cookies_path}: {e}")
        return None

    logger.info(f"✅ YouTube cookies file created from environment variable ({len(cookies_bytes)} bytes)")
    return settings.cookies_path
