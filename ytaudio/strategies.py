"""
Extraction strategy descriptors and the ordered fallback chain.

Strategy order (tried sequentially until one succeeds):
  1. yt-dlp default                 - library call, bestaudio → MP3 (VBR 0), geo-bypass
  2. yt-dlp bypass headers          - adds Referer/Origin headers and a randomised sleep
  3. yt-dlp format-filtered         - m4a/webm audio-only formats, recoded to MP3
  4. yt-dlp command                 - the yt-dlp binary as a subprocess with explicit flags
  5. pytubefix <client>             - completely different Python library, audio-only stream
  6. resolve + download + transcode - yt-dlp resolves the URL, httpx downloads, ffmpeg encodes

PREFERRED_TOOL moves one tool's strategies to the front; the rest keep their order.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import Settings

logger = logging.getLogger(__name__)

try:
    import pytubefix  # noqa: F401
    PYTUBEFIX_AVAILABLE = True
except ImportError:
    PYTUBEFIX_AVAILABLE = False
    logger.warning("⚠️ pytubefix not installed - pytubefix strategies unavailable")

# Strategy kinds → the tool they belong to (for PREFERRED_TOOL)
KIND_YTDLP = "ytdlp"
KIND_YTDLP_COMMAND = "ytdlp_command"
KIND_PYTUBEFIX = "pytubefix"
KIND_RESOLVE = "resolve_transcode"

TOOL_KINDS = {
    "yt-dlp": KIND_YTDLP,
    "yt-dlp-binary": KIND_YTDLP_COMMAND,
    "pytubefix": KIND_PYTUBEFIX,
    "resolve": KIND_RESOLVE,
}

DEFAULT_AUDIO_FORMAT = "bestaudio/best"
FILTERED_AUDIO_FORMAT = "bestaudio[ext=m4a]/bestaudio[ext=webm]/bestaudio"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/116.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class Strategy:
    """
    One parameterisation of an extraction tool.

    Pure configuration: the extractor picks the runner by `kind` and passes
    `options` through. Recognised options:
      format         - yt-dlp format selector
      audio_quality  - yt-dlp/ffmpeg VBR quality (0 best)
      headers        - extra HTTP headers
      player_clients - yt-dlp youtube player_client list
      sleep_interval / max_sleep_interval - yt-dlp request pacing
      use_cookies    - pass the cookie file when one is configured
      geo_bypass     - fake an X-Forwarded-For from an allowed country
      client_name    - pytubefix client
    """

    name: str
    kind: str
    options: Dict[str, Any] = field(default_factory=dict)

    def option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)


def build_strategy_list(
    settings: Settings,
    pytubefix_available: Optional[bool] = None,
) -> List[Strategy]:
    """Build the ordered strategy list for the given settings."""
    if pytubefix_available is None:
        pytubefix_available = PYTUBEFIX_AVAILABLE

    strategies: List[Strategy] = []

    # Strategy 1: library call with standard options
    strategies.append(Strategy("yt-dlp default", KIND_YTDLP, {
        "format": DEFAULT_AUDIO_FORMAT,
        "audio_quality": "0",
        "geo_bypass": True,
        "use_cookies": True,
    }))

    # Strategy 2: browser-like referer/origin and request pacing
    strategies.append(Strategy("yt-dlp bypass headers", KIND_YTDLP, {
        "format": DEFAULT_AUDIO_FORMAT,
        "audio_quality": "0",
        "geo_bypass": True,
        "use_cookies": True,
        "headers": {
            "Referer": "https://www.youtube.com/",
            "Origin": "https://www.youtube.com",
        },
        "sleep_interval": 1,
        "max_sleep_interval": 5,
    }))

    # Strategy 3: explicit audio-only container formats
    strategies.append(Strategy("yt-dlp format-filtered", KIND_YTDLP, {
        "format": FILTERED_AUDIO_FORMAT,
        "audio_quality": "0",
        "geo_bypass": True,
        "use_cookies": True,
        "player_clients": ["android", "web"],
    }))

    # Strategy 4: the binary itself, independent of the library's process state
    strategies.append(Strategy("yt-dlp command", KIND_YTDLP_COMMAND, {
        "format": DEFAULT_AUDIO_FORMAT,
        "audio_quality": "0",
        "geo_bypass": True,
        "use_cookies": True,
        "player_clients": ["android", "web"],
        "headers": {"Accept-Language": "en-US,en;q=0.9"},
    }))

    # Strategy 5: secondary library
    if settings.enable_pytubefix and pytubefix_available:
        for client_name in ("WEB", "ANDROID_VR"):
            strategies.append(Strategy(f"pytubefix {client_name}", KIND_PYTUBEFIX, {
                "client_name": client_name,
                "audio_quality": "0",
            }))

    # Strategy 6: resolve the stream URL, fetch it ourselves, encode locally
    strategies.append(Strategy("resolve + download + transcode", KIND_RESOLVE, {
        "format": FILTERED_AUDIO_FORMAT,
        "audio_quality": "0",
        "geo_bypass": True,
        "use_cookies": True,
    }))

    if settings.preferred_tool:
        strategies = prefer_tool(strategies, settings.preferred_tool)

    return strategies


def prefer_tool(strategies: List[Strategy], tool: str) -> List[Strategy]:
    """Stable reorder: strategies of `tool` first."""
    kind = TOOL_KINDS.get(tool)
    if kind is None:
        return list(strategies)
    preferred = [s for s in strategies if s.kind == kind]
    rest = [s for s in strategies if s.kind != kind]
    return preferred + rest
