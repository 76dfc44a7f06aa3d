"""
Shared fixtures and helpers for the audio proxy tests.

No test touches the network or an external binary: extraction strategies are
replaced by FakeRunner coroutines that write (or fail to write) an audio file
into the attempt's scratch directory.
"""

import asyncio
import pathlib
import sys
from typing import List, Optional

import pytest

_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

from ytaudio.config import Settings  # noqa: E402
from ytaudio.extractor import AudioExtractor  # noqa: E402
from ytaudio.strategies import Strategy  # noqa: E402

# ─── Constants ───────────────────────────────────────────────────────────────

VIDEO_ID = "dQw4w9WgXcQ"
OTHER_VIDEO_ID = "9bZkp7q19f0"
MIN_AUDIO_BYTES = 16


# ─── Fakes ───────────────────────────────────────────────────────────────────

class FakeRunner:
    """
    Stand-in for a strategy runner.

    Always leaves a partial file behind in the attempt dir, so tests can check
    that failed attempts are cleaned up. Writes `payload` as audio.mp3 when given.
    """

    def __init__(
        self,
        payload: Optional[bytes] = None,
        error: str = "simulated failure",
        delay: float = 0.0,
        raises: Optional[BaseException] = None,
    ):
        self.payload = payload
        self.error = error
        self.delay = delay
        self.raises = raises
        self.calls: List[str] = []
        self.attempt_dirs: List[pathlib.Path] = []

    async def __call__(self, strategy, video_url, attempt_dir):
        self.calls.append(video_url)
        self.attempt_dirs.append(attempt_dir)
        (attempt_dir / "audio.webm.part").write_bytes(b"partial download")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if self.payload is None:
            return None, self.error
        output = attempt_dir / "audio.mp3"
        output.write_bytes(self.payload)
        return output, None

    @property
    def call_count(self) -> int:
        return len(self.calls)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_extractor(settings: Settings, *runners: FakeRunner) -> AudioExtractor:
    """Extractor whose strategy chain is exactly `runners`, in order."""
    strategies = [Strategy(f"fake {i}", f"fake-{i}") for i in range(1, len(runners) + 1)]
    extractor = AudioExtractor(settings, strategies=strategies)
    for strategy, runner in zip(strategies, runners):
        extractor.register_runner(strategy.kind, runner)
    return extractor


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory, with test-sized limits."""
    return Settings(
        cookies_path=tmp_path / "cookies.txt",
        scratch_dir=tmp_path / "scratch",
        cache_ttl_seconds=60,
        sweep_interval_seconds=3600,
        strategy_timeout_seconds=5,
        min_audio_bytes=MIN_AUDIO_BYTES,
        audio_rate_limit="100 per 15 minutes",
        enable_pytubefix=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def payload():
    """1000 bytes of fake MP3 data."""
    return bytes(i % 251 for i in range(1000))


def scratch_leftovers(settings: Settings) -> List[pathlib.Path]:
    if not settings.scratch_dir.exists():
        return []
    return list(settings.scratch_dir.rglob("*"))
