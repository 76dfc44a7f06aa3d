"""
Audio extraction with an ordered strategy fallback chain.

Each strategy gets its own scratch directory (<scratch>/<media_id>-<hex>/),
which is removed whether the attempt succeeds, fails or times out. The first
strategy that leaves an audio.* file of at least MIN_AUDIO_BYTES wins; its bytes
are returned and nothing else is kept on disk.
"""

import asyncio
import logging
import shutil
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import yt_dlp

from .config import Settings
from .errors import ExtractionFailure, classify_error
from .models import media_url
from .strategies import (
    BROWSER_USER_AGENT,
    DEFAULT_AUDIO_FORMAT,
    KIND_PYTUBEFIX,
    KIND_RESOLVE,
    KIND_YTDLP,
    KIND_YTDLP_COMMAND,
    Strategy,
    build_strategy_list,
)

logger = logging.getLogger(__name__)

RunnerResult = Tuple[Optional[Path], Optional[str]]
Runner = Callable[[Strategy, str, Path], Awaitable[RunnerResult]]

OUTPUT_STEM = "audio"
_PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp")


@dataclass
class ExtractionAttempt:
    """One strategy execution. Lives only for the duration of one extract() call."""
    strategy: str
    kind: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    succeeded: bool = False
    output_bytes: Optional[int] = None
    error: Optional[str] = None
    elapsed_seconds: float = 0.0


class AudioExtractor:
    """Multi-strategy audio extractor with automatic fallback."""

    def __init__(
        self,
        settings: Settings,
        strategies: Optional[List[Strategy]] = None,
    ):
        self.settings = settings
        self.strategies: List[Strategy] = (
            list(strategies) if strategies is not None else build_strategy_list(settings)
        )
        self.cookies_file: Optional[Path] = None
        self.http_client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient
        self._runners: Dict[str, Runner] = {
            KIND_YTDLP: self._run_ytdlp_strategy,
            KIND_YTDLP_COMMAND: self._run_ytdlp_command_strategy,
            KIND_PYTUBEFIX: self._run_pytubefix_strategy,
            KIND_RESOLVE: self._run_resolve_strategy,
        }

    def register_runner(self, kind: str, runner: Runner) -> None:
        """Install or replace the coroutine that executes strategies of `kind`."""
        self._runners[kind] = runner

    # =========================================================================
    # TOOL LOCATION
    # =========================================================================

    def ytdlp_command_prefix(self) -> List[str]:
        """Argv prefix for invoking yt-dlp as a separate process."""
        if self.settings.ytdlp_binary:
            return [self.settings.ytdlp_binary]
        found = shutil.which("yt-dlp")
        if found:
            return [found]
        return [sys.executable, "-m", "yt_dlp"]

    def ffmpeg_binary(self) -> str:
        return self.settings.ffmpeg_binary or shutil.which("ffmpeg") or "ffmpeg"

    # =========================================================================
    # OPTION BUILDING
    # =========================================================================

    def _http_headers(self, strategy: Strategy) -> Dict[str, str]:
        headers = {
            "User-Agent": BROWSER_USER_AGENT,
            "Accept-Language": "en-US,en;q=0.9",
        }
        headers.update(strategy.option("headers") or {})
        return headers

    def _cookies_for(self, strategy: Strategy) -> Optional[Path]:
        if strategy.option("use_cookies") and self.cookies_file and self.cookies_file.is_file():
            return self.cookies_file
        return None

    def build_ytdlp_opts(
        self,
        strategy: Strategy,
        output_template: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        yt-dlp options for a library strategy.

        With an output template the audio is downloaded and converted to MP3
        by the FFmpegExtractAudio postprocessor; without one the options only
        resolve metadata.
        """
        opts: Dict[str, Any] = {
            "format": strategy.option("format", DEFAULT_AUDIO_FORMAT),
            "http_headers": self._http_headers(strategy),
            "noplaylist": True,
            "nocheckcertificate": True,
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "retries": 2,
            "fragment_retries": 2,
        }

        clients = strategy.option("player_clients")
        if clients:
            opts["extractor_args"] = {"youtube": {"player_client": list(clients)}}
        if strategy.option("geo_bypass"):
            opts["geo_bypass"] = True
        if strategy.option("sleep_interval") is not None:
            opts["sleep_interval"] = strategy.option("sleep_interval")
            opts["max_sleep_interval"] = strategy.option(
                "max_sleep_interval", strategy.option("sleep_interval")
            )

        cookies = self._cookies_for(strategy)
        if cookies:
            opts["cookiefile"] = str(cookies)
        if self.settings.proxy:
            opts["proxy"] = self.settings.proxy
        if self.settings.ffmpeg_binary:
            opts["ffmpeg_location"] = self.settings.ffmpeg_binary

        if output_template:
            opts["outtmpl"] = output_template
            opts["postprocessors"] = [{
                "key": "FFmpegExtractAudio",
                "preferredcodec": "mp3",
                "preferredquality": str(strategy.option("audio_quality", "0")),
            }]
        else:
            opts["skip_download"] = True

        return opts

    def build_ytdlp_command(self, strategy: Strategy, video_url: str, output_template: str) -> List[str]:
        """Full argv for the yt-dlp binary strategy."""
        cmd = self.ytdlp_command_prefix() + [
            video_url,
            "--extract-audio",
            "--audio-format", "mp3",
            "--audio-quality", str(strategy.option("audio_quality", "0")),
            "--format", strategy.option("format", DEFAULT_AUDIO_FORMAT),
            "--output", output_template,
            "--no-playlist",
            "--no-check-certificate",
            "--no-warnings",
            "--no-progress",
            "--quiet",
        ]
        if strategy.option("geo_bypass"):
            cmd.append("--geo-bypass")
        clients = strategy.option("player_clients")
        if clients:
            cmd += ["--extractor-args", f"youtube:player_client={','.join(clients)}"]
        for name, value in self._http_headers(strategy).items():
            if name == "User-Agent":
                cmd += ["--user-agent", value]
            else:
                cmd += ["--add-header", f"{name}:{value}"]

        cookies = self._cookies_for(strategy)
        if cookies:
            cmd += ["--cookies", str(cookies)]
        if self.settings.proxy:
            cmd += ["--proxy", self.settings.proxy]
        if self.settings.ffmpeg_binary:
            cmd += ["--ffmpeg-location", self.settings.ffmpeg_binary]
        return cmd

    # =========================================================================
    # SCRATCH SPACE
    # =========================================================================

    def ensure_scratch_dir(self) -> Path:
        self.settings.scratch_dir.mkdir(parents=True, exist_ok=True)
        return self.settings.scratch_dir

    def _new_attempt_dir(self, media_id: str) -> Path:
        attempt_dir = self.ensure_scratch_dir() / f"{media_id}-{uuid.uuid4().hex[:12]}"
        attempt_dir.mkdir(parents=True)
        return attempt_dir

    def _remove_attempt_dir(self, attempt_dir: Path) -> None:
        try:
            shutil.rmtree(attempt_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove scratch dir {attempt_dir.name}: {e}")

    @staticmethod
    def find_output(attempt_dir: Path) -> Optional[Path]:
        """Largest finished audio.* file, preferring .mp3."""
        candidates = [
            p for p in attempt_dir.glob(f"{OUTPUT_STEM}.*")
            if p.is_file() and p.suffix not in _PARTIAL_SUFFIXES
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda p: (p.suffix != ".mp3", -p.stat().st_size))
        return candidates[0]

    def cleanup_stale_attempts(self, max_age_seconds: float) -> int:
        """
        Remove scratch dirs older than max_age_seconds.

        Library strategies abort at their next progress callback once their
        attempt is abandoned, but a thread blocked inside a single request can
        still leave files behind in a directory that was already removed.
        """
        scratch = self.settings.scratch_dir
        if not scratch.exists():
            return 0

        removed = 0
        now = time.time()
        for attempt_dir in scratch.iterdir():
            if not attempt_dir.is_dir():
                continue
            try:
                age = now - attempt_dir.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > max_age_seconds:
                self._remove_attempt_dir(attempt_dir)
                removed += 1

        if removed:
            logger.info(f"Cleaned up {removed} stale scratch dirs")
        return removed

    # =========================================================================
    # PROCESS HELPERS
    # =========================================================================

    async def _run_process(self, cmd: List[str]) -> Tuple[int, str]:
        """Run cmd to completion, killing it if the awaiting task is cancelled."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return 127, f"executable not found: {cmd[0]}"

        try:
            _, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        return proc.returncode, stderr.decode("utf-8", errors="replace").strip()

    async def _transcode_to_mp3(self, source: Path, target: Path, quality: str) -> Optional[str]:
        """Encode source into an MP3 at target. Returns an error message on failure."""
        returncode, stderr = await self._run_process([
            self.ffmpeg_binary(),
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-i", str(source),
            "-vn",
            "-codec:a", "libmp3lame",
            "-q:a", quality,
            str(target),
        ])
        if returncode != 0:
            return f"ffmpeg exited with {returncode}: {stderr[-300:]}"
        return None

    # =========================================================================
    # INDIVIDUAL STRATEGY IMPLEMENTATIONS
    # =========================================================================

    async def _run_ytdlp_strategy(self, strategy: Strategy, video_url: str, attempt_dir: Path) -> RunnerResult:
        """yt-dlp as a library, with the FFmpegExtractAudio postprocessor."""
        opts = self.build_ytdlp_opts(
            strategy, output_template=str(attempt_dir / f"{OUTPUT_STEM}.%(ext)s")
        )
        abandoned = threading.Event()

        def _abort_if_abandoned(_status):
            if abandoned.is_set():
                raise yt_dlp.utils.DownloadCancelled("attempt abandoned")

        opts["progress_hooks"] = [_abort_if_abandoned]
        opts["postprocessor_hooks"] = [_abort_if_abandoned]

        def _do_download():
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(video_url, download=True)

        loop = asyncio.get_event_loop()
        try:
            info = await loop.run_in_executor(None, _do_download)
        except yt_dlp.utils.DownloadError as e:
            return None, str(e)
        finally:
            # the executor thread outlives a timed-out await; stop it writing
            abandoned.set()

        if not info:
            return None, "yt-dlp returned no info"

        output = self.find_output(attempt_dir)
        if output is None:
            return None, "File not found on disk after yt-dlp download"
        return output, None

    async def _run_ytdlp_command_strategy(self, strategy: Strategy, video_url: str, attempt_dir: Path) -> RunnerResult:
        """yt-dlp binary as a subprocess with explicit flags."""
        cmd = self.build_ytdlp_command(
            strategy, video_url, str(attempt_dir / f"{OUTPUT_STEM}.%(ext)s")
        )
        logger.debug(f"Running: {' '.join(cmd)}")

        returncode, stderr = await self._run_process(cmd)
        if returncode != 0:
            return None, f"yt-dlp exited with {returncode}: {stderr[-300:]}"

        output = self.find_output(attempt_dir)
        if output is None:
            return None, "yt-dlp command produced no output file"
        return output, None

    async def _run_pytubefix_strategy(self, strategy: Strategy, video_url: str, attempt_dir: Path) -> RunnerResult:
        """pytubefix audio-only stream, transcoded to MP3 with ffmpeg."""
        client_name = strategy.option("client_name", "WEB")
        proxy = self.settings.proxy
        abandoned = threading.Event()

        def _abort_if_abandoned(stream, chunk, bytes_remaining):
            if abandoned.is_set():
                raise RuntimeError("attempt abandoned")

        def _do_download():
            from pytubefix import YouTube

            kwargs: Dict[str, Any] = {
                "client": client_name,
                "on_progress_callback": _abort_if_abandoned,
            }
            if proxy:
                kwargs["proxies"] = {"http": proxy, "https": proxy}
            yt = YouTube(video_url, **kwargs)

            stream = yt.streams.get_audio_only()
            if stream is None:
                raise RuntimeError("No audio-only stream available via pytubefix")

            return stream.download(
                output_path=str(attempt_dir),
                filename=f"source.{stream.subtype or 'm4a'}",
            )

        loop = asyncio.get_event_loop()
        try:
            downloaded = await loop.run_in_executor(None, _do_download)
        finally:
            abandoned.set()
        if not downloaded or not Path(downloaded).exists():
            return None, "pytubefix: file not found after download"

        target = attempt_dir / f"{OUTPUT_STEM}.mp3"
        error = await self._transcode_to_mp3(
            Path(downloaded), target, str(strategy.option("audio_quality", "0"))
        )
        if error:
            return None, error
        return target, None

    async def _run_resolve_strategy(self, strategy: Strategy, video_url: str, attempt_dir: Path) -> RunnerResult:
        """
        Resolve the audio stream URL with yt-dlp, download it with httpx and
        transcode locally. Survives postprocessor breakage inside yt-dlp.
        """
        opts = self.build_ytdlp_opts(strategy)

        def _resolve():
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(video_url, download=False)

        loop = asyncio.get_event_loop()
        try:
            info = await loop.run_in_executor(None, _resolve)
        except yt_dlp.utils.DownloadError as e:
            return None, str(e)

        if not info:
            return None, "yt-dlp returned no info"

        stream_url, ext, headers = _pick_audio_stream(info)
        if not stream_url:
            return None, "no audio stream URL in resolved info"

        source = attempt_dir / f"source.{ext or 'bin'}"
        async with self.http_client_factory(
            timeout=httpx.Timeout(60.0),
            follow_redirects=True,
            proxy=self.settings.proxy,
        ) as client:
            async with client.stream("GET", stream_url, headers=headers) as resp:
                if resp.status_code not in (200, 206):
                    return None, f"stream HTTP {resp.status_code}"
                with open(source, "wb") as f:
                    async for chunk in resp.aiter_bytes(65536):
                        f.write(chunk)

        if not source.exists() or source.stat().st_size == 0:
            return None, "empty or missing file after stream download"

        target = attempt_dir / f"{OUTPUT_STEM}.mp3"
        error = await self._transcode_to_mp3(
            source, target, str(strategy.option("audio_quality", "0"))
        )
        if error:
            return None, error
        return target, None

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def extract(self, media_id: str) -> bytes:
        """
        Run strategies in order until one yields a plausible audio file.

        Raises ExtractionFailure carrying the last strategy's error when every
        strategy fails.
        """
        video_url = media_url(media_id)
        total = len(self.strategies)
        timeout = self.settings.strategy_timeout_seconds
        min_bytes = self.settings.min_audio_bytes

        logger.info(f"🚀 Extracting audio for {media_id} with {total} strategies")

        attempts: List[ExtractionAttempt] = []
        last_error: Optional[str] = None

        for idx, strategy in enumerate(self.strategies, 1):
            logger.info(f"🎯 Strategy {idx}/{total}: {strategy.name}")
            attempt = ExtractionAttempt(
                strategy=strategy.name,
                kind=strategy.kind,
                parameters=dict(strategy.options),
            )
            attempts.append(attempt)
            started = time.monotonic()

            payload: Optional[bytes] = None
            error_msg: Optional[str] = None
            attempt_dir = self._new_attempt_dir(media_id)

            try:
                runner = self._runners.get(strategy.kind)
                if runner is None:
                    error_msg = f"no runner registered for strategy kind {strategy.kind!r}"
                else:
                    file_path, error_msg = await asyncio.wait_for(
                        runner(strategy, video_url, attempt_dir),
                        timeout=timeout,
                    )
                    if file_path is not None and file_path.is_file():
                        size = file_path.stat().st_size
                        if size >= min_bytes:
                            payload = file_path.read_bytes()
                        else:
                            error_msg = f"output too small ({size} bytes < {min_bytes} minimum)"
                    elif not error_msg:
                        error_msg = "no output file produced"
            except asyncio.TimeoutError:
                error_msg = f"strategy timed out after {timeout:g}s"
            except Exception as e:
                error_msg = f"Unexpected exception in strategy: {e}"
            finally:
                self._remove_attempt_dir(attempt_dir)
                attempt.elapsed_seconds = time.monotonic() - started

            if payload is not None:
                attempt.succeeded = True
                attempt.output_bytes = len(payload)
                size_mb = len(payload) / 1024 / 1024
                logger.info(f"✅ Strategy {idx}/{total} ({strategy.name}) succeeded! ({size_mb:.1f} MB)")
                return payload

            attempt.error = error_msg or "unknown error"
            last_error = attempt.error
            logger.warning(f"⚠️ Strategy {idx}/{total} ({strategy.name}) failed: {attempt.error[:200]}")

        tried = ", ".join(a.strategy for a in attempts) or "none"
        logger.error(f"❌ All {total} strategies failed for {media_id} (tried: {tried})")

        message = last_error or "No extraction strategies configured"
        raise ExtractionFailure(message, kind=classify_error(message), attempts=attempts)


def _pick_audio_stream(info: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Dict[str, str]]:
    """(url, ext, http_headers) of the selected audio format in a yt-dlp info dict."""
    if info.get("url"):
        return info["url"], info.get("ext"), dict(info.get("http_headers") or {})

    for fmt in info.get("requested_formats") or []:
        if fmt.get("acodec") not in (None, "none") and fmt.get("url"):
            return fmt["url"], fmt.get("ext"), dict(fmt.get("http_headers") or {})

    return None, None, {}
