"""
AudioService: the object request handlers talk to.

Holds settings, the result cache and the extractor; collapses concurrent
extractions for one media id into a single task; runs the background
expiry sweep; answers the fixed set of diagnostic probes.
"""

import asyncio
import logging
import platform
import shutil
from datetime import datetime, timezone
from typing import Dict, Optional, Set

import yt_dlp

from .cache import ResultCache
from .config import Settings, write_cookies_file
from .errors import InvalidMediaId
from .extractor import AudioExtractor
from .models import (
    CookieStatusResponse,
    DebugResponse,
    StatusResponse,
    is_valid_media_id,
)
from .strategies import PYTUBEFIX_AVAILABLE

logger = logging.getLogger(__name__)


class AudioService:
    """Cache → single-flight extraction → cache."""

    def __init__(
        self,
        settings: Settings,
        cache: Optional[ResultCache] = None,
        extractor: Optional[AudioExtractor] = None,
    ):
        self.settings = settings
        self.cache = cache if cache is not None else ResultCache(settings.cache_ttl_seconds)
        self.extractor = extractor if extractor is not None else AudioExtractor(settings)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        # bumped by clear_cache(); extractions started before a clear do not store
        self._generation = 0

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        self.extractor.ensure_scratch_dir()
        self.extractor.cookies_file = write_cookies_file(self.settings)
        logger.info(
            f"Scratch dir {self.settings.scratch_dir} "
            f"(cache TTL: {self.settings.cache_ttl_seconds:g}s, "
            f"strategy timeout: {self.settings.strategy_timeout_seconds:g}s)"
        )
        await self.start_sweep_scheduler()

    async def stop(self) -> None:
        await self.stop_sweep_scheduler()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} in-flight extractions")

    def sweep(self) -> None:
        """One pass of expiry: cached payloads and orphaned scratch dirs."""
        self.cache.purge_expired()
        self.extractor.cleanup_stale_attempts(
            max_age_seconds=self.settings.strategy_timeout_seconds * 2
        )

    async def start_sweep_scheduler(self) -> None:
        """Start background sweep task"""
        if self._sweep_task is not None:
            logger.warning("Sweep scheduler already running")
            return

        async def sweep_loop():
            logger.info(f"Starting sweep scheduler (interval: {self.settings.sweep_interval_seconds:g}s)")
            while True:
                try:
                    await asyncio.sleep(self.settings.sweep_interval_seconds)
                    self.sweep()
                except asyncio.CancelledError:
                    logger.info("Sweep scheduler cancelled")
                    break
                except Exception as e:
                    logger.error(f"Sweep scheduler error: {e}")

        self._sweep_task = asyncio.create_task(sweep_loop())

    async def stop_sweep_scheduler(self) -> None:
        """Stop background sweep task"""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Sweep scheduler stopped")

    # =========================================================================
    # AUDIO
    # =========================================================================

    async def get_audio(self, media_id: str) -> bytes:
        """
        Cached payload for media_id, extracting it on a miss.

        Concurrent callers for the same id share one extraction. The shared
        task is shielded so a disconnecting client cannot cancel it for the
        others. Raises InvalidMediaId or ExtractionFailure.
        """
        if not is_valid_media_id(media_id):
            raise InvalidMediaId(media_id)

        payload = self.cache.get(media_id)
        if payload is not None:
            logger.info(f"💾 Using cached audio for {media_id} ({len(payload)} bytes)")
            return payload

        task = self._inflight.get(media_id)
        if task is None:
            logger.info(f"📥 Fetching audio for video ID: {media_id}")
            task = asyncio.ensure_future(self._extract_and_store(media_id, self._generation))
            self._inflight[media_id] = task
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._extraction_done(media_id, t))
        else:
            logger.info(f"⏳ Joining in-flight extraction for {media_id}")

        return await asyncio.shield(task)

    async def _extract_and_store(self, media_id: str, generation: int) -> bytes:
        payload = await self.extractor.extract(media_id)
        if generation == self._generation:
            self.cache.set(media_id, payload)
        else:
            logger.info(f"Cache cleared during extraction of {media_id}; result not stored")
        return payload

    def _extraction_done(self, media_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._inflight.get(media_id) is task:
            del self._inflight[media_id]
        # mark the exception retrieved when every waiter has gone away
        if not task.cancelled():
            task.exception()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def clear_cache(self) -> int:
        """
        Evict every cached payload. Extractions already running still answer
        their waiters but no longer populate the cache, and the next request
        for the same id starts a new extraction.
        """
        self._generation += 1
        self._inflight.clear()
        return self.cache.clear()

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    async def probe_upstream(self) -> StatusResponse:
        """
        Resolve the probe video's format list with yt-dlp.

        Raises whatever yt-dlp raised (or asyncio.TimeoutError) when the
        upstream is unreachable.
        """
        probe = self.extractor.strategies[0] if self.extractor.strategies else None
        opts = self.extractor.build_ytdlp_opts(probe) if probe else {"quiet": True, "skip_download": True}
        opts.pop("format", None)
        url = self.settings.status_probe_url

        def _extract():
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(url, download=False)

        loop = asyncio.get_event_loop()
        info = await asyncio.wait_for(
            loop.run_in_executor(None, _extract),
            timeout=self.settings.strategy_timeout_seconds,
        )
        return StatusResponse(
            status="ok",
            message="YouTube API is accessible",
            formats=len((info or {}).get("formats") or []),
        )

    async def _binary_version(self, cmd_prefix) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd_prefix, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=15)
        except (OSError, asyncio.TimeoutError) as e:
            return f"Error: {e}"
        return stdout.decode("utf-8", errors="replace").strip() or None

    async def debug_info(self) -> DebugResponse:
        """Fixed set of diagnostic probes; nothing here takes caller input."""
        prefix = self.extractor.ytdlp_command_prefix()
        binary = prefix[0]
        binary_exists = bool(shutil.which(binary))

        return DebugResponse(
            ytdlp_version=yt_dlp.version.__version__,
            ytdlp_binary=" ".join(prefix),
            ytdlp_binary_exists=binary_exists,
            ytdlp_binary_version=await self._binary_version(prefix) if binary_exists else None,
            ffmpeg_binary=shutil.which(self.extractor.ffmpeg_binary()),
            pytubefix_available=PYTUBEFIX_AVAILABLE,
            cookies_configured=bool(self.extractor.cookies_file),
            platform=platform.platform(),
            python_version=platform.python_version(),
            cache_entries=len(self.cache),
            cache_bytes=self.cache.total_bytes(),
            inflight_extractions=self.inflight_count,
            strategies=[s.name for s in self.extractor.strategies],
        )

    def cookie_status(self) -> Optional[CookieStatusResponse]:
        """None when no cookie file exists."""
        path = self.settings.cookies_path
        if not path.is_file():
            return None
        stat = path.stat()
        return CookieStatusResponse(
            status="ok",
            message="Cookies file exists",
            cookies_path=str(path),
            file_size=f"{stat.st_size} bytes",
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )
