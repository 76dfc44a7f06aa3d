"""
FastAPI audio proxy
Streams YouTube audio as MP3 for the browser player, with caching and range support
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
import yt_dlp

from . import __version__
from .config import Settings
from .errors import ExtractionFailure, InvalidMediaId, RangeNotSatisfiable
from .models import ClearCacheResponse, ErrorResponse, StatusResponse
from .ranges import build_audio_response, range_not_satisfiable_response
from .service import AudioService

# Logging configuration; the level comes from Settings.log_level in create_app()
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def get_service(request: Request) -> AudioService:
    return request.app.state.service


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[AudioService] = None,
) -> FastAPI:
    """Build the application around an explicitly constructed AudioService."""
    if service is None:
        settings = settings or Settings.from_env()
        service = AudioService(settings)
    settings = service.settings
    logging.getLogger().setLevel(settings.log_level)
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for startup/shutdown tasks"""
        logger.info("🚀 Starting audio proxy...")
        logger.info(f"Version: {__version__}")
        logger.info(f"yt-dlp version: {yt_dlp.version.__version__}")
        logger.info(f"🎯 Strategies: {', '.join(s.name for s in service.extractor.strategies)}")

        await service.start()
        cookies = service.extractor.cookies_file
        logger.info(f"🍪 YouTube cookies: {'configured' if cookies else 'NOT configured (bot detection risk)'}")

        yield

        logger.info("Shutting down audio proxy...")
        await service.stop()

    app = FastAPI(
        title="YouTube Audio Proxy",
        description="Extracts and streams YouTube audio for the browser player",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.frontend_origins,
        allow_credentials="*" not in settings.frontend_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )

    # Rate limiting for the extraction path
    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ========================================================================
    # API ENDPOINTS
    # ========================================================================

    @app.get("/audio/{media_id}")
    @limiter.limit(settings.audio_rate_limit)
    async def get_audio(
        request: Request,
        media_id: str,
        service: AudioService = Depends(get_service),
    ) -> Response:
        """
        Stream audio for a YouTube video id

        **Flow:**
        1. Validate the 11-character video id
        2. Serve from cache, or extract with the strategy fallback chain
        3. Respond 200 with the full payload, or 206 for a Range request
        """
        try:
            payload = await service.get_audio(media_id)
        except InvalidMediaId as e:
            logger.warning(f"⚠️ Rejected {e}")
            return PlainTextResponse("Invalid video ID", status_code=400)
        except ExtractionFailure as e:
            logger.error(
                f"❌ Audio extraction failed for {media_id} [{e.kind.value}] "
                f"after {', '.join(e.strategies_tried) or 'no strategies'}: {e.message}"
            )
            return PlainTextResponse(f"Failed to extract audio: {e.message}", status_code=500)
        except Exception as e:
            logger.exception(f"💥 Unexpected error while loading audio for {media_id}: {e}")
            return PlainTextResponse(f"Failed to load audio: {e}", status_code=500)

        range_header = request.headers.get("range")
        try:
            return build_audio_response(payload, range_header)
        except RangeNotSatisfiable as e:
            logger.warning(f"⚠️ {e}")
            return range_not_satisfiable_response(e.total)

    @app.get("/health")
    async def health_check():
        """Liveness probe"""
        return PlainTextResponse("OK")

    @app.get("/status")
    async def upstream_status(service: AudioService = Depends(get_service)):
        """Check that YouTube is reachable with the configured cookies"""
        try:
            result = await service.probe_upstream()
        except Exception as e:
            logger.error(f"❌ Upstream probe failed: {e}")
            return JSONResponse(
                status_code=500,
                content=StatusResponse(
                    status="error",
                    message="YouTube API is not accessible",
                    error=str(e) or e.__class__.__name__,
                ).model_dump(exclude_none=True),
            )
        return JSONResponse(content=result.model_dump(exclude_none=True))

    @app.get("/debug")
    async def debug(service: AudioService = Depends(get_service)):
        """Diagnostic dump: tool paths and versions, cache and environment summary"""
        try:
            info = await service.debug_info()
        except Exception as e:
            logger.exception("Debug probe failed")
            return JSONResponse(
                status_code=500,
                content=ErrorResponse(error=str(e)).model_dump(exclude_none=True),
            )
        return JSONResponse(content=info.model_dump(mode="json"))

    @app.get("/validate-cookies")
    async def validate_cookies(service: AudioService = Depends(get_service)):
        """Report on the cookie file written at startup"""
        try:
            status = service.cookie_status()
        except OSError as e:
            return JSONResponse(
                status_code=500,
                content={"status": "error", "message": "Error accessing cookies file", "error": str(e)},
            )
        if status is None:
            return JSONResponse(
                status_code=404,
                content={"status": "error", "message": "No cookies file found"},
            )
        return JSONResponse(content=status.model_dump(mode="json", by_alias=True, exclude_none=True))

    @app.post("/clear-cache")
    async def clear_cache(service: AudioService = Depends(get_service)):
        """Evict every cached payload"""
        try:
            removed = service.clear_cache()
        except Exception as e:
            logger.exception("Failed to clear cache")
            return JSONResponse(
                status_code=500,
                content=ErrorResponse(error=str(e)).model_dump(exclude_none=True),
            )
        logger.info(f"🧹 Cache cleared via API ({removed} entries)")
        return JSONResponse(content=ClearCacheResponse(deletedFiles=removed).model_dump(by_alias=True))

    @app.get("/")
    async def root():
        """Root endpoint with service info"""
        return {
            "service": "YouTube Audio Proxy",
            "version": __version__,
            "status": "running",
            "uptime_seconds": round(time.time() - start_time, 1),
            "endpoints": {
                "audio": "/audio/{video_id}",
                "health": "/health",
                "status": "/status",
                "debug": "/debug",
                "validate_cookies": "/validate-cookies",
                "clear_cache": "/clear-cache",
            },
        }

    # ========================================================================
    # ERROR HANDLERS
    # ========================================================================

    @app.exception_handler(404)
    async def not_found_handler(request, exc):
        """Custom 404 handler"""
        return JSONResponse(
            status_code=404,
            content={"detail": "Endpoint not found. See /docs for API documentation."}
        )

    @app.exception_handler(500)
    async def server_error_handler(request, exc):
        """Custom 500 handler"""
        logger.exception("Internal server error")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error. Please try again later."}
        )

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = app.state.service.settings
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
