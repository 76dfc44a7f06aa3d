"""
Pydantic models for response schemas, plus media identifier validation
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# YouTube video ids: 11 chars of URL-safe base64
MEDIA_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")


def is_valid_media_id(media_id: str) -> bool:
    return bool(MEDIA_ID_PATTERN.match(media_id or ""))


def media_url(media_id: str) -> str:
    return f"https://www.youtube.com/watch?v={media_id}"


class ErrorKind(str, Enum):
    """Error classifications (internal; the wire format stays a plain message)"""
    INVALID_ID = "INVALID_ID"
    VIDEO_UNAVAILABLE = "VIDEO_UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    TOOL_MISSING = "TOOL_MISSING"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"


class StatusResponse(BaseModel):
    """Response schema for /status"""
    status: str
    message: str
    formats: Optional[int] = None
    error: Optional[str] = None


class DebugResponse(BaseModel):
    """Response schema for /debug"""
    ytdlp_version: str
    ytdlp_binary: Optional[str] = None
    ytdlp_binary_exists: bool
    ytdlp_binary_version: Optional[str] = None
    ffmpeg_binary: Optional[str] = None
    pytubefix_available: bool
    cookies_configured: bool
    platform: str
    python_version: str
    cache_entries: int
    cache_bytes: int
    inflight_extractions: int
    strategies: List[str]


class CookieStatusResponse(BaseModel):
    """Response schema for /validate-cookies"""
    status: str
    message: str
    cookies_path: Optional[str] = Field(None, alias="cookiesPath")
    file_size: Optional[str] = Field(None, alias="fileSize")
    last_modified: Optional[datetime] = Field(None, alias="lastModified")

    model_config = {"populate_by_name": True}


class ClearCacheResponse(BaseModel):
    """Response schema for /clear-cache"""
    success: bool = True
    deleted_files: int = Field(..., alias="deletedFiles")

    model_config = {"populate_by_name": True}


class ErrorResponse(BaseModel):
    """Generic JSON error body"""
    error: str
    details: Optional[Dict[str, Any]] = None
