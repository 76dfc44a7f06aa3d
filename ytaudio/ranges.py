"""
Byte-range handling for cached audio payloads
"""

from typing import Optional, Tuple

from fastapi import Response

from .errors import RangeNotSatisfiable

AUDIO_MEDIA_TYPE = "audio/mpeg"


def parse_range(header: str, total: int) -> Tuple[int, int]:
    """
    Parse a single `bytes=start-end` range against a payload of `total` bytes.

    Returns an inclusive (start, end) pair. A missing end means the last byte and
    an end past the payload is clamped; `bytes=-N` selects the final N bytes.
    Raises RangeNotSatisfiable for anything that cannot be served.
    """
    value = header.strip()
    if not value.lower().startswith("bytes="):
        raise RangeNotSatisfiable(header, total)
    # only the first range of a multi-range request is honoured
    value = value[len("bytes="):].split(",")[0].strip()

    start_str, sep, end_str = value.partition("-")
    if not sep:
        raise RangeNotSatisfiable(header, total)
    start_str, end_str = start_str.strip(), end_str.strip()

    try:
        if not start_str:
            suffix = int(end_str)
            if suffix <= 0 or total == 0:
                raise RangeNotSatisfiable(header, total)
            return max(total - suffix, 0), total - 1

        start = int(start_str)
        end = int(end_str) if end_str else total - 1
    except ValueError:
        raise RangeNotSatisfiable(header, total) from None

    if start < 0 or start >= total or start > end:
        raise RangeNotSatisfiable(header, total)

    return start, min(end, total - 1)


def build_audio_response(payload: bytes, range_header: Optional[str] = None) -> Response:
    """Full (200) or partial (206) audio response for an in-memory payload."""
    total = len(payload)

    if not range_header:
        return Response(
            content=payload,
            status_code=200,
            media_type=AUDIO_MEDIA_TYPE,
            headers={
                "Content-Length": str(total),
                "Accept-Ranges": "bytes",
            },
        )

    start, end = parse_range(range_header, total)
    chunk = payload[start:end + 1]
    return Response(
        content=chunk,
        status_code=206,
        media_type=AUDIO_MEDIA_TYPE,
        headers={
            "Content-Range": f"bytes {start}-{end}/{total}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(len(chunk)),
        },
    )


def range_not_satisfiable_response(total: int) -> Response:
    return Response(
        content=b"",
        status_code=416,
        headers={"Content-Range": f"bytes */{total}"},
    )
