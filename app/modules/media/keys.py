"""Storage key layout shared by the upload, signing and proxy paths.

    {category}/{asset_id}/hls/playlist.m3u8
    {category}/{asset_id}/hls/segment000.ts
    {category}/{asset_id}/cover.jpg            (optional)
"""
import mimetypes
import re
import uuid
from enum import Enum
from urllib.parse import unquote, urlsplit
from app.core import errors

PLAYLIST_FILENAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment%03d.ts"  # ffmpeg pattern; widens past 999 on its own
PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/MP2T"

_HLS_FILENAME = re.compile(r"^(playlist\.m3u8|segment\d{3,}\.ts)$")
_SEGMENT_FILENAME = re.compile(r"^segment(\d{3,})\.ts$")

class MediaCategory(str, Enum):
    songs = "songs"
    podcasts = "podcasts"

CATEGORY_FOLDERS = frozenset(c.value for c in MediaCategory)

def asset_prefix(category: str, asset_id: uuid.UUID | str) -> str:
    return f"{category}/{asset_id}/"

def hls_prefix(category: str, asset_id: uuid.UUID | str) -> str:
    return f"{asset_prefix(category, asset_id)}hls/"

def hls_key(category: str, asset_id: uuid.UUID | str, filename: str) -> str:
    return f"{hls_prefix(category, asset_id)}{filename}"

def cover_key(category: str, asset_id: uuid.UUID | str, ext: str) -> str:
    ext = ext.lower().lstrip(".")
    return f"{asset_prefix(category, asset_id)}cover" + (f".{ext}" if ext else "")

def segment_filename(index: int) -> str:
    return SEGMENT_PATTERN % index

def segment_index(filename: str) -> int | None:
    m = _SEGMENT_FILENAME.match(filename)
    return int(m.group(1)) if m else None

def is_hls_filename(filename: str) -> bool:
    return bool(_HLS_FILENAME.match(filename or ""))

def parse_asset_id(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise errors.ValidationError(f"Malformed asset id: {value!r}")

def content_type_for(key: str) -> str:
    if key.endswith(".m3u8"):
        return PLAYLIST_CONTENT_TYPE
    if key.endswith(".ts"):
        return SEGMENT_CONTENT_TYPE
    return mimetypes.guess_type(key)[0] or "application/octet-stream"

def extract_storage_key(value: str, markers: frozenset[str] = CATEGORY_FOLDERS) -> str:
    """Recover the storage key from a stored absolute URL.

    Bare keys come back unchanged. For URLs everything from the first path
    segment naming a category folder onwards is the key, whatever the host
    (S3 virtual-host, CloudFront, the local static mapping).
    """
    if "://" not in value:
        return value
    parts = unquote(urlsplit(value).path).split("/")
    for i, part in enumerate(parts):
        if part in markers:
            return "/".join(parts[i:])
    raise errors.ValidationError(f"No storage key marker in URL: {value}")
