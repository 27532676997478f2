"""m3u8 helpers for serving a stored playlist."""

from typing import Callable


def segment_uris(body: str) -> list[str]:
    """URI lines of a media playlist, in playback order."""
    return [line.strip() for line in body.splitlines() if line.strip() and not line.startswith("#")]


def sign_playlist(body: str, resolve: Callable[[str], str]) -> str:
    """Rewrite every relative segment URI through ``resolve``.

    A CDN canned policy covers exactly one resource, so a signed playlist
    whose segment lines stay relative would point the player at unsigned
    segment URLs. Absolute URIs and tag lines are left alone.
    """
    out = []
    for line in body.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#") and "://" not in stripped:
            out.append(resolve(stripped))
        else:
            out.append(line)
    return "\n".join(out) + "\n"
