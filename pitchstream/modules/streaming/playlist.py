"""HLS playlist rewriting.

Storage-relative asset lines are pointed at the access-controlled proxy
route so players never see storage URLs.
"""

import posixpath
from urllib.parse import urlparse

from pitchstream.core.config import settings

HLS_MIME_TYPE = "application/vnd.apple.mpegurl"
PROXIED_EXTENSIONS = (".ts", ".m3u8")


def stream_path(owner_id: str, asset_name: str, api_prefix: str = settings.API_V1_PREFIX) -> str:
    return f"{api_prefix}/elevator-pitch/stream/{owner_id}/{asset_name}"


def _asset_name(line: str) -> str:
    path = urlparse(line).path if "://" in line else line.split("?", 1)[0]
    return posixpath.basename(path)


def is_proxied_asset(line: str) -> bool:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return False
    return _asset_name(stripped).lower().endswith(PROXIED_EXTENSIONS)


def rewrite_playlist(text: str, owner_id: str, api_prefix: str = settings.API_V1_PREFIX) -> str:
    """Rewrite every ``.ts``/``.m3u8`` URI line to the proxy route.

    Tags, comments and blank lines are returned unchanged.
    """
    lines = text.splitlines()
    rewritten = [
        stream_path(owner_id, _asset_name(line.strip()), api_prefix) if is_proxied_asset(line) else line
        for line in lines
    ]
    result = "\n".join(rewritten)
    if text.endswith(("\n", "\r")):
        result += "\n"
    return result
