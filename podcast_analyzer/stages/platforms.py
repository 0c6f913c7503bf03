"""Static platform lookup: which hosting service a URL belongs to and which extractor handles it."""
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse


@dataclass(frozen=True)
class PlatformInfo:
    name: str
    extractor_type: str  # yt-dlp | rss | browser


# (host regex, platform). First match wins; hosts are matched without a leading "www."/"m.".
PLATFORM_PATTERNS = [
    (r"(^|\.)youtube\.com$|^youtu\.be$", PlatformInfo("YouTube", "yt-dlp")),
    (r"(^|\.)anchor\.fm$|^podcasters\.spotify\.com$", PlatformInfo("Anchor", "yt-dlp")),
    (r"(^|\.)spotify\.com$", PlatformInfo("Spotify", "yt-dlp")),
    (r"^podcasts\.apple\.com$|^itunes\.apple\.com$", PlatformInfo("Apple Podcasts", "rss")),
    (r"(^|\.)soundcloud\.com$", PlatformInfo("SoundCloud", "yt-dlp")),
    (r"(^|\.)xiaoyuzhoufm\.com$|(^|\.)xiaoyuzhou\.fm$", PlatformInfo("Xiaoyuzhou", "browser")),
    (r"(^|\.)bilibili\.com$|^b23\.tv$", PlatformInfo("BiliBili", "yt-dlp")),
    (r"(^|\.)overcast\.fm$", PlatformInfo("Overcast", "rss")),
    (r"^pca\.st$|(^|\.)pocketcasts\.com$", PlatformInfo("Pocket Casts", "rss")),
    (r"(^|\.)castbox\.fm$", PlatformInfo("Castbox", "yt-dlp")),
    (r"(^|\.)podbean\.com$", PlatformInfo("Podbean", "yt-dlp")),
    (r"(^|\.)buzzsprout\.com$", PlatformInfo("Buzzsprout", "yt-dlp")),
    (r"(^|\.)libsyn\.com$", PlatformInfo("Libsyn", "yt-dlp")),
    (r"(^|\.)simplecast\.com$", PlatformInfo("Simplecast", "yt-dlp")),
    (r"(^|\.)audioboom\.com$", PlatformInfo("Audioboom", "yt-dlp")),
    (r"(^|\.)spreaker\.com$", PlatformInfo("Spreaker", "yt-dlp")),
    (r"(^|\.)twitch\.tv$", PlatformInfo("Twitch", "yt-dlp")),
    (r"(^|\.)vimeo\.com$", PlatformInfo("Vimeo", "yt-dlp")),
    (r"(^|\.)dailymotion\.com$", PlatformInfo("Dailymotion", "yt-dlp")),
    (r"(^|\.)tiktok\.com$", PlatformInfo("TikTok", "yt-dlp")),
    (r"(^|\.)twitter\.com$|^x\.com$", PlatformInfo("Twitter/X", "yt-dlp")),
]

_COMPILED = [(re.compile(p), info) for p, info in PLATFORM_PATTERNS]

GENERIC = PlatformInfo("Generic", "yt-dlp")


def _host(url: str) -> Optional[str]:
    parsed = urlparse((url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    host = parsed.hostname.lower()
    for prefix in ("www.", "m."):
        if host.startswith(prefix):
            host = host[len(prefix):]
    return host


def detect_platform(url: str) -> Optional[PlatformInfo]:
    """Return the platform for an http(s) URL: a known service from the table, else the generic yt-dlp platform.
    Returns None when the URL is not a usable http(s) URL at all."""
    host = _host(url)
    if host is None:
        return None
    for pattern, info in _COMPILED:
        if pattern.search(host):
            return info
    return GENERIC


def platform_by_name(name: str) -> PlatformInfo:
    for _, info in PLATFORM_PATTERNS:
        if info.name == name:
            return info
    return GENERIC


def supported_platforms() -> List[PlatformInfo]:
    """Every known platform once, in table order, with the generic fallback last."""
    seen: List[PlatformInfo] = []
    for _, info in PLATFORM_PATTERNS:
        if info not in seen:
            seen.append(info)
    seen.append(GENERIC)
    return seen
