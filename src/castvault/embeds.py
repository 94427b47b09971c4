"""Embed URL heuristics: kind classification, frame and media detection."""

from __future__ import annotations

import re
from urllib.parse import urlparse

from castvault.models import EmbedKind

_GIF_SUFFIX_RE = re.compile(r"\.gif$", re.IGNORECASE)
_IMAGE_SUFFIX_RE = re.compile(r"\.(jpg|jpeg|png|webp|svg)$", re.IGNORECASE)
_VIDEO_SUFFIX_RE = re.compile(r"\.(mp4|webm|ogg|mov|m3u8)$", re.IGNORECASE)
_VIDEO_HOSTS = ("youtube.com", "youtu.be", "vimeo.com")
_FRAME_MARKERS = ("/frames/", "frame.", "frames.", "/api/frame")
_MEDIA_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".mp4", ".webm", ".mov", ".avi")
_MEDIA_HOST_MARKERS = ("cdn.", "imgur.", "giphy.", "media.")


def dedupe_preserve(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def _host_matches(host: str, domain: str) -> bool:
    return host == domain or host.endswith(f".{domain}")


def is_frame_url(url: str) -> bool:
    """Cheap pre-filter for URLs that may serve an interactive frame."""

    lowered = url.lower()
    return any(marker in lowered for marker in _FRAME_MARKERS)


def is_media_url(url: str) -> bool:
    """Return True when a URL most likely points at a media asset."""

    parsed = urlparse(url.strip().lower())
    if any(parsed.path.endswith(ext) for ext in _MEDIA_EXTENSIONS):
        return True
    return any(marker in parsed.netloc for marker in _MEDIA_HOST_MARKERS)


def classify_embed(url: str) -> EmbedKind:
    """Best-effort embed kind from URL suffix, host and path shape."""

    parsed = urlparse(url.strip())
    host = parsed.netloc.lower()
    path = parsed.path

    if _GIF_SUFFIX_RE.search(path):
        return EmbedKind.GIF
    if _IMAGE_SUFFIX_RE.search(path):
        return EmbedKind.IMAGE
    if _VIDEO_SUFFIX_RE.search(path):
        return EmbedKind.VIDEO
    if any(_host_matches(host, domain) for domain in _VIDEO_HOSTS):
        return EmbedKind.VIDEO
    if is_frame_url(url):
        return EmbedKind.FRAME
    return EmbedKind.LINK
