"""Interactive frame detection, extraction and validation, plus link page metadata."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlparse

from castvault.config import DEFAULT_FRAME_VERSIONS, PipelineConfig
from castvault.embeds import dedupe_preserve, is_frame_url
from castvault.media import MediaPreserver
from castvault.models import FrameButton, FrameData, FrameValidation
from castvault.sources import FrameFetcher, RawFrameMetadata

logger = logging.getLogger(__name__)

MAX_BUTTONS = 4
DEFAULT_ACTION = "post"
KNOWN_ACTIONS = {"post", "post_redirect", "link", "mint", "tx"}
_FRAME_PREFIX = "fc:frame"


def parse_buttons(properties: dict[str, str]) -> list[FrameButton]:
    """Read ``fc:frame:button:N`` entries; buttons without a title are skipped."""

    buttons: list[FrameButton] = []
    for index in range(1, MAX_BUTTONS + 1):
        title = (properties.get(f"fc:frame:button:{index}") or "").strip()
        if not title:
            continue
        action = (properties.get(f"fc:frame:button:{index}:action") or "").strip() or DEFAULT_ACTION
        target = (properties.get(f"fc:frame:button:{index}:target") or "").strip() or None
        buttons.append(FrameButton(index=index, title=title, action_type=action, target=target))
    return buttons


def extract_og_metadata(properties: dict[str, str]) -> dict[str, str]:
    return {key: value for key, value in properties.items() if key.startswith("og:")}


def build_link_metadata(raw: RawFrameMetadata, url: str) -> dict[str, str]:
    """OG properties of a link page plus its domain and favicon."""

    metadata = extract_og_metadata(raw.properties)
    if raw.title and "og:title" not in metadata:
        metadata["og:title"] = raw.title
    domain = urlparse(url).netloc.lower()
    if domain:
        metadata["domain"] = domain
    if raw.favicon:
        metadata["favicon"] = raw.favicon
    return metadata


def _has_frame_markers(raw: RawFrameMetadata) -> bool:
    return any(key.startswith(_FRAME_PREFIX) for key in raw.properties)


def build_frame(raw: RawFrameMetadata, frame_url: str) -> FrameData:
    properties = raw.properties
    image = raw.image or properties.get("fc:frame:image") or properties.get("og:image")
    title = raw.title or properties.get("og:title")
    return FrameData(
        frame_url=frame_url,
        title=title,
        image=image,
        buttons=parse_buttons(properties),
        input_text=properties.get("fc:frame:input:text"),
        state=properties.get("fc:frame:state"),
        post_url=properties.get("fc:frame:post_url"),
        version=properties.get(_FRAME_PREFIX) or "vNext",
        og_metadata=extract_og_metadata(properties),
    )


def validate_frame(
    frame: FrameData,
    supported_versions: tuple[str, ...] = DEFAULT_FRAME_VERSIONS,
) -> FrameValidation:
    """Report schema problems without raising; extraction never depends on this."""

    errors: list[str] = []

    if not (frame.frame_url or "").strip():
        errors.append("Frame URL is required")

    if not (frame.image or "").strip() and frame.preserved_image is None:
        errors.append("Frame image is required")

    for button in frame.buttons:
        if not button.title.strip():
            errors.append(f"Button {button.index} is missing title")
        if button.action_type not in KNOWN_ACTIONS:
            errors.append(f"Button {button.index} has unsupported action '{button.action_type}'")
        if button.action_type == "post_redirect" and not button.target:
            errors.append(f"Button {button.index} redirect requires target URL")

    if frame.version not in supported_versions:
        errors.append(f"Unsupported Frame version: {frame.version}")

    return FrameValidation(valid=not errors, errors=errors)


class FrameExtractor:
    def __init__(
        self,
        fetcher: FrameFetcher,
        *,
        media: MediaPreserver | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._media = media
        self._config = config or PipelineConfig()

    async def extract_frame(self, url: str) -> FrameData | None:
        """Fetch frame metadata for ``url``; None when it is not a frame or the fetch fails."""

        if not url or not url.strip():
            return None

        logger.info("Preserving frame %s", url)
        try:
            raw = await asyncio.wait_for(self._fetcher.fetch(url), timeout=self._config.call_timeout_seconds)
        except Exception as exc:
            logger.warning("Frame fetch failed for %s: %s", url, exc)
            return None

        if not _has_frame_markers(raw):
            logger.info("No frame metadata found at %s", url)
            return None

        frame = build_frame(raw, url)
        if frame.image and self._media is not None:
            frame.preserved_image = await self._media.preserve(frame.image)
        return frame

    async def extract_frames(self, urls: list[str]) -> list[FrameData]:
        candidates = [url for url in dedupe_preserve(urls) if url and is_frame_url(url)]
        if not candidates:
            return []
        frames = await asyncio.gather(*(self.extract_frame(url) for url in candidates))
        return [frame for frame in frames if frame is not None]

    def validate(self, frame: FrameData) -> FrameValidation:
        return validate_frame(frame, self._config.supported_frame_versions)

    async def extract_link_metadata(self, url: str) -> dict[str, str] | None:
        """OG metadata, domain and favicon of a link embed; None when the page cannot be read."""

        if not url or not url.strip():
            return None
        try:
            raw = await asyncio.wait_for(self._fetcher.fetch(url), timeout=self._config.call_timeout_seconds)
        except Exception as exc:
            logger.warning("Link metadata fetch failed for %s: %s", url, exc)
            return None
        return build_link_metadata(raw, url) or None

    async def extract_links_metadata(self, urls: list[str]) -> dict[str, dict[str, str]]:
        candidates = [url for url in dedupe_preserve(urls) if url]
        results = await asyncio.gather(*(self.extract_link_metadata(url) for url in candidates))
        return {url: metadata for url, metadata in zip(candidates, results) if metadata}
