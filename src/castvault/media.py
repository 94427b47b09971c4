"""Media downloading and durable, content-addressed preservation."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from io import BytesIO
from urllib.parse import urlparse

import httpx
from PIL import Image, UnidentifiedImageError

from castvault.config import PipelineConfig
from castvault.embeds import classify_embed
from castvault.inflight import InFlightRegistry
from castvault.models import Dimensions, EmbedKind, PreservedMedia, utcnow
from castvault.sources import MediaByteStore

logger = logging.getLogger(__name__)

_FALLBACK_CONTENT_TYPE = "application/octet-stream"
_MEDIA_TYPE_PREFIXES = ("image/", "video/")
_MEDIA_KINDS = {EmbedKind.IMAGE, EmbedKind.VIDEO, EmbedKind.GIF}


class MediaPreservationError(RuntimeError):
    """Raised when a media asset cannot be downloaded or stored."""


def _content_type_for(url: str, header: str | None) -> str:
    if header:
        return header.split(";", 1)[0].strip().lower() or _FALLBACK_CONTENT_TYPE
    guessed, _ = mimetypes.guess_type(urlparse(url).path)
    return guessed or _FALLBACK_CONTENT_TYPE


def is_media_content(url: str, content_type: str) -> bool:
    """Image and video bodies are media; untyped bodies count only for media-looking URLs."""

    if content_type.startswith(_MEDIA_TYPE_PREFIXES):
        return True
    return content_type == _FALLBACK_CONTENT_TYPE and classify_embed(url) in _MEDIA_KINDS


def read_image_dimensions(data: bytes) -> Dimensions | None:
    """Read pixel dimensions from image bytes, or None for undecodable data."""

    try:
        with Image.open(BytesIO(data)) as image:
            width, height = image.size
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError):
        return None
    return Dimensions(width=width, height=height)


class MediaPreserver:
    """Downloads remote media and hands the bytes to a durable byte store.

    Concurrent ``preserve`` calls for the same URL share one attempt through
    the injected :class:`InFlightRegistry`.
    """

    def __init__(
        self,
        store: MediaByteStore,
        *,
        client: httpx.AsyncClient,
        config: PipelineConfig | None = None,
        registry: InFlightRegistry[PreservedMedia] | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._config = config or PipelineConfig()
        self._registry: InFlightRegistry[PreservedMedia] = registry if registry is not None else InFlightRegistry()

    @property
    def registry(self) -> InFlightRegistry[PreservedMedia]:
        return self._registry

    async def preserve(self, url: str) -> PreservedMedia | None:
        """Preserve one URL; returns None on any failure."""

        if not url or not url.strip():
            return None
        url = url.strip()

        try:
            return await self._registry.run(url, lambda: self._download_and_store(url))
        except Exception as exc:
            logger.warning("Failed to preserve media %s: %s", url, exc)
            return None

    async def preserve_many(self, urls: list[str]) -> dict[str, PreservedMedia | None]:
        """Preserve URLs in sequential batches, concurrently within a batch."""

        results: dict[str, PreservedMedia | None] = {}
        batch_size = self._config.media_batch_size

        for start in range(0, len(urls), batch_size):
            batch = urls[start : start + batch_size]
            outcomes = await asyncio.gather(*(self.preserve(url) for url in batch))
            for url, outcome in zip(batch, outcomes):
                results[url] = outcome

        return results

    async def _download(self, url: str) -> tuple[bytes, str]:
        limit = self._config.max_media_bytes
        buffer = bytearray()

        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                content_type = _content_type_for(url, response.headers.get("content-type"))
                if not is_media_content(url, content_type):
                    raise MediaPreservationError(f"'{url}' serves {content_type}, not media")

                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > limit:
                    raise MediaPreservationError(f"Media '{url}' is {declared} bytes, limit is {limit}")

                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > limit:
                        raise MediaPreservationError(f"Media '{url}' exceeds {limit} bytes")
        except httpx.HTTPError as exc:
            raise MediaPreservationError(f"Failed to download media '{url}': {exc}") from exc

        if not buffer:
            raise MediaPreservationError(f"Media '{url}' returned an empty body")
        return bytes(buffer), content_type

    async def _download_and_store(self, url: str) -> PreservedMedia:
        logger.info("Preserving media %s", url)
        timeout = self._config.call_timeout_seconds

        data, content_type = await asyncio.wait_for(self._download(url), timeout=timeout)
        dimensions = read_image_dimensions(data) if content_type.startswith("image/") else None

        storage_ref = await asyncio.wait_for(self._store.store(data, content_type), timeout=timeout)
        if storage_ref.is_empty:
            raise MediaPreservationError(f"Storage returned no reference for '{url}'")

        return PreservedMedia(
            original_url=url,
            storage_ref=storage_ref,
            content_type=content_type,
            size_bytes=len(data),
            dimensions=dimensions,
            preserved_at=utcnow(),
        )
