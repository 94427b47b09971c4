"""Up-front cost estimation for backups."""

from __future__ import annotations

import asyncio
import logging

import httpx

from castvault.config import PipelineConfig
from castvault.embeds import classify_embed, dedupe_preserve, is_media_url
from castvault.models import BackupRequest, CostEstimate, EmbedKind, MediaCostItem
from castvault.sources import BalanceOracle, CastSource

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def estimate_size_bytes(url: str) -> int:
    """Typical size for the URL's media class when the real size is unknown."""

    lowered = url.lower()
    if any(ext in lowered for ext in (".jpg", ".jpeg", ".png", ".webp", ".svg")):
        return 500 * 1024
    if ".gif" in lowered:
        return 2 * _MB
    if any(ext in lowered for ext in (".mp4", ".webm", ".mov", ".avi")):
        return 8 * _MB
    if ".pdf" in lowered:
        return int(1.5 * _MB)
    return _MB


class CostGate:
    """Prices a backup request and decides affordability; never raises."""

    def __init__(
        self,
        source: CastSource,
        *,
        balance_oracle: BalanceOracle | None = None,
        client: httpx.AsyncClient | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self._source = source
        self._balance_oracle = balance_oracle
        self._client = client
        self._config = config or PipelineConfig()

    async def _remote_size(self, url: str) -> int:
        if self._client is None:
            return estimate_size_bytes(url)
        try:
            response = await self._client.head(url, follow_redirects=True)
            length = response.headers.get("content-length", "")
            if response.is_success and length.isdigit():
                return int(length)
        except httpx.HTTPError as exc:
            logger.debug("Size lookup failed for %s: %s", url, exc)
        return estimate_size_bytes(url)

    def _price_item(self, url: str, size_bytes: int) -> MediaCostItem:
        pricing = self._config.pricing
        kind = classify_embed(url)
        size_mb = size_bytes / _MB

        cost = size_mb * pricing.storage_per_mb
        if kind == EmbedKind.VIDEO:
            cost *= pricing.video_multiplier
        if size_mb > pricing.large_file_threshold_mb:
            cost *= pricing.large_file_multiplier
        cost += pricing.upload_base_fee

        return MediaCostItem(url=url, kind=kind, size_bytes=size_bytes, cost_usd=round(cost, 4))

    async def _resolve_balance(self, request: BackupRequest) -> float | None:
        if request.balance_usd is not None:
            return request.balance_usd
        if self._balance_oracle is None:
            return None
        try:
            return await asyncio.wait_for(
                self._balance_oracle.balance_usd(),
                timeout=self._config.call_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Balance lookup failed: %s", exc)
            return None

    async def estimate(self, request: BackupRequest) -> CostEstimate:
        balance = await self._resolve_balance(request)
        try:
            return await self._estimate(request, balance)
        except Exception as exc:
            logger.error("Cost estimation failed for %s: %s", request.post_id, exc)
            return CostEstimate(affordable=False, balance_usd=balance)

    async def _estimate(self, request: BackupRequest, balance: float | None) -> CostEstimate:
        pricing = self._config.pricing
        items: list[MediaCostItem] = []

        if request.include_media:
            post = await asyncio.wait_for(
                self._source.fetch(request.post_id),
                timeout=self._config.call_timeout_seconds,
            )
            media_urls = dedupe_preserve([embed.url for embed in post.embeds if is_media_url(embed.url)])
            sizes = await asyncio.gather(*(self._remote_size(url) for url in media_urls))
            items = [self._price_item(url, size) for url, size in zip(media_urls, sizes)]

        media_cost = round(sum(item.cost_usd for item in items), 4)
        storage_cost = pricing.metadata_fee + (pricing.thread_fee if request.include_thread else 0.0)
        storage_cost = round(storage_cost, 4)
        total = round(media_cost + storage_cost, 4)

        return CostEstimate(
            media_cost_usd=media_cost,
            storage_cost_usd=storage_cost,
            total_usd=total,
            credits_needed=round(total / pricing.credit_price_usd, 6),
            affordable=balance is not None and total <= balance,
            balance_usd=balance,
            media_files=items,
        )
