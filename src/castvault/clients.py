"""HTTP implementations of the pipeline collaborators."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from castvault.config import PipelineConfig
from castvault.models import ArtifactStorage, BackupArtifact, Post, StorageRef
from castvault.sources import RawCast, RawContext, RawFrameMetadata, RawProfile, RawThread

logger = logging.getLogger(__name__)


class UpstreamError(RuntimeError):
    """Raised when an upstream API answers with an unusable payload."""


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def build_http_client(config: PipelineConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=config.request_timeout_seconds,
        follow_redirects=True,
        headers={"User-Agent": config.user_agent},
    )


class _ApiClient:
    def __init__(self, client: httpx.AsyncClient, config: PipelineConfig | None = None) -> None:
        self._client = client
        self._config = config or PipelineConfig()

    def _url(self, path: str) -> str:
        return f"{self._config.api_base.rstrip('/')}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._client.request(method, self._url(path), **kwargs)
                response.raise_for_status()
        return response

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"{path} returned invalid JSON") from exc


def _unwrap_cast_payload(payload: Any, post_id: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise UpstreamError(f"Unexpected cast payload for {post_id}")
    if "success" in payload and not payload.get("success"):
        raise UpstreamError(payload.get("error") or f"Cast {post_id} not found")
    data = payload.get("data", payload)
    if not isinstance(data, dict):
        raise UpstreamError(f"Cast {post_id} not found")
    data.setdefault("hash", post_id)
    return data


class ApiCastSource(_ApiClient):
    async def fetch(self, post_id: str) -> Post:
        payload = await self._json("GET", "farcaster-cast", params={"hash": post_id})
        return RawCast.model_validate(_unwrap_cast_payload(payload, post_id)).to_post()


class ApiSocialGraphSource(_ApiClient):
    async def thread(self, post_id: str) -> RawThread:
        payload = await self._json("POST", "preserve-thread", json={"castHash": post_id})
        return RawThread.model_validate(payload)

    async def context(self, post_id: str) -> RawContext:
        payload = await self._json("GET", "farcaster-cast", params={"hash": post_id})
        return RawContext.model_validate(_unwrap_cast_payload(payload, post_id))

    async def profiles(self, author_ids: list[str]) -> list[RawProfile]:
        payload = await self._json("POST", "preserve-profiles", json={"fids": author_ids})
        if not isinstance(payload, list):
            raise UpstreamError("preserve-profiles did not return a list")
        return [RawProfile.model_validate(item) for item in payload]


class ApiMediaByteStore(_ApiClient):
    async def store(self, data: bytes, content_type: str) -> StorageRef:
        payload = await self._json(
            "POST",
            "store-media",
            content=data,
            headers={"Content-Type": content_type},
        )
        return StorageRef(
            primary=str(payload.get("ardrive_tx") or ""),
            secondary=payload.get("ipfs_hash") or None,
        )


class ApiBalanceOracle(_ApiClient):
    async def balance_usd(self) -> float:
        payload = await self._json("GET", "check-ardrive-balance")
        return float(payload["balanceUSD"])


class StaticBalanceOracle:
    """Balance supplied up front, e.g. from a CLI flag."""

    def __init__(self, balance: float) -> None:
        self._balance = balance

    async def balance_usd(self) -> float:
        return self._balance


class ApiArtifactStore(_ApiClient):
    async def persist(self, artifact: BackupArtifact) -> ArtifactStorage:
        payload = await self._json("POST", "store-cast-backup", json=artifact.model_dump(mode="json"))
        return ArtifactStorage(
            primary_ref=payload.get("ardrive_tx") or None,
            secondary_ref=payload.get("ipfs_hash") or payload.get("supabase_id") or None,
        )

    async def retrieve(self, preservation_id: str) -> BackupArtifact | None:
        try:
            payload = await self._json("GET", "restore-cast-backup", params={"id": preservation_id})
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise
        return BackupArtifact.model_validate(payload)


def parse_frame_html(html: str, url: str) -> RawFrameMetadata:
    """Collect ``<meta property|name=... content=...>`` pairs and the favicon from a page."""

    soup = BeautifulSoup(html, "html.parser")
    properties: dict[str, str] = {}
    for meta in soup.find_all("meta"):
        key = (meta.get("property") or meta.get("name") or "").strip()
        content = meta.get("content")
        if key and content is not None and key not in properties:
            properties[key] = content.strip()

    title = properties.get("og:title")
    if not title and soup.title and soup.title.string:
        title = soup.title.string.strip()

    favicon = None
    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        if "icon" in [value.lower() for value in rel]:
            favicon = urljoin(url, link["href"])
            break

    return RawFrameMetadata(
        url=url,
        title=title or None,
        image=properties.get("fc:frame:image") or properties.get("og:image"),
        favicon=favicon,
        properties=properties,
    )


class HtmlFrameFetcher:
    """Fetches a frame page directly and reads its meta tags."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch(self, url: str) -> RawFrameMetadata:
        response = await self._client.get(url)
        response.raise_for_status()
        return parse_frame_html(response.text, url)
