"""Collaborator protocols and the raw upstream records they exchange.

Raw payloads are parsed into the ``Raw*`` records at the boundary and then
converted to the domain models in one step, so nothing downstream handles
untyped dictionaries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from dateutil.parser import isoparse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from castvault.embeds import classify_embed
from castvault.models import (
    ArtifactStorage,
    BackupArtifact,
    Embed,
    Engagement,
    ParentRef,
    Post,
    PostRef,
    Profile,
    StorageRef,
)


def normalize_timestamp(raw: Any) -> str:
    """Render an upstream timestamp (ISO string or epoch seconds/ms) as ISO-8601 UTC."""

    if raw is None or raw == "":
        return ""
    if isinstance(raw, (int, float)):
        seconds = raw / 1000 if raw > 1e12 else raw
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            # Out of the platform's range; keep the upstream value verbatim.
            return str(raw)
    text = str(raw).strip()
    try:
        parsed = isoparse(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc).isoformat()
    except (ValueError, OverflowError):
        return text


class _RawRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RawAuthor(_RawRecord):
    fid: str = ""
    username: str = ""
    display_name: str | None = Field(default=None, alias="displayName")

    @field_validator("fid", mode="before")
    @classmethod
    def _coerce_fid(cls, value: Any) -> str:
        return "" if value is None else str(value)


class RawEmbed(_RawRecord):
    url: str = ""


class RawCast(_RawRecord):
    hash: str
    author: RawAuthor = Field(default_factory=RawAuthor)
    text: str = ""
    timestamp: Any = None
    likes: int = 0
    recasts: int = 0
    replies: int = 0
    embeds: list[RawEmbed] = Field(default_factory=list)

    def to_post(self) -> Post:
        embeds = [
            Embed(url=embed.url, kind=classify_embed(embed.url))
            for embed in self.embeds
            if embed.url.strip()
        ]
        return Post(
            id=self.hash,
            author=self.author.display_name or self.author.username or "Unknown",
            author_handle=self.author.username or "unknown",
            text=self.text,
            timestamp=normalize_timestamp(self.timestamp),
            engagement=Engagement(likes=self.likes, reshares=self.recasts, replies=self.replies),
            embeds=tuple(embeds),
        )


class RawThreadCast(_RawRecord):
    hash: str
    author: RawAuthor = Field(default_factory=RawAuthor)
    text: str = ""
    timestamp: Any = None
    depth: int | None = None

    def to_ref(self) -> PostRef:
        return PostRef(
            id=self.hash,
            author_id=self.author.fid,
            handle=self.author.username,
            text=self.text,
            timestamp=normalize_timestamp(self.timestamp),
        )


class RawThread(_RawRecord):
    thread_hash: str
    root_cast: RawThreadCast | None = None
    replies: list[RawThreadCast] = Field(default_factory=list)
    total_replies: int = 0


class RawMention(_RawRecord):
    fid: str | None = None

    @field_validator("fid", mode="before")
    @classmethod
    def _coerce_fid(cls, value: Any) -> str | None:
        return None if value in (None, "") else str(value)


class RawContext(_RawRecord):
    """Context of one cast: its author, parent pointer and mentions."""

    hash: str
    author: RawAuthor = Field(default_factory=RawAuthor)
    text: str = ""
    timestamp: Any = None
    parent_hash: str | None = None
    parent_author: RawAuthor | None = None
    parent_text: str | None = None
    parent_timestamp: Any = None
    mentioned_profiles: list[RawMention] = Field(default_factory=list)

    def mentioned_ids(self) -> list[str]:
        return [mention.fid for mention in self.mentioned_profiles if mention.fid]

    def as_parent(self) -> ParentRef:
        return ParentRef(
            id=self.hash,
            author_id=self.author.fid,
            handle=self.author.username,
            text=self.text,
            timestamp=normalize_timestamp(self.timestamp),
        )

    def embedded_parent(self) -> ParentRef | None:
        if not self.parent_hash:
            return None
        author = self.parent_author or RawAuthor()
        return ParentRef(
            id=self.parent_hash,
            author_id=author.fid,
            handle=author.username,
            text=self.parent_text or "",
            timestamp=normalize_timestamp(self.parent_timestamp),
        )


class RawProfile(_RawRecord):
    fid: str
    username: str = ""
    display_name: str | None = None
    pfp_url: str | None = None
    bio: str | None = None
    follower_count: int = 0
    following_count: int = 0
    verified_addresses: list[str] = Field(default_factory=list)
    power_badge: bool = False

    @field_validator("fid", mode="before")
    @classmethod
    def _coerce_fid(cls, value: Any) -> str:
        return str(value)

    @field_validator("bio", mode="before")
    @classmethod
    def _flatten_bio(cls, value: Any) -> str | None:
        # Neynar-style payloads nest the bio as {"text": ...}.
        if isinstance(value, dict):
            return value.get("text")
        return value

    @field_validator("verified_addresses", mode="before")
    @classmethod
    def _flatten_addresses(cls, value: Any) -> list[str]:
        if isinstance(value, dict):
            return list(value.get("eth_addresses") or [])
        return list(value or [])

    def to_profile(self) -> Profile:
        return Profile(
            author_id=self.fid,
            handle=self.username,
            display_name=self.display_name,
            avatar_url=self.pfp_url,
            bio=self.bio,
            follower_count=self.follower_count,
            following_count=self.following_count,
            verified_addresses=self.verified_addresses,
            power_badge=self.power_badge,
        )


class RawFrameMetadata(_RawRecord):
    """Meta properties scraped from an embed page (``fc:frame:*``, ``og:*``, favicon)."""

    url: str
    title: str | None = None
    image: str | None = None
    favicon: str | None = None
    properties: dict[str, str] = Field(default_factory=dict)


class CastSource(Protocol):
    async def fetch(self, post_id: str) -> Post:
        ...


class MediaByteStore(Protocol):
    async def store(self, data: bytes, content_type: str) -> StorageRef:
        ...


class SocialGraphSource(Protocol):
    async def thread(self, post_id: str) -> RawThread:
        ...

    async def context(self, post_id: str) -> RawContext:
        ...

    async def profiles(self, author_ids: list[str]) -> list[RawProfile]:
        ...


class FrameFetcher(Protocol):
    async def fetch(self, url: str) -> RawFrameMetadata:
        ...


class BalanceOracle(Protocol):
    async def balance_usd(self) -> float:
        ...


class ArtifactStore(Protocol):
    async def persist(self, artifact: BackupArtifact) -> ArtifactStorage:
        ...

    async def retrieve(self, preservation_id: str) -> BackupArtifact | None:
        ...
