"""Conversation context reconstruction from the social graph."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, TypeVar

from dateutil.parser import isoparse

from castvault.config import PipelineConfig
from castvault.models import (
    ConversationContext,
    ParentRef,
    Participant,
    Profile,
    ReplyRef,
    ThreadData,
    ThreadUpdateCheck,
)
from castvault.sources import RawContext, RawThread, SocialGraphSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


def aggregate_participants(replies: list[ReplyRef]) -> list[Participant]:
    """Group replies by author, keeping first-appearance order."""

    by_author: dict[str, Participant] = {}
    for reply in replies:
        participant = by_author.get(reply.author_id)
        if participant is None:
            by_author[reply.author_id] = Participant(
                author_id=reply.author_id,
                handle=reply.handle,
                reply_count=1,
            )
        else:
            participant.reply_count += 1
    return list(by_author.values())


def format_thread(raw: RawThread) -> ThreadData:
    reply_chain = [
        ReplyRef(
            **reply.to_ref().model_dump(),
            depth=reply.depth if reply.depth is not None else index,
        )
        for index, reply in enumerate(raw.replies)
    ]
    return ThreadData(
        thread_id=raw.thread_hash,
        root_post=raw.root_cast.to_ref() if raw.root_cast else None,
        reply_chain=reply_chain,
        total_replies=raw.total_replies or len(reply_chain),
        participants=aggregate_participants(reply_chain),
    )


def _parse_instant(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = isoparse(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ThreadResolver:
    """Resolves threads, parents and profiles; every lookup fails soft."""

    def __init__(self, graph: SocialGraphSource, *, config: PipelineConfig | None = None) -> None:
        self._graph = graph
        self._config = config or PipelineConfig()

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._config.call_timeout_seconds)

    async def resolve_thread(self, post_id: str) -> ThreadData | None:
        try:
            raw = await self._call(self._graph.thread(post_id))
            return format_thread(raw)
        except Exception as exc:
            logger.warning("Thread lookup failed for %s: %s", post_id, exc)
            return None

    async def _fetch_context(self, post_id: str) -> RawContext | None:
        try:
            return await self._call(self._graph.context(post_id))
        except Exception as exc:
            logger.warning("Context lookup failed for %s: %s", post_id, exc)
            return None

    async def _parent_from_context(self, context: RawContext) -> ParentRef | None:
        if not context.parent_hash:
            return None
        parent_context = await self._fetch_context(context.parent_hash)
        try:
            if parent_context is not None:
                return parent_context.as_parent()
            return context.embedded_parent()
        except Exception as exc:
            logger.warning("Parent conversion failed for %s: %s", context.parent_hash, exc)
            return None

    async def resolve_parent(self, post_id: str) -> ParentRef | None:
        context = await self._fetch_context(post_id)
        if context is None:
            return None
        return await self._parent_from_context(context)

    async def resolve_profiles(self, author_ids: list[str]) -> list[Profile]:
        if not author_ids:
            return []
        try:
            raw_profiles = await self._call(self._graph.profiles(list(author_ids)))
            return [raw.to_profile() for raw in raw_profiles]
        except Exception as exc:
            logger.warning("Profile lookup failed for %s: %s", author_ids, exc)
            return []

    async def build_context(self, post_id: str, *, include_profiles: bool = True) -> ConversationContext:
        """Thread and base context first, then parent and mentioned profiles."""

        thread, context = await asyncio.gather(
            self.resolve_thread(post_id),
            self._fetch_context(post_id),
        )
        if context is None:
            return ConversationContext(thread=thread)

        mentioned = context.mentioned_ids() if include_profiles else []
        parent, profiles = await asyncio.gather(
            self._parent_from_context(context),
            self.resolve_profiles(mentioned),
        )
        return ConversationContext(thread=thread, parent=parent, mentioned_profiles=profiles)

    async def check_updates(self, thread_id: str, since: datetime) -> ThreadUpdateCheck:
        """Count replies newer than ``since``; no updates when the thread is unavailable."""

        thread = await self.resolve_thread(thread_id)
        if thread is None:
            return ThreadUpdateCheck(has_updates=False)

        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        newer = 0
        for reply in thread.reply_chain:
            instant = _parse_instant(reply.timestamp)
            if instant is not None and instant > since:
                newer += 1
        return ThreadUpdateCheck(has_updates=newer > 0, new_reply_count=newer)
