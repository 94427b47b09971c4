"""Backup orchestration: fetch a cast, preserve its facets, verify, persist."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar
from uuid import uuid4

from castvault.config import PipelineConfig
from castvault.embeds import dedupe_preserve
from castvault.events import EventBus, Outcome, PipelineEventType
from castvault.frames import FrameExtractor
from castvault.integrity import compute_content_hash, verify_artifact
from castvault.media import MediaPreserver
from castvault.models import (
    ArtifactStorage,
    BackupArtifact,
    BackupFailure,
    BackupOptions,
    BackupRequest,
    BulkBackupResult,
    Completeness,
    ConversationContext,
    CostEstimate,
    Embed,
    EmbedKind,
    FrameData,
    Post,
    PreservedMedia,
    Verification,
    utcnow,
)
from castvault.pricing import CostGate
from castvault.sources import ArtifactStore, CastSource
from castvault.thread import ThreadResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackupError(RuntimeError):
    """Base error for backups that produce no artifact."""


class CastFetchError(BackupError):
    """Raised when the base cast cannot be fetched; nothing is persisted."""

    def __init__(self, post_id: str, reason: str) -> None:
        super().__init__(f"Failed to fetch cast {post_id}: {reason}")
        self.post_id = post_id
        self.reason = reason


class InsufficientFundsError(BackupError):
    """Raised when the cost gate rejects a backup before any work starts."""

    def __init__(self, post_id: str, estimate: CostEstimate) -> None:
        super().__init__(f"Insufficient funds for {post_id}. Need ${estimate.total_usd:.4f} USD")
        self.post_id = post_id
        self.estimate = estimate


class BackupState(str, Enum):
    FETCHING = "fetching"
    PRESERVING_FACETS = "preserving_facets"
    VERIFYING = "verifying"
    PERSISTED = "persisted"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    BackupState.FETCHING: {BackupState.PRESERVING_FACETS, BackupState.FAILED},
    BackupState.PRESERVING_FACETS: {BackupState.VERIFYING},
    BackupState.VERIFYING: {BackupState.PERSISTED},
    BackupState.PERSISTED: set(),
    BackupState.FAILED: set(),
}


def new_preservation_id() -> str:
    return f"cast_{int(time.time() * 1000):x}_{uuid4().hex[:9]}"


def merge_preserved_media(post: Post, preserved: dict[str, PreservedMedia | None]) -> tuple[Embed, ...]:
    return tuple(
        embed.model_copy(update={"preserved_media": preserved.get(embed.url)})
        for embed in post.embeds
    )


def attach_frames(embeds: tuple[Embed, ...], frames: list[FrameData]) -> tuple[Embed, ...]:
    by_url = {frame.frame_url: frame for frame in frames}
    return tuple(
        embed.model_copy(update={"frame": by_url[embed.url], "og_metadata": by_url[embed.url].og_metadata or None})
        if embed.url in by_url
        else embed
        for embed in embeds
    )


def attach_link_metadata(embeds: tuple[Embed, ...], metadata: dict[str, dict[str, str]]) -> tuple[Embed, ...]:
    return tuple(
        embed.model_copy(update={"og_metadata": metadata[embed.url]})
        if embed.og_metadata is None and embed.url in metadata
        else embed
        for embed in embeds
    )


def derive_completeness(
    post: Post,
    context: ConversationContext,
    frames: list[FrameData],
) -> Completeness:
    """Flags follow produced data only, never whether a stage ran."""

    return Completeness(
        text=bool(post.text.strip()),
        media=any(
            embed.preserved_media is not None and embed.preserved_media.is_preserved
            for embed in post.embeds
        ),
        thread=context.thread is not None,
        frames=bool(frames),
        profiles=bool(context.mentioned_profiles),
    )


class _BackupRun:
    """State of one backup call; never shared across calls."""

    def __init__(self, post_id: str, events: EventBus) -> None:
        self.post_id = post_id
        self.preservation_id: str | None = None
        self.state = BackupState.FETCHING
        self._events = events

    def transition(self, state: BackupState) -> None:
        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid backup transition {self.state.value} -> {state.value}")
        logger.debug("Backup %s: %s -> %s", self.post_id, self.state.value, state.value)
        self.state = state
        self._events.emit(
            PipelineEventType.STAGE_CHANGED,
            self.post_id,
            preservation_id=self.preservation_id,
            stage=state.value,
        )


class BackupOrchestrator:
    """Creates complete backups of casts.

    Only a failure to fetch the base cast is fatal. Media, thread, frames,
    profiles and link metadata each degrade to absence and are reported
    through the artifact's completeness flags and ``facet_completed`` events.
    """

    def __init__(
        self,
        source: CastSource,
        media: MediaPreserver,
        threads: ThreadResolver,
        frames: FrameExtractor,
        store: ArtifactStore,
        *,
        cost_gate: CostGate | None = None,
        events: EventBus | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self._source = source
        self._media = media
        self._threads = threads
        self._frames = frames
        self._store = store
        self._cost_gate = cost_gate
        self._events = events or EventBus()
        self._config = config or PipelineConfig()

    @property
    def events(self) -> EventBus:
        return self._events

    async def check_cost(self, post_id: str, options: BackupOptions | None = None) -> CostEstimate:
        options = options or BackupOptions()
        if self._cost_gate is None:
            return CostEstimate(affordable=False, balance_usd=options.balance_usd)
        return await self._cost_gate.estimate(
            BackupRequest(
                post_id=post_id,
                include_media=options.preserve_media,
                include_thread=options.preserve_thread,
                balance_usd=options.balance_usd,
            )
        )

    async def _fetch_post(self, run: _BackupRun) -> Post:
        try:
            post = await asyncio.wait_for(
                self._source.fetch(run.post_id),
                timeout=self._config.call_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise CastFetchError(run.post_id, "timed out") from exc
        except Exception as exc:
            raise CastFetchError(run.post_id, str(exc) or type(exc).__name__) from exc
        if post is None:
            raise CastFetchError(run.post_id, "cast not found")
        return post

    async def _run_facet(
        self,
        run: _BackupRun,
        facet: str,
        operation: Callable[[], Awaitable[T]],
        default: T,
        produced: Callable[[T], bool],
    ) -> T:
        """Run one facet under a deadline; any failure degrades to ``default``."""

        self._events.emit(
            PipelineEventType.FACET_STARTED,
            run.post_id,
            preservation_id=run.preservation_id,
            facet=facet,
        )
        detail = None
        try:
            result = await asyncio.wait_for(operation(), timeout=self._config.facet_timeout_seconds)
        except Exception as exc:
            logger.warning("Facet %s degraded for %s: %s", facet, run.post_id, exc)
            result = default
            detail = str(exc) or type(exc).__name__

        self._events.emit(
            PipelineEventType.FACET_COMPLETED,
            run.post_id,
            preservation_id=run.preservation_id,
            facet=facet,
            outcome=Outcome.OK if produced(result) else Outcome.DEGRADED,
            detail=detail,
        )
        return result

    async def _preserve_media(self, run: _BackupRun, post: Post) -> dict[str, PreservedMedia | None]:
        urls = dedupe_preserve([embed.url for embed in post.embeds])
        return await self._run_facet(
            run,
            "media",
            lambda: self._media.preserve_many(urls),
            {},
            lambda result: any(item is not None and item.is_preserved for item in result.values()),
        )

    async def _preserve_thread(self, run: _BackupRun, post: Post, options: BackupOptions) -> ConversationContext:
        context = await self._run_facet(
            run,
            "thread",
            lambda: self._threads.build_context(post.id, include_profiles=options.preserve_profiles),
            ConversationContext(),
            lambda result: result.thread is not None,
        )
        if options.preserve_profiles:
            self._events.emit(
                PipelineEventType.FACET_COMPLETED,
                run.post_id,
                preservation_id=run.preservation_id,
                facet="profiles",
                outcome=Outcome.OK if context.mentioned_profiles else Outcome.DEGRADED,
            )
        return context

    async def _preserve_frames(self, run: _BackupRun, post: Post) -> list[FrameData]:
        urls = [embed.url for embed in post.embeds]
        return await self._run_facet(
            run,
            "frames",
            lambda: self._frames.extract_frames(urls),
            [],
            bool,
        )

    async def _collect_link_metadata(self, run: _BackupRun, post: Post) -> dict[str, dict[str, str]]:
        urls = [embed.url for embed in post.embeds if embed.kind == EmbedKind.LINK]
        if not urls:
            return {}
        return await self._run_facet(
            run,
            "link_metadata",
            lambda: self._frames.extract_links_metadata(urls),
            {},
            bool,
        )

    async def _skip(self, value: T) -> T:
        return value

    async def _persist(self, run: _BackupRun, artifact: BackupArtifact) -> ArtifactStorage:
        try:
            storage = await asyncio.wait_for(
                self._store.persist(artifact),
                timeout=self._config.call_timeout_seconds,
            )
        except Exception as exc:
            logger.error("Failed to store backup %s: %s", artifact.preservation_id, exc)
            self._events.emit(
                PipelineEventType.ARTIFACT_PERSISTED,
                run.post_id,
                preservation_id=run.preservation_id,
                outcome=Outcome.DEGRADED,
                detail=str(exc) or type(exc).__name__,
            )
            return ArtifactStorage()

        outcome = Outcome.OK if (storage.primary_ref or storage.secondary_ref) else Outcome.DEGRADED
        self._events.emit(
            PipelineEventType.ARTIFACT_PERSISTED,
            run.post_id,
            preservation_id=run.preservation_id,
            outcome=outcome,
        )
        return storage

    async def create_backup(self, post_id: str, options: BackupOptions | None = None) -> BackupArtifact:
        """Create, verify and persist a complete backup of one cast.

        Raises:
            InsufficientFundsError: when ``options.check_cost`` is set and the
                estimate is not affordable.
            CastFetchError: when the base cast cannot be fetched.
        """

        options = options or BackupOptions()
        run = _BackupRun(post_id, self._events)

        if options.check_cost:
            estimate = await self.check_cost(post_id, options)
            if not estimate.affordable:
                raise InsufficientFundsError(post_id, estimate)

        logger.info("Starting complete cast backup for %s", post_id)
        self._events.emit(PipelineEventType.BACKUP_STARTED, post_id)

        try:
            post = await self._fetch_post(run)
        except CastFetchError as exc:
            run.transition(BackupState.FAILED)
            self._events.emit(PipelineEventType.BACKUP_FAILED, post_id, detail=exc.reason)
            raise

        run.preservation_id = new_preservation_id()
        preserved_at = utcnow()
        run.transition(BackupState.PRESERVING_FACETS)

        preserved, context, frames, link_metadata = await asyncio.gather(
            self._preserve_media(run, post) if options.preserve_media else self._skip({}),
            self._preserve_thread(run, post, options) if options.preserve_thread else self._skip(ConversationContext()),
            self._preserve_frames(run, post) if options.preserve_frames else self._skip([]),
            self._collect_link_metadata(run, post) if options.preserve_link_metadata else self._skip({}),
        )

        embeds = attach_frames(merge_preserved_media(post, preserved), frames)
        embeds = attach_link_metadata(embeds, link_metadata)
        enriched_post = post.model_copy(update={"embeds": embeds})

        run.transition(BackupState.VERIFYING)
        artifact = BackupArtifact(
            preservation_id=run.preservation_id,
            version=self._config.backup_version,
            preserved_at=preserved_at,
            post=enriched_post,
            thread=context.thread,
            parent=context.parent,
            mentioned_profiles=context.mentioned_profiles,
            frames=frames,
            verification=Verification(content_hash=compute_content_hash(enriched_post)),
            completeness=derive_completeness(enriched_post, context, frames),
        )
        report = verify_artifact(artifact)
        if not report.valid:
            logger.warning("Backup %s failed integrity checks: %s", artifact.preservation_id, report.issues)

        storage = await self._persist(run, artifact)
        run.transition(BackupState.PERSISTED)

        logger.info("Complete cast backup created: %s", artifact.preservation_id)
        return artifact.model_copy(update={"storage": storage})

    async def _backup_or_failure(
        self, post_id: str, options: BackupOptions | None
    ) -> BackupArtifact | BackupFailure:
        try:
            return await self.create_backup(post_id, options)
        except BackupError as exc:
            logger.error("Failed to backup %s: %s", post_id, exc)
            return BackupFailure(post_id=post_id, reason=str(exc))

    async def run_bulk(self, post_ids: list[str], options: BackupOptions | None = None) -> BulkBackupResult:
        """Back up casts in sequential batches; fatal failures are reported, not raised."""

        result = BulkBackupResult()
        batch_size = self._config.bulk_batch_size

        for start in range(0, len(post_ids), batch_size):
            batch = post_ids[start : start + batch_size]
            outcomes = await asyncio.gather(*(self._backup_or_failure(post_id, options) for post_id in batch))
            for outcome in outcomes:
                if isinstance(outcome, BackupFailure):
                    result.failures.append(outcome)
                else:
                    result.artifacts.append(outcome)

        return result

    async def create_bulk_backup(
        self, post_ids: list[str], options: BackupOptions | None = None
    ) -> list[BackupArtifact]:
        return (await self.run_bulk(post_ids, options)).artifacts

    async def refresh_backup(
        self, artifact: BackupArtifact, options: BackupOptions | None = None
    ) -> BackupArtifact:
        """Back up the same cast again as a new artifact; the old one is untouched."""

        return await self.create_backup(artifact.post.id, options)

    async def restore(self, preservation_id: str) -> BackupArtifact | None:
        try:
            return await asyncio.wait_for(
                self._store.retrieve(preservation_id),
                timeout=self._config.call_timeout_seconds,
            )
        except Exception as exc:
            logger.error("Failed to restore backup %s: %s", preservation_id, exc)
            return None
