from __future__ import annotations

import asyncio
import hashlib
from io import BytesIO

import httpx
import pytest
from PIL import Image

from castvault.backup import BackupOrchestrator
from castvault.config import PipelineConfig
from castvault.events import EventBus, RecordingEventSink
from castvault.frames import FrameExtractor
from castvault.media import MediaPreserver
from castvault.models import Embed, Post, StorageRef
from castvault.embeds import classify_embed
from castvault.sources import RawContext, RawFrameMetadata, RawProfile, RawThread
from castvault.storage import InMemoryArtifactStore
from castvault.thread import ThreadResolver


def png_bytes(width: int = 4, height: int = 3) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), color=(200, 10, 10)).save(buffer, format="PNG")
    return buffer.getvalue()


def make_post(post_id: str = "0xabc12345", embed_urls: list[str] | None = None, text: str = "gm farcaster") -> Post:
    return Post(
        id=post_id,
        author="Alice Example",
        author_handle="alice",
        text=text,
        timestamp="2024-03-01T12:00:00+00:00",
        embeds=[Embed(url=url, kind=classify_embed(url)) for url in embed_urls or []],
    )


class FakeCastSource:
    def __init__(self, posts: dict[str, Post]) -> None:
        self.posts = posts
        self.calls: list[str] = []

    async def fetch(self, post_id: str) -> Post:
        self.calls.append(post_id)
        if post_id not in self.posts:
            raise LookupError(f"cast {post_id} not found")
        return self.posts[post_id]


class RecordingByteStore:
    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[tuple[int, str]] = []

    async def store(self, data: bytes, content_type: str) -> StorageRef:
        self.calls.append((len(data), content_type))
        if self.delay:
            await asyncio.sleep(self.delay)
        return StorageRef(primary=f"sha256:{hashlib.sha256(data).hexdigest()}")


class FakeSocialGraph:
    def __init__(
        self,
        threads: dict[str, RawThread] | None = None,
        contexts: dict[str, RawContext] | None = None,
        profiles: list[RawProfile] | None = None,
        fail_thread: bool = False,
        fail_context: bool = False,
    ) -> None:
        self.threads = threads or {}
        self.contexts = contexts or {}
        self.profile_records = profiles or []
        self.fail_thread = fail_thread
        self.fail_context = fail_context
        self.profile_calls: list[list[str]] = []
        self.context_calls: list[str] = []

    async def thread(self, post_id: str) -> RawThread:
        if self.fail_thread or post_id not in self.threads:
            raise ConnectionError("thread service unavailable")
        return self.threads[post_id]

    async def context(self, post_id: str) -> RawContext:
        self.context_calls.append(post_id)
        if self.fail_context or post_id not in self.contexts:
            raise ConnectionError("context service unavailable")
        return self.contexts[post_id]

    async def profiles(self, author_ids: list[str]) -> list[RawProfile]:
        self.profile_calls.append(author_ids)
        return [profile for profile in self.profile_records if profile.fid in author_ids]


class FakeFrameFetcher:
    def __init__(self, pages: dict[str, RawFrameMetadata] | None = None) -> None:
        self.pages = pages or {}
        self.calls: list[str] = []

    async def fetch(self, url: str) -> RawFrameMetadata:
        self.calls.append(url)
        if url not in self.pages:
            raise ConnectionError(f"no frame at {url}")
        return self.pages[url]


class MediaServer:
    """httpx MockTransport handler serving fixed media responses."""

    def __init__(self, routes: dict[str, tuple[int, str, bytes]]) -> None:
        self.routes = routes
        self.hits: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.hits.append(url)
        if url not in self.routes:
            return httpx.Response(404, content=b"not found")
        status, content_type, body = self.routes[url]
        return httpx.Response(status, headers={"content-type": content_type}, content=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def sample_thread(post_id: str = "0xabc12345") -> RawThread:
    return RawThread.model_validate(
        {
            "thread_hash": post_id,
            "root_cast": {"hash": post_id, "author": {"fid": 1, "username": "alice"}, "text": "gm farcaster"},
            "replies": [
                {"hash": "0xr1", "author": {"fid": 2, "username": "bob"}, "text": "gm", "timestamp": "2024-03-01T12:05:00Z"},
                {"hash": "0xr2", "author": {"fid": 3, "username": "carol"}, "text": "hi", "timestamp": "2024-03-01T12:06:00Z"},
                {"hash": "0xr3", "author": {"fid": 2, "username": "bob"}, "text": "again", "timestamp": "2024-03-01T12:07:00Z", "depth": 2},
            ],
            "total_replies": 3,
        }
    )


def sample_context(post_id: str = "0xabc12345") -> RawContext:
    return RawContext.model_validate(
        {
            "hash": post_id,
            "author": {"fid": 1, "username": "alice"},
            "text": "gm farcaster",
            "parent_hash": "0xparent01",
            "parent_author": {"fid": 9, "username": "dan"},
            "parent_text": "what's up",
            "mentioned_profiles": [{"fid": 2}, {"fid": 3}],
        }
    )


def sample_profiles() -> list[RawProfile]:
    return [
        RawProfile.model_validate({"fid": 2, "username": "bob", "follower_count": 10}),
        RawProfile.model_validate({"fid": 3, "username": "carol", "profile": None}),
    ]


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(call_timeout_seconds=5.0, request_timeout_seconds=5.0)


@pytest.fixture
def build_orchestrator(config: PipelineConfig):
    def _build(
        *,
        posts: dict[str, Post],
        media_routes: dict[str, tuple[int, str, bytes]] | None = None,
        graph: FakeSocialGraph | None = None,
        frame_pages: dict[str, RawFrameMetadata] | None = None,
        store=None,
        cost_gate=None,
        source=None,
        settings: PipelineConfig | None = None,
    ):
        settings = settings or config
        server = MediaServer(media_routes or {})
        client = server.client()
        byte_store = RecordingByteStore()
        media = MediaPreserver(byte_store, client=client, config=settings)
        sink = RecordingEventSink()
        orchestrator = BackupOrchestrator(
            source if source is not None else FakeCastSource(posts),
            media,
            ThreadResolver(graph or FakeSocialGraph(), config=settings),
            FrameExtractor(FakeFrameFetcher(frame_pages), media=media, config=settings),
            store if store is not None else InMemoryArtifactStore(),
            cost_gate=cost_gate,
            events=EventBus([sink]),
            config=settings,
        )
        return orchestrator, sink, byte_store, server

    return _build
