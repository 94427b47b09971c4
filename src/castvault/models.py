"""Domain models used by castvault."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmbedKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    GIF = "gif"
    FRAME = "frame"
    LINK = "link"


class Engagement(BaseModel):
    likes: int = 0
    reshares: int = 0
    replies: int = 0


class StorageRef(BaseModel):
    """Backend content addresses for one stored blob."""

    primary: str = ""
    secondary: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.primary or "").strip() and not (self.secondary or "").strip()


class Dimensions(BaseModel):
    width: int
    height: int


class PreservedMedia(BaseModel):
    """A durably stored copy of one remote media asset."""

    original_url: str
    storage_ref: StorageRef
    content_type: str
    size_bytes: int = Field(ge=0)
    dimensions: Dimensions | None = None
    preserved_at: datetime = Field(default_factory=utcnow)

    @property
    def is_preserved(self) -> bool:
        return not self.storage_ref.is_empty


class FrameButton(BaseModel):
    index: int = Field(ge=1, le=4)
    title: str
    action_type: str = "post"
    target: str | None = None


class FrameData(BaseModel):
    """Interactive frame metadata captured from an embed URL."""

    frame_url: str
    title: str | None = None
    image: str | None = None
    preserved_image: PreservedMedia | None = None
    buttons: list[FrameButton] = Field(default_factory=list, max_length=4)
    input_text: str | None = None
    state: str | None = None
    post_url: str | None = None
    version: str = "vNext"
    og_metadata: dict[str, str] = Field(default_factory=dict)


class FrameValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class Embed(BaseModel):
    url: str
    kind: EmbedKind = EmbedKind.LINK
    preserved_media: PreservedMedia | None = None
    frame: FrameData | None = None
    og_metadata: dict[str, str] | None = None


class Post(BaseModel):
    """A fetched cast. Read-only once fetched."""

    model_config = ConfigDict(frozen=True)

    id: str
    author: str
    author_handle: str
    text: str
    timestamp: str
    engagement: Engagement = Field(default_factory=Engagement)
    embeds: tuple[Embed, ...] = ()


class PostRef(BaseModel):
    id: str
    author_id: str
    handle: str
    text: str = ""
    timestamp: str = ""


class ReplyRef(PostRef):
    depth: int = Field(default=0, ge=0)


class Participant(BaseModel):
    author_id: str
    handle: str
    reply_count: int = Field(default=1, ge=1)


class ThreadData(BaseModel):
    thread_id: str
    root_post: PostRef | None = None
    reply_chain: list[ReplyRef] = Field(default_factory=list)
    total_replies: int = 0
    participants: list[Participant] = Field(default_factory=list)


class ParentRef(BaseModel):
    id: str
    author_id: str = ""
    handle: str = ""
    text: str = ""
    timestamp: str = ""
    # Parents are never preserved recursively; the flag stays False.
    preserved: bool = False


class Profile(BaseModel):
    author_id: str
    handle: str
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    follower_count: int = 0
    following_count: int = 0
    verified_addresses: list[str] = Field(default_factory=list)
    power_badge: bool = False
    snapshot_at: datetime = Field(default_factory=utcnow)


class ConversationContext(BaseModel):
    thread: ThreadData | None = None
    parent: ParentRef | None = None
    mentioned_profiles: list[Profile] = Field(default_factory=list)


class ThreadUpdateCheck(BaseModel):
    has_updates: bool
    new_reply_count: int = 0


class Verification(BaseModel):
    content_hash: str
    computed_at: datetime = Field(default_factory=utcnow)


class Completeness(BaseModel):
    text: bool = False
    media: bool = False
    thread: bool = False
    frames: bool = False
    profiles: bool = False


class ArtifactStorage(BaseModel):
    primary_ref: str | None = None
    secondary_ref: str | None = None


class BackupArtifact(BaseModel):
    """Composite, verifiable backup of one cast."""

    preservation_id: str
    version: str
    preserved_at: datetime = Field(default_factory=utcnow)
    post: Post
    thread: ThreadData | None = None
    parent: ParentRef | None = None
    mentioned_profiles: list[Profile] = Field(default_factory=list)
    frames: list[FrameData] = Field(default_factory=list)
    verification: Verification
    completeness: Completeness
    storage: ArtifactStorage = Field(default_factory=ArtifactStorage)


class BackupOptions(BaseModel):
    preserve_media: bool = True
    preserve_thread: bool = True
    preserve_frames: bool = True
    preserve_profiles: bool = True
    preserve_link_metadata: bool = True
    check_cost: bool = False
    balance_usd: float | None = None


class BackupRequest(BaseModel):
    post_id: str
    include_media: bool = True
    include_thread: bool = False
    balance_usd: float | None = None


class MediaCostItem(BaseModel):
    url: str
    kind: EmbedKind
    size_bytes: int
    cost_usd: float


class CostEstimate(BaseModel):
    media_cost_usd: float = 0.0
    storage_cost_usd: float = 0.0
    total_usd: float = 0.0
    credits_needed: float = 0.0
    affordable: bool = False
    balance_usd: float | None = None
    media_files: list[MediaCostItem] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    valid: bool
    issues: list[str] = Field(default_factory=list)


class BackupFailure(BaseModel):
    post_id: str
    reason: str


class BulkBackupResult(BaseModel):
    artifacts: list[BackupArtifact] = Field(default_factory=list)
    failures: list[BackupFailure] = Field(default_factory=list)


class BackupReport(BaseModel):
    """Final summary returned by run_backups."""

    total: int
    succeeded: int
    failed: int
    preservation_ids: list[str] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)
