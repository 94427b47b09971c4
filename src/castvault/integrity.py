"""Content hashing and post-hoc integrity checks for backup artifacts."""

from __future__ import annotations

import hashlib
import json

from castvault.models import BackupArtifact, IntegrityReport, Post


def canonical_content(post: Post) -> str:
    """Serialize the hashed fields with fixed key order and compact separators."""

    payload = {
        "id": post.id,
        "author": post.author,
        "text": post.text,
        "timestamp": post.timestamp,
        "embeds": [embed.url for embed in post.embeds],
    }
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def compute_content_hash(post: Post) -> str:
    return hashlib.sha256(canonical_content(post).encode("utf-8")).hexdigest()


def _facet_presence(artifact: BackupArtifact) -> dict[str, bool]:
    return {
        "text": bool(artifact.post.text.strip()),
        "media": any(
            embed.preserved_media is not None and embed.preserved_media.is_preserved
            for embed in artifact.post.embeds
        ),
        "thread": artifact.thread is not None,
        "frames": bool(artifact.frames),
        "profiles": bool(artifact.mentioned_profiles),
    }


def verify_artifact(artifact: BackupArtifact) -> IntegrityReport:
    """Recompute the hash and cross-check storage refs and completeness flags."""

    issues: list[str] = []

    expected = compute_content_hash(artifact.post)
    if artifact.verification.content_hash != expected:
        issues.append("Content hash mismatch")

    for embed in artifact.post.embeds:
        if embed.preserved_media is not None and not embed.preserved_media.is_preserved:
            issues.append(f"Media not preserved: {embed.url}")

    for frame in artifact.frames:
        if frame.preserved_image is not None and not frame.preserved_image.is_preserved:
            issues.append(f"Frame image not preserved: {frame.frame_url}")

    flags = artifact.completeness.model_dump()
    for facet, present in _facet_presence(artifact).items():
        if flags[facet] and not present:
            issues.append(f"{facet.capitalize()} marked complete but missing data")
        elif present and not flags[facet]:
            issues.append(f"{facet.capitalize()} data present but not marked complete")

    return IntegrityReport(valid=not issues, issues=issues)
