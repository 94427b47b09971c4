from castvault.integrity import canonical_content, compute_content_hash, verify_artifact
from castvault.models import (
    BackupArtifact,
    Completeness,
    Embed,
    EmbedKind,
    PreservedMedia,
    StorageRef,
    ThreadData,
    Verification,
)

from conftest import make_post

IMAGE_URL = "https://cdn.example.com/a.png"


def build_artifact(post, **overrides) -> BackupArtifact:
    fields = {
        "preservation_id": "cast_1_abc",
        "version": "2.0.0",
        "post": post,
        "verification": Verification(content_hash=compute_content_hash(post)),
        "completeness": Completeness(text=True),
    }
    fields.update(overrides)
    return BackupArtifact(**fields)


def test_canonical_content_has_fixed_key_order() -> None:
    content = canonical_content(make_post(embed_urls=[IMAGE_URL]))
    assert content.startswith('{"id":"0xabc12345","author":"Alice Example","text":')
    assert content.endswith(f'"embeds":["{IMAGE_URL}"]}}')


def test_content_hash_is_deterministic_and_ignores_preservation_state() -> None:
    post = make_post(embed_urls=[IMAGE_URL])
    preserved = post.model_copy(
        update={
            "embeds": (
                Embed(
                    url=IMAGE_URL,
                    kind=EmbedKind.IMAGE,
                    preserved_media=PreservedMedia(
                        original_url=IMAGE_URL,
                        storage_ref=StorageRef(primary="sha256:1"),
                        content_type="image/png",
                        size_bytes=1,
                    ),
                ),
            )
        }
    )

    assert compute_content_hash(post) == compute_content_hash(make_post(embed_urls=[IMAGE_URL]))
    assert compute_content_hash(post) == compute_content_hash(preserved)
    assert len(compute_content_hash(post)) == 64


def test_content_hash_changes_with_text() -> None:
    assert compute_content_hash(make_post(text="gm")) != compute_content_hash(make_post(text="gn"))


def test_verify_artifact_accepts_consistent_artifact() -> None:
    report = verify_artifact(build_artifact(make_post()))
    assert report.valid is True
    assert report.issues == []


def test_verify_artifact_detects_tampered_text() -> None:
    artifact = build_artifact(make_post())
    tampered = artifact.model_copy(update={"post": make_post(text="edited")})

    report = verify_artifact(tampered)

    assert report.valid is False
    assert "Content hash mismatch" in report.issues


def test_verify_artifact_flags_empty_storage_refs() -> None:
    post = make_post(embed_urls=[IMAGE_URL])
    post = post.model_copy(
        update={
            "embeds": (
                post.embeds[0].model_copy(
                    update={
                        "preserved_media": PreservedMedia(
                            original_url=IMAGE_URL,
                            storage_ref=StorageRef(),
                            content_type="image/png",
                            size_bytes=1,
                        )
                    }
                ),
            )
        }
    )

    report = verify_artifact(build_artifact(post))

    assert f"Media not preserved: {IMAGE_URL}" in report.issues


def test_verify_artifact_checks_completeness_in_both_directions() -> None:
    artifact = build_artifact(
        make_post(),
        thread=ThreadData(thread_id="0xabc12345"),
        completeness=Completeness(text=True, media=True),
    )

    report = verify_artifact(artifact)

    assert "Media marked complete but missing data" in report.issues
    assert "Thread data present but not marked complete" in report.issues
