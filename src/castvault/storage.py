"""Local storage backends: content-addressed blobs and artifact records."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import mimetypes
from pathlib import Path
from uuid import uuid4

from castvault.models import ArtifactStorage, BackupArtifact, StorageRef

logger = logging.getLogger(__name__)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class LocalBlobStore:
    """Stores bytes under ``root/<aa>/<sha256>``; the digest is the address."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def write_blob(self, data: bytes, content_type: str) -> StorageRef:
        digest = sha256_hex(data)
        path = self.path_for(digest)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            # Unique per writer; concurrent writers of one digest each replace atomically.
            tmp_path = path.with_name(f"{digest}.{uuid4().hex}.tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
            logger.debug("Stored %d bytes (%s) as %s", len(data), content_type, digest)

        extension = mimetypes.guess_extension(content_type) or ""
        return StorageRef(primary=f"sha256:{digest}", secondary=f"{digest}{extension}" if extension else None)

    async def store(self, data: bytes, content_type: str) -> StorageRef:
        return await asyncio.to_thread(self.write_blob, data, content_type)

    def read(self, ref: StorageRef) -> bytes | None:
        digest = ref.primary.removeprefix("sha256:")
        path = self.path_for(digest)
        return path.read_bytes() if path.exists() else None


class LocalArtifactStore:
    """Writes each artifact as ``<preservation_id>.json`` plus a content-addressed copy."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._blobs = LocalBlobStore(root / "blobs")

    def _record_path(self, preservation_id: str) -> Path:
        return self.root / f"{preservation_id}.json"

    def _write(self, artifact: BackupArtifact) -> ArtifactStorage:
        payload = artifact.model_dump_json(indent=2).encode("utf-8")
        record_path = self._record_path(artifact.preservation_id)
        if record_path.exists():
            raise FileExistsError(f"Artifact {artifact.preservation_id} is already persisted")

        record_path.parent.mkdir(parents=True, exist_ok=True)
        record_path.write_bytes(payload)
        blob_ref = self._blobs.write_blob(payload, "application/json")
        return ArtifactStorage(primary_ref=str(record_path), secondary_ref=blob_ref.primary)

    async def persist(self, artifact: BackupArtifact) -> ArtifactStorage:
        return await asyncio.to_thread(self._write, artifact)

    async def retrieve(self, preservation_id: str) -> BackupArtifact | None:
        path = self._record_path(preservation_id)
        if not path.exists():
            return None
        raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return BackupArtifact.model_validate(json.loads(raw))


class InMemoryArtifactStore:
    """Process-local artifact store."""

    def __init__(self) -> None:
        self._artifacts: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._artifacts)

    async def persist(self, artifact: BackupArtifact) -> ArtifactStorage:
        if artifact.preservation_id in self._artifacts:
            raise ValueError(f"Artifact {artifact.preservation_id} is already persisted")
        payload = artifact.model_dump_json()
        self._artifacts[artifact.preservation_id] = payload
        return ArtifactStorage(
            primary_ref=f"memory:{artifact.preservation_id}",
            secondary_ref=f"sha256:{sha256_hex(payload.encode('utf-8'))}",
        )

    async def retrieve(self, preservation_id: str) -> BackupArtifact | None:
        payload = self._artifacts.get(preservation_id)
        return BackupArtifact.model_validate_json(payload) if payload is not None else None
