"""Wiring of collaborators into a ready-to-use orchestrator."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from castvault.backup import BackupOrchestrator
from castvault.clients import (
    ApiArtifactStore,
    ApiBalanceOracle,
    ApiCastSource,
    ApiMediaByteStore,
    ApiSocialGraphSource,
    HtmlFrameFetcher,
    StaticBalanceOracle,
    build_http_client,
)
from castvault.config import PipelineConfig
from castvault.events import EventBus, EventSink, LoggingEventSink
from castvault.frames import FrameExtractor
from castvault.media import MediaPreserver
from castvault.models import BackupArtifact, BackupOptions, BackupReport, CostEstimate
from castvault.pricing import CostGate
from castvault.sources import ArtifactStore, BalanceOracle, MediaByteStore
from castvault.storage import LocalArtifactStore, LocalBlobStore
from castvault.thread import ThreadResolver


@asynccontextmanager
async def open_orchestrator(
    config: PipelineConfig,
    *,
    store_dir: Path | None = None,
    balance_usd: float | None = None,
    sinks: list[EventSink] | None = None,
) -> AsyncIterator[BackupOrchestrator]:
    """Yield an orchestrator backed by the HTTP API.

    With ``store_dir`` set, media and artifacts are written to local
    content-addressed storage instead of the remote storage endpoints.
    """

    async with build_http_client(config) as client:
        byte_store: MediaByteStore
        artifact_store: ArtifactStore
        if store_dir is not None:
            byte_store = LocalBlobStore(store_dir / "media")
            artifact_store = LocalArtifactStore(store_dir / "artifacts")
        else:
            byte_store = ApiMediaByteStore(client, config)
            artifact_store = ApiArtifactStore(client, config)

        oracle: BalanceOracle = (
            StaticBalanceOracle(balance_usd) if balance_usd is not None else ApiBalanceOracle(client, config)
        )
        source = ApiCastSource(client, config)
        media = MediaPreserver(byte_store, client=client, config=config)

        yield BackupOrchestrator(
            source,
            media,
            ThreadResolver(ApiSocialGraphSource(client, config), config=config),
            FrameExtractor(HtmlFrameFetcher(client), media=media, config=config),
            artifact_store,
            cost_gate=CostGate(source, balance_oracle=oracle, client=client, config=config),
            events=EventBus(sinks if sinks is not None else [LoggingEventSink()]),
            config=config,
        )


def _write_artifact(artifact: BackupArtifact, output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"{artifact.preservation_id}.json"
    path.write_text(artifact.model_dump_json(indent=2), encoding="utf-8")
    return path


async def _run_backups(
    cast_hashes: list[str],
    config: PipelineConfig,
    options: BackupOptions,
    store_dir: Path | None,
    output_dir: Path | None,
) -> BackupReport:
    async with open_orchestrator(config, store_dir=store_dir, balance_usd=options.balance_usd) as orchestrator:
        result = await orchestrator.run_bulk(cast_hashes, options)

    if output_dir is not None:
        for artifact in result.artifacts:
            _write_artifact(artifact, output_dir)

    return BackupReport(
        total=len(cast_hashes),
        succeeded=len(result.artifacts),
        failed=len(result.failures),
        preservation_ids=[artifact.preservation_id for artifact in result.artifacts],
        failures=[f"{failure.post_id}: {failure.reason}" for failure in result.failures],
    )


def run_backups(
    cast_hashes: list[str],
    config: PipelineConfig,
    *,
    options: BackupOptions | None = None,
    store_dir: Path | None = None,
    output_dir: Path | None = None,
) -> BackupReport:
    """Back up casts and optionally write each artifact as JSON into ``output_dir``."""

    if not cast_hashes:
        raise ValueError("No casts to back up")

    return asyncio.run(_run_backups(cast_hashes, config, options or BackupOptions(), store_dir, output_dir))


async def _estimate(cast_hash: str, config: PipelineConfig, options: BackupOptions) -> CostEstimate:
    async with open_orchestrator(config, balance_usd=options.balance_usd) as orchestrator:
        return await orchestrator.check_cost(cast_hash, options)


def estimate_cost(cast_hash: str, config: PipelineConfig, *, options: BackupOptions | None = None) -> CostEstimate:
    return asyncio.run(_estimate(cast_hash, config, options or BackupOptions()))


async def _restore(preservation_id: str, config: PipelineConfig, store_dir: Path | None) -> BackupArtifact | None:
    async with open_orchestrator(config, store_dir=store_dir) as orchestrator:
        return await orchestrator.restore(preservation_id)


def restore_backup(
    preservation_id: str, config: PipelineConfig, *, store_dir: Path | None = None
) -> BackupArtifact | None:
    return asyncio.run(_restore(preservation_id, config, store_dir))
