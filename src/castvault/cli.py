"""Typer CLI entrypoint for castvault."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import typer
from pydantic import ValidationError

from castvault.config import PipelineConfig
from castvault.input import load_cast_file, parse_cast_hash
from castvault.integrity import verify_artifact
from castvault.models import BackupArtifact, BackupOptions, BackupReport
from castvault.pipeline import estimate_cost, restore_backup, run_backups

app = typer.Typer(help="Preserve Farcaster casts as verifiable, content-addressed backups.", no_args_is_help=True)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """castvault command group."""

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(api_base: str | None) -> PipelineConfig:
    try:
        config = PipelineConfig()
        if api_base:
            config = config.model_copy(update={"api_base": api_base})
    except ValidationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    return config


def _options(
    *,
    media: bool,
    thread: bool,
    frames: bool,
    profiles: bool,
    link_metadata: bool,
    check_cost: bool,
    balance: float | None,
) -> BackupOptions:
    return BackupOptions(
        preserve_media=media,
        preserve_thread=thread,
        preserve_frames=frames,
        preserve_profiles=profiles,
        preserve_link_metadata=link_metadata,
        check_cost=check_cost,
        balance_usd=balance,
    )


def _echo_report(report: BackupReport) -> None:
    typer.echo(f"Processed {report.total} cast(s): {report.succeeded} succeeded, {report.failed} failed.")
    for preservation_id in report.preservation_ids:
        typer.echo(f"Backup: {preservation_id}")

    if report.failures:
        typer.echo("Failures:", err=True)
        for failure in report.failures:
            typer.echo(f"- {failure}", err=True)


def _run(
    cast_hashes: list[str],
    *,
    config: PipelineConfig,
    options: BackupOptions,
    store_dir: Path | None,
    output_dir: Path | None,
) -> None:
    try:
        report = run_backups(cast_hashes, config, options=options, store_dir=store_dir, output_dir=output_dir)
    except Exception as exc:
        typer.echo(f"Backup failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    _echo_report(report)
    if report.succeeded == 0:
        raise typer.Exit(code=1)


@app.command()
def backup(
    cast: str = typer.Argument(..., help="Cast URL or 0x hash."),
    store_dir: Path | None = typer.Option(None, file_okay=False),
    output_dir: Path | None = typer.Option(None, file_okay=False),
    api_base: str | None = typer.Option(None),
    media: bool = typer.Option(True, "--media/--no-media"),
    thread: bool = typer.Option(True, "--thread/--no-thread"),
    frames: bool = typer.Option(True, "--frames/--no-frames"),
    profiles: bool = typer.Option(True, "--profiles/--no-profiles"),
    link_metadata: bool = typer.Option(True, "--link-metadata/--no-link-metadata"),
    check_cost: bool = typer.Option(False),
    balance: float | None = typer.Option(None, min=0),
) -> None:
    """Back up a single cast."""

    try:
        cast_hash = parse_cast_hash(cast)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    options = _options(
        media=media,
        thread=thread,
        frames=frames,
        profiles=profiles,
        link_metadata=link_metadata,
        check_cost=check_cost,
        balance=balance,
    )
    _run([cast_hash], config=_load_config(api_base), options=options, store_dir=store_dir, output_dir=output_dir)


@app.command()
def bulk(
    cast_file: Path = typer.Option(..., exists=True, readable=True, dir_okay=False),
    store_dir: Path | None = typer.Option(None, file_okay=False),
    output_dir: Path | None = typer.Option(None, file_okay=False),
    api_base: str | None = typer.Option(None),
    media: bool = typer.Option(True, "--media/--no-media"),
    thread: bool = typer.Option(True, "--thread/--no-thread"),
    frames: bool = typer.Option(True, "--frames/--no-frames"),
    profiles: bool = typer.Option(True, "--profiles/--no-profiles"),
    link_metadata: bool = typer.Option(True, "--link-metadata/--no-link-metadata"),
    check_cost: bool = typer.Option(False),
    balance: float | None = typer.Option(None, min=0),
) -> None:
    """Back up every cast listed in a file (one URL or hash per line)."""

    try:
        cast_hashes = load_cast_file(cast_file)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    options = _options(
        media=media,
        thread=thread,
        frames=frames,
        profiles=profiles,
        link_metadata=link_metadata,
        check_cost=check_cost,
        balance=balance,
    )
    _run(cast_hashes, config=_load_config(api_base), options=options, store_dir=store_dir, output_dir=output_dir)


@app.command()
def estimate(
    cast: str = typer.Argument(..., help="Cast URL or 0x hash."),
    api_base: str | None = typer.Option(None),
    thread: bool = typer.Option(False, "--thread/--no-thread"),
    balance: float | None = typer.Option(None, min=0),
) -> None:
    """Estimate the storage cost of backing up a cast."""

    try:
        cast_hash = parse_cast_hash(cast)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    result = estimate_cost(
        cast_hash,
        _load_config(api_base),
        options=BackupOptions(preserve_thread=thread, balance_usd=balance),
    )
    typer.echo(result.model_dump_json(indent=2))
    if not result.affordable:
        raise typer.Exit(code=1)


@app.command()
def verify(artifact_file: Path = typer.Argument(..., exists=True, readable=True, dir_okay=False)) -> None:
    """Check the content hash and completeness flags of a saved backup."""

    try:
        artifact = BackupArtifact.model_validate(json.loads(artifact_file.read_text(encoding="utf-8")))
    except (ValueError, ValidationError) as exc:
        typer.echo(f"Invalid artifact file: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    report = verify_artifact(artifact)
    if report.valid:
        typer.echo(f"{artifact.preservation_id}: OK")
        return

    typer.echo(f"{artifact.preservation_id}: {len(report.issues)} issue(s)", err=True)
    for issue in report.issues:
        typer.echo(f"- {issue}", err=True)
    raise typer.Exit(code=1)


@app.command()
def restore(
    preservation_id: str = typer.Argument(...),
    store_dir: Path | None = typer.Option(None, file_okay=False),
    api_base: str | None = typer.Option(None),
    output: Path | None = typer.Option(None, dir_okay=False),
) -> None:
    """Fetch a stored backup by preservation id."""

    artifact = restore_backup(preservation_id, _load_config(api_base), store_dir=store_dir)
    if artifact is None:
        typer.echo(f"Backup not found: {preservation_id}", err=True)
        raise typer.Exit(code=1)

    payload = artifact.model_dump_json(indent=2)
    if output is None:
        typer.echo(payload)
        return

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(payload, encoding="utf-8")
    typer.echo(f"Output: {output}")
