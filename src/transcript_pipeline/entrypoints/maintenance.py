from __future__ import annotations

import os
from pathlib import Path

import typer

from transcript_pipeline.pipeline_config import PipelineConfig, PipelineConfigError, load_pipeline_config
from transcript_pipeline.temp_files import cleanup_old_temp_files
from transcript_pipeline.tools import check_available_tools
from transcript_pipeline.transcript_cache import JsonFileTranscriptCache
from transcript_pipeline.transport import detect_wsl2


def run_tools(*, config_path: Path | None) -> None:
    config = _load_config(config_path)
    commands = (config.chunker.ffmpeg_command, config.download.ytdlp_command, config.download.youtube_dl_command)
    availability = check_available_tools(commands)
    for command, available in availability.items():
        typer.echo(f"{command}: {'found' if available else 'missing'}")
    if not availability[config.chunker.ffmpeg_command]:
        typer.echo("ffmpeg missing: audio splitting falls back to byte-range approximation", err=True)
    typer.echo(f"OPENAI_API_KEY: {'set' if os.environ.get('OPENAI_API_KEY') else 'not set'}")
    typer.echo(f"YOUTUBE_API_KEY: {'set' if os.environ.get('YOUTUBE_API_KEY') else 'not set'}")
    typer.echo(f"wsl2: {'yes' if detect_wsl2() else 'no'}")


def run_clean_temp(*, temp_dir: Path | None, max_age_hours: float, config_path: Path | None) -> None:
    root = temp_dir or _load_config(config_path).temp_dir
    removed = cleanup_old_temp_files(root, max_age_hours=max_age_hours)
    typer.echo(f"Removed {removed} temp file(s) from {root}")


def run_cache_cleanup(*, cache_dir: Path | None, max_age_days: float, config_path: Path | None) -> None:
    root = cache_dir or _load_config(config_path).cache_dir
    removed = JsonFileTranscriptCache(root).cleanup_old_entries(max_age_days=max_age_days)
    typer.echo(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'} from {root}")


def _load_config(config_path: Path | None) -> PipelineConfig:
    try:
        return load_pipeline_config(config_path)
    except PipelineConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
