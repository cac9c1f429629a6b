from __future__ import annotations

import json
from pathlib import Path

import typer

from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.domain.models import ArticleContext
from transcript_pipeline.errors import AggregatedError, InvalidReferenceError, RunCancelledError
from transcript_pipeline.media_identifier import identify
from transcript_pipeline.orchestrator import AcquisitionReport, ContentAcquisitionOrchestrator
from transcript_pipeline.pipeline_config import PipelineConfig, PipelineConfigError, load_pipeline_config
from transcript_pipeline.transcript_cache import JsonFileTranscriptCache, TranscriptCache


def run_identify(*, url: str) -> None:
    try:
        ref = identify(url)
    except InvalidReferenceError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"id: {ref.id}")
    typer.echo(f"kind: {ref.kind.value}")
    typer.echo(f"canonical_url: {ref.canonical_url}")


def run_fetch(
    *,
    url: str,
    context: ArticleContext,
    output: Path | None,
    as_json: bool,
    cache_dir: Path | None,
    use_cache: bool,
    timeout_seconds: float | None,
    show_trace: bool,
    config_path: Path | None,
) -> None:
    config = _load_config(config_path)
    cache: TranscriptCache | None = None
    if use_cache:
        cache = JsonFileTranscriptCache(cache_dir or config.cache_dir)

    try:
        ref = identify(url)
    except InvalidReferenceError as exc:
        raise typer.BadParameter(str(exc)) from exc

    cancel = CancelToken.with_timeout(timeout_seconds)
    with _build_orchestrator(config, cache) as orchestrator:
        try:
            report = orchestrator.run_reference(ref, context=context, cancel=cancel)
        except AggregatedError as exc:
            typer.echo(exc.summary(), err=True)
            if show_trace:
                typer.echo(exc.detail(), err=True)
            raise typer.Exit(code=1) from exc
        except RunCancelledError as exc:
            typer.echo(f"Stopped before any text was acquired: {exc}", err=True)
            raise typer.Exit(code=1) from exc

    rendered = _render_json(report) if as_json else report.result.text
    if output is None:
        typer.echo(rendered)
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(rendered + "\n", encoding="utf-8")
        typer.echo(f"Wrote {report.result.method.value} text to {output}", err=True)
    if show_trace:
        for attempt in report.trace:
            typer.echo(
                f"[{attempt.stage.value}] {attempt.strategy_name}: {attempt.outcome.value}"
                f" ({attempt.error_class.value}, {attempt.duration_ms} ms)",
                err=True,
            )


def _load_config(config_path: Path | None) -> PipelineConfig:
    try:
        return load_pipeline_config(config_path)
    except PipelineConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _build_orchestrator(config: PipelineConfig, cache: TranscriptCache | None) -> ContentAcquisitionOrchestrator:
    return ContentAcquisitionOrchestrator.from_config(config, cache=cache)


def _render_json(report: AcquisitionReport) -> str:
    payload = {
        "reference": report.reference.model_dump(mode="json"),
        "result": report.result.model_dump(mode="json"),
        "trace": [attempt.model_dump(mode="json") for attempt in report.trace],
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)
