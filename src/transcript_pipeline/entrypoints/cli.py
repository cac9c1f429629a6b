from pathlib import Path
from typing import Annotated

import typer

app = typer.Typer(add_completion=False)

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", dir_okay=False, help="Config YAML (default: TRANSCRIPT_PIPELINE_CONFIG or XDG path)."),
]


@app.callback()
def _root(
    *,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log debug output to stderr.")] = False,
    log_file: Annotated[Path | None, typer.Option(dir_okay=False, help="Also write logs to this file.")] = None,
) -> None:
    from transcript_pipeline.logging_setup import configure_logging

    configure_logging(verbose=verbose, log_file=log_file)


@app.command()
def version() -> None:
    """Print version."""
    from transcript_pipeline import __version__

    typer.echo(__version__)


@app.command()
def identify(url: Annotated[str, typer.Argument(help="Video, episode or audio URL.")]) -> None:
    """Show the canonical media reference for a URL."""
    from transcript_pipeline.entrypoints.fetch import run_identify

    run_identify(url=url)


@app.command()
def fetch(
    url: Annotated[str, typer.Argument(help="Video, episode or audio URL.")],
    *,
    title: Annotated[str | None, typer.Option(help="Article title known to the feed store.")] = None,
    description: Annotated[
        str | None,
        typer.Option(help="Article description used as the last-resort fallback."),
    ] = None,
    enclosure_url: Annotated[str | None, typer.Option(help="Podcast enclosure (audio) URL.")] = None,
    feed_url: Annotated[str | None, typer.Option(help="Podcast RSS feed that lists this episode.")] = None,
    output: Annotated[Path | None, typer.Option("--output", "-o", dir_okay=False, help="Write text here.")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Emit result and trace as JSON.")] = False,
    cache_dir: Annotated[Path | None, typer.Option(file_okay=False, help="Transcript cache directory.")] = None,
    use_cache: Annotated[bool, typer.Option("--cache/--no-cache", help="Use the transcript cache.")] = True,
    timeout: Annotated[
        float | None,
        typer.Option(min=1.0, help="Cancel the whole run after this many seconds."),
    ] = None,
    show_trace: Annotated[bool, typer.Option(help="Print every strategy attempt to stderr.")] = False,
    config: ConfigOption = None,
) -> None:
    """Acquire plain text for a media URL (subtitles, audio transcription or description)."""
    from transcript_pipeline.domain.models import ArticleContext
    from transcript_pipeline.entrypoints.fetch import run_fetch

    run_fetch(
        url=url,
        context=ArticleContext(
            title=title,
            description=description,
            enclosure_url=enclosure_url,
            feed_url=feed_url,
        ),
        output=output,
        as_json=as_json,
        cache_dir=cache_dir,
        use_cache=use_cache,
        timeout_seconds=timeout,
        show_trace=show_trace,
        config_path=config,
    )


@app.command()
def tools(config: ConfigOption = None) -> None:
    """Report external tools, API keys and host tuning."""
    from transcript_pipeline.entrypoints.maintenance import run_tools

    run_tools(config_path=config)


@app.command()
def clean_temp(
    *,
    temp_dir: Annotated[Path | None, typer.Option(file_okay=False, help="Temp directory to sweep.")] = None,
    max_age_hours: Annotated[float, typer.Option(min=0.0, help="Delete files older than this.")] = 1.0,
    config: ConfigOption = None,
) -> None:
    """Delete stale temporary audio files."""
    from transcript_pipeline.entrypoints.maintenance import run_clean_temp

    run_clean_temp(temp_dir=temp_dir, max_age_hours=max_age_hours, config_path=config)


@app.command()
def cache_cleanup(
    *,
    cache_dir: Annotated[Path | None, typer.Option(file_okay=False, help="Transcript cache directory.")] = None,
    max_age_days: Annotated[float, typer.Option(min=0.0, help="Delete entries not read for this long.")] = 30.0,
    config: ConfigOption = None,
) -> None:
    """Delete transcript cache entries that have not been read recently."""
    from transcript_pipeline.entrypoints.maintenance import run_cache_cleanup

    run_cache_cleanup(cache_dir=cache_dir, max_age_days=max_age_days, config_path=config)


def main() -> None:
    app()
