import asyncio
import click
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import __version__
from .backend import OpenAICompatibleBackend
from .config import BackendConfig, Config
from .generation import ContextBuilder, GenerationControl, SessionOrchestrator, calculate_metrics
from .models import BookBlueprint, ChapterStatus, TokenBudget
from .store import JsonSessionStore
from .utils.logger import session_trace, setup_logger
from .utils.progress import RichProgressSink

console = Console()


def create_backend(config: BackendConfig):
    return OpenAICompatibleBackend(config)


def _load_blueprint(ctx: click.Context, path: str) -> BookBlueprint:
    blueprint = BookBlueprint.from_yaml(Path(path))
    # An explicit config file overrides the blueprint's own generation settings
    if ctx.obj['config_loaded']:
        blueprint = blueprint.model_copy(update={"generation": ctx.obj['config'].generation})
    return blueprint


@click.group()
@click.option('--config', '-c', type=click.Path(), default='config.yaml',
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--log-file', type=click.Path(), default=None, help='Also write a DEBUG log to this file')
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool, log_file: str):
    """Book Author - generate full books from an approved blueprint."""
    ctx.ensure_object(dict)

    config_path = Path(config)
    ctx.obj['config_loaded'] = config_path.exists()
    ctx.obj['config'] = Config.from_yaml(config_path) if config_path.exists() else Config()

    log_level = "DEBUG" if verbose else ctx.obj['config'].log_level
    logger = setup_logger(log_level, Path(log_file) if log_file else None)
    ctx.obj['logger'] = logger

    logger.debug(f"Book Author v{__version__}")
    if config_path.exists():
        logger.info(f"Config loaded from: {config_path}")


@cli.command('init-config')
@click.argument('path', type=click.Path())
@click.pass_context
def init_config(ctx: click.Context, path: str):
    """Write the default configuration to PATH."""
    logger = ctx.obj['logger']
    output = Path(path)
    if output.exists():
        raise click.ClickException(f"{output} already exists")
    Config().to_yaml(output)
    logger.success(f"Wrote default config to {output}")


@cli.command()
@click.argument('blueprint', type=click.Path(exists=True))
@click.pass_context
def budget(ctx: click.Context, blueprint: str):
    """Show the token budget for a blueprint's context window."""
    logger = ctx.obj['logger']
    try:
        bp = _load_blueprint(ctx, blueprint)
    except Exception as e:
        logger.error(f"Could not load blueprint: {e}")
        raise click.ClickException(str(e))

    allocation = TokenBudget.allocate(bp.generation.context_window_size)
    table = Table(title=f"Token budget ({allocation.total_available:,} tokens)")
    table.add_column("Bucket")
    table.add_column("Tokens", justify="right")
    for name, tokens in allocation.buckets().items():
        table.add_row(name, f"{tokens:,}")
    console.print(table)


@cli.command()
@click.argument('blueprint', type=click.Path(exists=True))
@click.option('--chapter', '-n', type=int, required=True, help='Chapter number')
@click.pass_context
def context(ctx: click.Context, blueprint: str, chapter: int):
    """Print the assembled generation context for one chapter."""
    logger = ctx.obj['logger']
    try:
        bp = _load_blueprint(ctx, blueprint)
        built = asyncio.run(ContextBuilder().build(chapter, bp, []))
    except Exception as e:
        logger.error(f"Context build failed: {e}")
        raise click.ClickException(str(e))

    for name, text in built.fragments().items():
        click.echo(f"=== {name} ===")
        click.echo(text)


@cli.command()
@click.argument('blueprint', type=click.Path(exists=True))
@click.option('--output', '-o', type=click.Path(), required=True, help='Output directory')
@click.option('--start', type=int, default=None, help='First chapter to generate')
@click.option('--end', type=int, default=None, help='Last chapter to generate')
@click.pass_context
def generate(ctx: click.Context, blueprint: str, output: str, start: int, end: int):
    """Generate chapters for BLUEPRINT into OUTPUT."""
    config = ctx.obj['config']
    logger = ctx.obj['logger']
    output_dir = Path(output)
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        bp = _load_blueprint(ctx, blueprint)
        backend = create_backend(config.backend)
        orchestrator = SessionOrchestrator(backend, store=JsonSessionStore(output_dir / "sessions"))
        session = orchestrator.create_session(bp, start_chapter=start, end_chapter=end)

        logger.info(f"Generating '{bp.identity.title}' ({session.total_chapters} chapters)")
        trace_file = output_dir / "logs" / f"{session.id}.log"
        with session_trace(trace_file), RichProgressSink(session.total_chapters) as sink:
            session = asyncio.run(orchestrator.run(session, bp, GenerationControl(), progress=sink))
            sink.finish(session.total_words)
        logger.info(f"Generation trace written to {trace_file}")
    except KeyboardInterrupt:
        raise click.Abort()
    except Exception as e:
        logger.error(f"Generation failed: {e}")
        raise click.ClickException(str(e))

    for chapter in session.chapters:
        if chapter.status == ChapterStatus.FAILED:
            logger.warning(f"Chapter {chapter.chapter_number} failed: {chapter.failure_reason}")
            continue
        path = output_dir / f"chapter_{chapter.chapter_number:03d}.md"
        path.write_text(f"# {chapter.title}\n\n{chapter.content}\n", encoding="utf-8")

    (output_dir / "session.json").write_text(session.model_dump_json(indent=2), encoding="utf-8")

    metrics = calculate_metrics(session)
    avg = f"{metrics.average_quality_score:.1f}" if metrics.average_quality_score is not None else "n/a"
    logger.success(
        f"Session {session.status.value}: {metrics.completed_chapters}/{metrics.total_chapters} chapters, "
        f"{metrics.total_words:,} words, average quality {avg}"
    )


def main():
    cli()


if __name__ == '__main__':
    main()
