"""Command line entry point for kb-ingest."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Optional

import typer

from . import config as config_module
from .errors import ConfigurationError
from .logging_config import configure_logging
from .pipeline import build_pipeline, ingest, load_abandoned_ids

logger = logging.getLogger(__name__)
app = typer.Typer(help="Insert pre-chunked text into a vector store and a search index")

EXIT_OK = 0
EXIT_ABANDONED = 1
EXIT_CONFIG = 2


def _load_config(config_path: str, log_level: Optional[str]):
    try:
        config = config_module.load(config_path)
    except ConfigurationError as e:
        configure_logging(log_level or "info")
        logger.error("%s", e)
        raise typer.Exit(EXIT_CONFIG)
    configure_logging(log_level or config.logging.level)
    return config


def _install_stop_handlers(stop_event: threading.Event) -> None:
    def handle(signum, frame):
        if stop_event.is_set():
            # second signal: let the default handler end the process
            signal.signal(signum, signal.SIG_DFL)
            return
        logger.warning("received signal %d, stopping after in-flight batches", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


@app.command()
def insert(
    config_path: str = typer.Option("config.toml", "--config", "-c", help="TOML config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override [logging] level"),
    retry_from: Optional[str] = typer.Option(
        None, "--retry-from", help="Run report of a previous run; only its abandoned chunks are inserted"
    ),
    no_progress: bool = typer.Option(False, "--no-progress", help="Disable the progress bar"),
) -> None:
    """Embed every chunk file under paths.chunk_root and write it to both sinks."""
    config = _load_config(config_path, log_level)

    only_ids = None
    if retry_from:
        try:
            only_ids = load_abandoned_ids(retry_from)
        except (OSError, ValueError) as e:
            logger.error("cannot read report %s: %s", retry_from, e)
            raise typer.Exit(EXIT_CONFIG)
        logger.info("retrying %d abandoned chunk(s) from %s", len(only_ids), retry_from)
        if not only_ids:
            raise typer.Exit(EXIT_OK)

    stop_event = threading.Event()
    _install_stop_handlers(stop_event)
    try:
        report = ingest(config, only_ids=only_ids, progress=not no_progress, stop_event=stop_event)
    except ConfigurationError as e:
        logger.error("%s", e)
        raise typer.Exit(EXIT_CONFIG)

    raise typer.Exit(EXIT_OK if report.ok else EXIT_ABANDONED)


@app.command()
def check(
    config_path: str = typer.Option("config.toml", "--config", "-c", help="TOML config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override [logging] level"),
) -> None:
    """Validate the config and check that the embedding provider and both sinks are ready."""
    config = _load_config(config_path, log_level)
    pipeline = build_pipeline(config)
    try:
        pipeline.prepare()
    except ConfigurationError as e:
        logger.error("%s", e)
        raise typer.Exit(EXIT_CONFIG)
    finally:
        pipeline.close()
    typer.echo(
        f"ok: {config.insert.vector_store.backend} collection {config.insert.vector_store.collection!r}, "
        f"search index {config.insert.search_index.index_id!r}"
    )


if __name__ == "__main__":
    app()
