import asyncio
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console
from rich.table import Table

from neuro.raptor.client import RaptorIndex
from neuro.raptor.config import AppConfig, generate_default_config, load_config
from neuro.raptor.exceptions import ConfigError, RaptorError
from neuro.raptor.logging import configure_cli_logging
from neuro.raptor.monitor import FileWatcher
from neuro.raptor.reader import read_corpus
from neuro.raptor.tree.models import BuildStats, UpdateStats
from neuro.raptor.tree.retriever import format_context
from neuro.raptor.utils import index_path_for

console = Console()

_cli = typer.Typer(name="neuro-raptor", no_args_is_help=True)

ROOT_ARGUMENT = typer.Argument(..., help="Root directory of the corpus")
CONFIG_OPTION = typer.Option(None, "--config", help="Path to the configuration file")


def _load_config(config_file: Path | None) -> AppConfig:
    try:
        return load_config(config_file)
    except FileNotFoundError as e:
        raise ConfigError(str(e)) from e


def _open_index(config: AppConfig, root: Path) -> RaptorIndex:
    return RaptorIndex(
        config, persist_path=index_path_for(root, config.storage.data_dir)
    )


def _run[T](coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except RaptorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _print_stats(stats: BuildStats | UpdateStats) -> None:
    table = Table(show_header=False, box=None)
    for name, value in stats.model_dump(exclude={"warnings"}).items():
        if isinstance(value, float):
            value = f"{value:.2f}"
        table.add_row(name.replace("_", " "), str(value))
    console.print(table)
    for warning in stats.warnings:
        console.print(f"[yellow]{warning}[/yellow]")


@_cli.command("build", help="Build the index of a corpus from scratch")
def build(root: Path = ROOT_ARGUMENT, config_file: Path | None = CONFIG_OPTION):
    async def run():
        config = _load_config(config_file)
        files = read_corpus(root, config.corpus)
        async with _open_index(config, root) as index:
            await index.load()
            with console.status(f"Indexing {len(files)} files..."):
                snapshot, stats = await index.build(files)
        console.print(
            f"[bold green]Built version {snapshot.version}[/bold green] "
            f"of the index for {root}"
        )
        _print_stats(stats)

    _run(run())


@_cli.command("update", help="Update the index of a corpus incrementally")
def update(root: Path = ROOT_ARGUMENT, config_file: Path | None = CONFIG_OPTION):
    async def run():
        config = _load_config(config_file)
        files = read_corpus(root, config.corpus)
        async with _open_index(config, root) as index:
            await index.load()
            with console.status(f"Scanning {len(files)} files..."):
                snapshot, stats = await index.reindex(files)
        console.print(
            f"[bold green]Index for {root} is at version {snapshot.version}"
            "[/bold green]"
        )
        _print_stats(stats)

    _run(run())


@_cli.command("query", help="Search the index of a corpus")
def query(
    root: Path = ROOT_ARGUMENT,
    text: str = typer.Argument(..., help="Query text"),
    top_k: int | None = typer.Option(
        None, "--top-k", "-k", help="Number of results to return"
    ),
    levels: list[int] | None = typer.Option(
        None, "--level", "-l", help="Restrict results to a tree level (repeatable)"
    ),
    context: bool = typer.Option(
        False,
        "--context",
        help="Search summaries first and expand into their chunks",
    ),
    config_file: Path | None = CONFIG_OPTION,
):
    async def run():
        config = _load_config(config_file)
        async with _open_index(config, root) as index:
            if await index.load() is None:
                console.print(
                    f"[red]No index found for {root}.[/red] "
                    "Run 'neuro-raptor build' first."
                )
                raise typer.Exit(1)
            if context:
                results = await index.retrieve_with_context(text, top_k=top_k)
                console.print(format_context(results, config.search.max_context_chars))
                return
            results = await index.query(None, text, top_k=top_k, levels=levels)

        if not results:
            console.print("[yellow]No results.[/yellow]")
            return
        for result in results:
            kind = "chunk" if result.level == 0 else f"level {result.level}"
            console.print(
                f"[bold]{result.score:.3f}[/bold] [cyan]{kind}[/cyan] "
                f"[dim]{', '.join(result.source_paths)}[/dim]"
            )
            console.print(result.text.strip(), markup=False, highlight=False)
            console.print()

    _run(run())


@_cli.command("info", help="Show the shape of the index of a corpus")
def info(root: Path = ROOT_ARGUMENT, config_file: Path | None = CONFIG_OPTION):
    async def run():
        config = _load_config(config_file)
        async with _open_index(config, root) as index:
            if await index.load() is None:
                console.print(f"[yellow]No index found for {root}.[/yellow]")
                raise typer.Exit(1)
            details = index.info()

        table = Table(title=f"Index for {root}")
        table.add_column("Property", style="cyan")
        table.add_column("Value")
        table.add_row("version", str(details["version"]))
        table.add_row("files", str(details["files"]))
        table.add_row("nodes", str(details["nodes"]))
        table.add_row("depth", str(details["depth"]))
        for level, count in details["levels"].items():
            table.add_row(f"level {level}", str(count))
        table.add_row("roots", str(len(details["roots"])))
        table.add_row("degraded files", str(len(details["degraded_files"])))
        console.print(table)

    _run(run())


@_cli.command("clear", help="Delete the index of a corpus")
def clear(root: Path = ROOT_ARGUMENT, config_file: Path | None = CONFIG_OPTION):
    async def run():
        config = _load_config(config_file)
        async with _open_index(config, root) as index:
            await index.clear()
        console.print(f"Cleared the index for {root}")

    _run(run())


@_cli.command("watch", help="Keep the index of a corpus up to date")
def watch(root: Path = ROOT_ARGUMENT, config_file: Path | None = CONFIG_OPTION):
    async def run():
        config = _load_config(config_file)
        if not root.is_dir():
            raise ConfigError(f"Corpus root {root} is not a directory")
        async with _open_index(config, root) as index:
            await index.load()
            await FileWatcher(root, index, config.corpus).observe()

    try:
        _run(run())
    except KeyboardInterrupt:
        console.print("Stopped watching.")


@_cli.command("init-config", help="Write a configuration file with the defaults")
def init_config(
    output: Path = typer.Option(
        Path("neuro.raptor.yaml"),
        "--output",
        "-o",
        help="Where to write the configuration file",
    ),
    force: bool = typer.Option(
        False, "--force", help="Overwrite an existing file"
    ),
):
    if output.exists() and not force:
        console.print(
            f"[red]{output} already exists.[/red] Use --force to overwrite it."
        )
        raise typer.Exit(1)
    with open(output, "w") as f:
        yaml.safe_dump(generate_default_config(), f, sort_keys=False)
    console.print(f"Wrote default configuration to {output}")


def cli():
    configure_cli_logging()
    try:
        _cli()
    except RaptorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
