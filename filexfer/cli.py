"""
File Transfer CLI

Command-line interface for the file transfer server and client.

Usage:
    filexfer serve                   # Run the server
    filexfer upload FILE             # Upload a file
    filexfer download NAME           # Download a file
    filexfer shell                   # Interactive session on one connection
    filexfer config                  # Show effective configuration
"""

import asyncio
import logging
import shlex
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.prompt import Prompt
from rich.table import Table

from .config import Config, load_config, EXAMPLE_CONFIG
from .client import TransferClient, TransferProgress
from .server import TransferServer, TransferRecord
from .transfer import TransferError, LocalFileNotFound, RemoteFileNotFound

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(path_type=Path),
              help='JSON config file')
@click.option('--host', default=None, help='Server address')
@click.option('--port', default=None, type=int, help='Server TCP port')
@click.pass_context
def cli(ctx, verbose, config_path, host, port):
    """filexfer - minimal TCP file transfer."""
    try:
        config = load_config(config_path)
    except ValueError as e:
        raise click.UsageError(f"Invalid configuration: {e}")

    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    _validate(config)

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--storage-dir', type=click.Path(path_type=Path), help='Storage directory')
@click.option('--max-connections', type=int, help='Concurrent connection limit')
@click.pass_context
def serve(ctx, storage_dir, max_connections):
    """Run the transfer server."""
    config: Config = ctx.obj['config']
    if storage_dir:
        config.storage_dir = storage_dir
    if max_connections is not None:
        config.max_connections = max_connections
    _validate(config)

    async def run():
        server = TransferServer(config)
        server.on_transfer(_print_record)

        try:
            await server.start()
            console.print(Panel.fit(
                f"[bold green]Transfer Server Started[/bold green]\n\n"
                f"Address: [yellow]{server.address[0]}:{server.address[1]}[/yellow]\n"
                f"Storage: [blue]{server.storage.root}[/blue]\n"
                f"Max connections: [yellow]{config.max_connections}[/yellow]\n"
                f"Chunk size: [yellow]{config.chunk_size}[/yellow]",
                title="Server Info"
            ))
            console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
            await server.serve_forever()
        finally:
            await server.stop()
            console.print("[green]Server stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


def _print_record(record: TransferRecord):
    verb = record.command.value
    if record.success:
        console.print(f"[green]✓ {verb} {record.filename} "
                      f"({format_size(record.bytes_transferred)})[/green]")
    else:
        console.print(f"[red]✗ {verb} {record.filename}: {record.error}[/red]")


@cli.command()
@click.argument('file_path', type=click.Path(path_type=Path))
@click.option('--name', '-n', default=None, help='Name to store under')
@click.pass_context
def upload(ctx, file_path, name):
    """Upload a file to the server."""
    config = ctx.obj['config']

    async def run():
        async with TransferClient(config) as client:
            await _upload(client, file_path, name)

    _run_client(run)


@cli.command()
@click.argument('filename')
@click.option('--output', '-o', type=click.Path(path_type=Path), help='Output path')
@click.pass_context
def download(ctx, filename, output):
    """Download a file from the server."""
    config = ctx.obj['config']

    async def run():
        async with TransferClient(config) as client:
            await _download(client, filename, output)

    _run_client(run)


@cli.command()
@click.pass_context
def shell(ctx):
    """Interactive upload/download session over one connection."""
    config = ctx.obj['config']

    async def run():
        async with TransferClient(config) as client:
            console.print(f"[green]Connected to {config.host}:{config.port}[/green]")
            console.print("[dim]Commands: upload FILE [NAME] | download NAME [PATH] | quit[/dim]")

            while client.is_connected:
                try:
                    line = await asyncio.to_thread(Prompt.ask, "[bold]filexfer[/bold]")
                except EOFError:
                    await client.quit()
                    break
                try:
                    args = shlex.split(line)
                except ValueError as e:
                    console.print(f"[red]{e}[/red]")
                    continue
                if not args:
                    continue

                command, rest = args[0].lower(), args[1:]
                if command == 'quit':
                    await client.quit()
                elif command == 'upload' and 1 <= len(rest) <= 2:
                    await _upload(client, Path(rest[0]), rest[1] if len(rest) > 1 else None)
                elif command == 'download' and 1 <= len(rest) <= 2:
                    await _download(client, rest[0], Path(rest[1]) if len(rest) > 1 else None)
                else:
                    console.print(f"[yellow]Unknown command: {line}[/yellow]")

            console.print("[dim]Session closed[/dim]")

    _run_client(run)


@cli.command('config')
@click.option('--example', is_flag=True, help='Print an example config file')
@click.pass_context
def show_config(ctx, example):
    """Show the effective configuration."""
    if example:
        console.print("Example configuration file (config.json):")
        console.print(EXAMPLE_CONFIG)
        return

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in ctx.obj['config'].to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


# === Helpers ===

def _validate(config: Config):
    try:
        config.validate()
    except ValueError as e:
        raise click.UsageError(f"Invalid configuration: {e}")


def _run_client(run):
    try:
        asyncio.run(run())
    except (TransferError, OSError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise SystemExit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


async def _upload(client: TransferClient, file_path: Path, name: Optional[str]):
    try:
        with _progress_bar() as (progress, task):
            def update_progress(p: TransferProgress):
                progress.update(task, completed=p.progress_percent,
                                description=f"Uploading {p.filename}...")

            size = await client.upload(file_path, name, update_progress)
        console.print(f"[green]✓ Uploaded {file_path} ({format_size(size)})[/green]")
    except (LocalFileNotFound, ValueError) as e:
        console.print(f"[red]✗ {e}[/red]")
    except TransferError:
        raise
    except OSError as e:
        _report_local_error(client, e)


async def _download(client: TransferClient, filename: str, output: Optional[Path]):
    try:
        with _progress_bar() as (progress, task):
            def update_progress(p: TransferProgress):
                progress.update(task, completed=p.progress_percent,
                                description=f"Downloading {p.filename}...")

            result = await client.download(filename, output, update_progress)
        console.print(f"[green]✓ Downloaded to: {result}[/green]")
    except (RemoteFileNotFound, ValueError) as e:
        console.print(f"[red]✗ {e}[/red]")
    except TransferError:
        raise
    except OSError as e:
        _report_local_error(client, e)


def _report_local_error(client: TransferClient, error: OSError):
    """Print a local file error; re-raise it if it also ended the session."""
    if not client.is_connected:
        raise error
    console.print(f"[red]✗ {error}[/red]")


@contextmanager
def _progress_bar():
    """Transient progress bar yielding (progress, task_id)."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
    ) as progress:
        yield progress, progress.add_task("Starting...", total=100)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
