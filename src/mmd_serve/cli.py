"""Serve CLI entry point for the mmd MCP server."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import typer
from rich.console import Console

import mmd
from mmd._cli import create_cli, version_callback

app = create_cli(
    "mmd-serve",
    "mmd MCP server - renders Mermaid diagrams to PNG, SVG and PDF.",
)

# Console for stderr output (stdout is reserved for MCP JSON-RPC)
_stderr_console = Console(stderr=True)


def _print_startup_banner() -> None:
    """Print startup message to stderr."""
    _stderr_console.print(f"[bold cyan]mmd MCP Server[/bold cyan] [dim]v{mmd.__version__}[/dim]")
    _stderr_console.print("Running on stdio transport. Press [bold yellow]Ctrl+C[/bold yellow] to stop.")


def _setup_signal_handlers() -> None:
    """Turn SIGTERM into KeyboardInterrupt so shutdown runs the same cleanup as Ctrl+C."""

    def handle_signal(signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        _stderr_console.print(f"\n[dim]Received {sig_name}, shutting down...[/dim]")
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, handle_signal)


def _load_config_or_exit(config: Path | None):  # noqa: ANN202
    from mmd.config import get_config

    try:
        return get_config(config, reload=config is not None)
    except (FileNotFoundError, ValueError) as e:
        _stderr_console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1) from e


@app.command("validate")
def validate(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Config file to validate (default: project then global mmd-serve.yaml).",
    ),
) -> None:
    """Validate configuration files.

    Checks the given file, or the project and global mmd-serve.yaml, for
    syntax and schema errors.
    """
    from loguru import logger

    from mmd.config.loader import CONFIG_FILE_NAME, load_config
    from mmd.paths import get_global_dir, get_project_dir

    # Suppress DEBUG logs from config loader
    logger.remove()

    candidates: list[Path] = []
    if config is not None:
        candidates.append(config)
    else:
        project_dir = get_project_dir()
        if project_dir:
            candidates.append(project_dir / CONFIG_FILE_NAME)
        candidates.append(get_global_dir() / CONFIG_FILE_NAME)

    errors: list[str] = []
    validated: list[str] = []
    for path in candidates:
        if config is None and not path.exists():
            continue
        try:
            load_config(path)
            validated.append(str(path))
        except (FileNotFoundError, ValueError) as e:
            errors.append(f"{path}: {e}")

    if validated:
        _stderr_console.print("[green]Valid configurations:[/green]")
        for path_str in validated:
            _stderr_console.print(f"  ✓ {path_str}")

    if errors:
        _stderr_console.print("\n[red]Validation errors:[/red]")
        for error in errors:
            _stderr_console.print(f"  ✗ {error}")
        raise typer.Exit(1)

    if not validated:
        _stderr_console.print("No configuration files found; defaults apply.")


@app.command("sweep")
def sweep(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to mmd-serve.yaml configuration file.",
        exists=True,
        readable=True,
    ),
) -> None:
    """Delete uploaded artifacts whose retention window has passed."""
    from mmd.delivery import DeliveryResolver, StaticFileServer
    from mmd.errors import DeliveryError
    from mmd.logging import configure_logging

    server_config = _load_config_or_exit(config)
    configure_logging(log_name="sweep", level=server_config.log_level)

    async def run() -> None:
        resolver = DeliveryResolver(
            server_config.delivery,
            static_server=StaticFileServer(server_config.get_output_dir()),
        )
        try:
            report = await resolver.sweep_expired()
        finally:
            await resolver.aclose()
        _stderr_console.print(f"Deleted {report.deleted_count} expired object(s)")
        for key in report.deleted:
            _stderr_console.print(f"  - {key}")
        if report.errors:
            _stderr_console.print(f"[yellow]{len(report.errors)} error(s):[/yellow]")
            for error in report.errors:
                _stderr_console.print(f"  ✗ {error}")

    try:
        asyncio.run(run())
    except DeliveryError as e:
        _stderr_console.print(f"[red]{e.user_message}[/red]")
        raise typer.Exit(1) from e


@app.callback(invoke_without_command=True)
def serve(
    ctx: typer.Context,
    _version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback("mmd-serve", mmd.__version__),
        is_eager=True,
        help="Show version and exit.",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to mmd-serve.yaml configuration file.",
        exists=True,
        readable=True,
    ),
) -> None:
    """Run the mmd MCP server over stdio transport.

    The server exposes render_mermaid, batch_render_mermaid and the
    delivery/config tools. It is typically launched by an MCP client.

    Examples:
        mmd-serve
        mmd-serve --config .mmd/mmd-serve.yaml
    """
    # Only run if no subcommand was invoked (handles --help automatically)
    if ctx.invoked_subcommand is not None:
        return

    _load_config_or_exit(config)
    _setup_signal_handlers()
    _print_startup_banner()

    # Import here so config is loaded before the server module
    from mmd.server import main as server_main

    try:
        server_main()
    except KeyboardInterrupt:
        _stderr_console.print("[dim]Server stopped.[/dim]")
    except Exception as e:
        _stderr_console.print(f"[red]Server failed:[/red] {type(e).__name__}: {e}")
        raise typer.Exit(1) from e


def cli() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    cli()
