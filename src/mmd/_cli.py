"""Shared typer helpers for mmd command-line tools."""

from __future__ import annotations

from typing import TYPE_CHECKING

import typer

if TYPE_CHECKING:
    from collections.abc import Callable

__all__ = ["create_cli", "version_callback"]


def create_cli(name: str, help_text: str) -> typer.Typer:
    """Create a typer app with the common settings for mmd CLIs."""
    return typer.Typer(
        name=name,
        help=help_text,
        no_args_is_help=False,
        add_completion=False,
        context_settings={"help_option_names": ["-h", "--help"]},
    )


def version_callback(name: str, version: str) -> Callable[[bool | None], None]:
    """Build an eager --version callback that prints ``name version`` and exits."""

    def callback(value: bool | None) -> None:
        if value:
            typer.echo(f"{name} {version}")
            raise typer.Exit()

    return callback
