"""Shared CLI utilities for jlbuild commands.

Provides common Typer options and standardised error / JSON output helpers
so every command reports failures the same way.

Usage in a command module::

    import typer
    from jlbuild.cli import JuliaOption, error_exit

    app = typer.Typer()

    @app.callback(invoke_without_command=True)
    def main(julia: str | None = JuliaOption) -> None:
        ...
"""

from __future__ import annotations

import json
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.markup import escape

# Re-usable Typer option for --julia
JuliaOption: str | None = typer.Option(
    None,
    "--julia",
    envvar="JULIA",
    help="Julia runtime binary (default: julia on PATH).",
)

CcOption: str | None = typer.Option(
    None,
    "--cc",
    envvar="CC",
    help="System C compiler used for linking (default: gcc).",
)


# ---------------------------------------------------------------------------
# Standardised output helpers
# ---------------------------------------------------------------------------

_err_console = Console(stderr=True)


def error_exit(msg: str, *, json_mode: bool = False, code: int = 1) -> NoReturn:
    """Print *msg* as an error and ``raise typer.Exit(code)``."""
    if json_mode:
        print(json.dumps({"error": msg}, indent=2))
    else:
        _err_console.print(f"[red bold]error:[/red bold] {escape(msg)}")
    raise typer.Exit(code=code)


def json_print(data: dict[str, Any] | list[Any]) -> None:
    """Print *data* as pretty-printed JSON to stdout."""
    print(json.dumps(data, indent=2))
