"""main.py – Umbrella CLI entry point for jlbuild.

Lazily imports and registers every subcommand module so that one broken
import doesn't prevent the rest of the CLI from loading.
"""

import importlib
import sys
from collections.abc import Callable

import typer

app = typer.Typer(
    help="Build native executables from Julia programs.",
    rich_markup_mode="rich",
    epilog="""\
[bold]Typical workflow:[/bold]
  jlbuild doctor               Check the Julia runtime and C compiler
  jlbuild build hello.jl       Object file, shared library and executable
  jlbuild sync-libs builddir   Refresh runtime libraries only
  jlbuild flags                Show the embedding compiler/linker flags

[dim]Run 'jlbuild <cmd> --help' for details.[/dim]""",
)

# Each module exposes a Typer app whose callback is the command.
_COMMANDS: list[tuple[str, str, str]] = [
    ("build", "jlbuild.build", "Compile a Julia program to native artifacts."),
    ("sync-libs", "jlbuild.libsync", "Copy changed runtime libraries into a build directory."),
    ("flags", "jlbuild.flags", "Print the flags used to embed Julia."),
    ("doctor", "jlbuild.doctor", "Diagnostic checks for the build toolchain."),
]


def _make_stub_cmd(mod_name: str, err: ImportError) -> Callable[[], None]:
    """Create a stub command function that reports a failed import."""

    def _stub() -> None:
        print(f"Error: could not load '{mod_name}': {err}", file=sys.stderr)
        raise typer.Exit(code=1)

    return _stub


for _name, _module, _help in _COMMANDS:
    try:
        _mod = importlib.import_module(_module)
        _epilog = getattr(_mod.app.info, "epilog", None)
        if not isinstance(_epilog, str):
            _epilog = None
        app.command(name=_name, help=_help, epilog=_epilog)(_mod.main)
    except ImportError as _exc:
        app.command(name=_name, help=f"[unavailable] {_help}")(_make_stub_cmd(_module, _exc))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
