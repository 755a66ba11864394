"""Flag Provider: compiler and linker flags from ``julia-config.jl``.

The runtime ships a helper script that prints the flags needed to embed it
in a native binary.  It is asked once per category; the answers are stable
for the whole build, so :class:`~jlbuild.stages.Pipeline` calls
:func:`query_platform_flags` at most once and only when something links.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass

import typer

from jlbuild.cli import JuliaOption, error_exit, json_print
from jlbuild.config import default_julia
from jlbuild.errors import BuildError, ToolchainError
from jlbuild.platform import OSKind, current_os
from jlbuild.runtime import RuntimeInfo, query_runtime

_CATEGORIES = ("--cflags", "--ldflags", "--ldlibs")


@dataclass(frozen=True)
class PlatformFlags:
    """Opaque flag token sequences reported by the runtime."""

    cflags: tuple[str, ...] = ()
    ldflags: tuple[str, ...] = ()
    ldlibs: tuple[str, ...] = ()

    def tokens(self) -> list[str]:
        """All flags in compile, link, library order."""
        return [*self.cflags, *self.ldflags, *self.ldlibs]

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "cflags": list(self.cflags),
            "ldflags": list(self.ldflags),
            "ldlibs": list(self.ldlibs),
        }


def _unquote(token: str) -> str:
    for quote in "\"'":
        if token.count(quote) == 2:
            token = token.replace(quote, "")
    return token


def _split(text: str, os_kind: OSKind) -> tuple[str, ...]:
    if os_kind is not OSKind.WINDOWS:
        return tuple(shlex.split(text))
    # non-posix mode keeps backslashes but also leaves the quotes in the token
    return tuple(_unquote(tok) for tok in shlex.split(text, posix=False))


def query_platform_flags(runtime: RuntimeInfo, os_kind: OSKind | None = None) -> PlatformFlags:
    """Ask ``julia-config.jl`` for each flag category.

    Raises:
        ToolchainError: the helper is missing, cannot be run, or exits
            non-zero.  There is no fallback.
    """
    os_kind = os_kind if os_kind is not None else current_os()
    script = runtime.config_script
    if not script.is_file():
        raise ToolchainError(f"Julia config helper not found: {script}")

    results: list[tuple[str, ...]] = []
    for category in _CATEGORIES:
        cmd = [runtime.binary, "--startup-file=no", str(script), category]
        try:
            r = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise ToolchainError(f"Cannot run Julia config helper: {e}") from e
        if r.returncode != 0:
            raise ToolchainError(
                f"Julia config helper failed for {category} "
                f"(exit {r.returncode}): {r.stderr.strip()[:400]}"
            )
        results.append(_split(r.stdout.strip(), os_kind))

    cflags, ldflags, ldlibs = results
    return PlatformFlags(cflags=cflags, ldflags=ldflags, ldlibs=ldlibs)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="Print the compiler and linker flags used to embed Julia.",
    rich_markup_mode="rich",
    epilog="""\
[bold]Examples:[/bold]

jlbuild flags                      Flags for the julia on PATH

jlbuild flags --julia /opt/julia/bin/julia --json

[dim]Flags come from the runtime's share/julia/julia-config.jl.[/dim]""",
)


@app.callback(invoke_without_command=True)
def main(
    julia: str | None = JuliaOption,
    json_output: bool = typer.Option(False, "--json", help="Output results as JSON"),
) -> None:
    """Print the embedding flags reported by the Julia runtime."""
    try:
        runtime = query_runtime(julia or default_julia())
        flags = query_platform_flags(runtime)
    except BuildError as exc:
        error_exit(str(exc), json_mode=json_output)

    if json_output:
        json_print(flags.to_dict())
    else:
        print(shlex.join(flags.tokens()))


def main_entry() -> None:
    app()
