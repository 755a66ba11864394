"""jlbuild build: compile a Julia program into a native executable.

Runs the whole invocation in order: resolve and validate options, prepare
the build directory, query the runtime, run the stage pipeline, then sync
the runtime's shared libraries.  Any error aborts the run; nothing is
resumable, a re-run starts from the beginning.

Usage::

    jlbuild build hello.jl
    jlbuild build hello.jl --builddir out --optimize 3 --clean -v
    jlbuild build hello.jl --object --no-executable     # hello.o only
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import typer
from rich.markup import escape

from jlbuild.cli import CcOption, JuliaOption, error_exit, json_print
from jlbuild.config import (
    BuildConfig,
    BuildOptions,
    find_project_file,
    load_project_file,
    resolve_config,
)
from jlbuild.errors import BuildError, FilesystemError
from jlbuild.libsync import sync_libraries
from jlbuild.log import BuildLog
from jlbuild.runtime import RuntimeInfo, query_runtime
from jlbuild.stages import Pipeline, StageResult


@dataclass
class BuildReport:
    """What one build produced."""

    config: BuildConfig
    results: list[StageResult] = field(default_factory=list)
    synced: list[Path] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "program": str(self.config.program),
            "build_dir": str(self.config.build_dir),
            "artifacts": {r.kind.value: str(r.artifact) for r in self.results},
            "synced": [p.name for p in self.synced],
        }


def prepare_build_dir(config: BuildConfig, log: BuildLog) -> None:
    """Delete the build directory first if ``clean``; create it if absent."""
    build_dir = config.build_dir
    if config.clean:
        if build_dir.is_dir():
            log.detail("Delete build directory")
            try:
                shutil.rmtree(build_dir)
            except OSError as e:
                raise FilesystemError(f"Cannot delete build directory {build_dir}: {e}") from e
        else:
            log.detail("Build directory does not exist, nothing to delete")

    if not build_dir.is_dir():
        log.detail("Make build directory")
        try:
            build_dir.mkdir(parents=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create build directory {build_dir}: {e}") from e


def build(config: BuildConfig, log: BuildLog | None = None) -> BuildReport:
    """Run one complete build for an already-resolved *config*."""
    log = log if log is not None else BuildLog(config.verbose, config.quiet)

    log.info(f'Julia program file:\n  "{escape(str(config.program))}"')
    if config.cprog is not None:
        log.info(f'C program file:\n  "{escape(str(config.cprog))}"')
    log.info(f'Build directory:\n  "{escape(str(config.build_dir))}"')

    prepare_build_dir(config, log)
    report = BuildReport(config=config)

    stages = config.stages
    if not (stages.object or stages.shared or stages.executable or stages.sync_libraries):
        return report

    runtime: RuntimeInfo = query_runtime(config.julia)
    report.results = Pipeline(config, runtime, log).run()

    if stages.sync_libraries:
        report.synced = sync_libraries(
            runtime.shlib_dirs(config.os_kind), config.build_dir, config.os_kind, log
        )
    return report


def load_options(program: Path, overrides: dict[str, Any]) -> BuildOptions:
    """Defaults, then ``jlbuild.toml`` (if any), then command-line *overrides*."""
    options = BuildOptions(program=program)
    project_file = find_project_file(program.parent if program.parent.is_dir() else Path.cwd())
    if project_file is not None:
        options = options.merged(load_project_file(project_file))
    return options.merged(overrides)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

_EPILOG = """\
[bold]Examples:[/bold]

jlbuild build hello.jl                          Executable + libraries in ./builddir

jlbuild build hello.jl --shared --no-executable Shared library only

jlbuild build hello.jl -O 3 --cpu-target generic --clean

[dim]Defaults can be kept in a jlbuild.toml ([build] and [toolchain] tables)
next to the program or in any parent directory.[/dim]"""

app = typer.Typer(
    help="Compile a Julia program to an object file, shared library and executable.",
    rich_markup_mode="rich",
    epilog=_EPILOG,
)


@app.callback(invoke_without_command=True)
def main(
    program: Path = typer.Argument(help="Julia program file"),
    cprog: Path | None = typer.Option(None, "--cprog", help="C driver program (default: bundled)"),
    builddir: Path | None = typer.Option(None, "--builddir", "-d", help="Build directory"),
    name: str | None = typer.Option(None, "--name", help="Basename of the artifacts"),
    autodeps: bool | None = typer.Option(
        None, "--autodeps/--no-autodeps", help="Build prerequisite stages automatically"
    ),
    object_: bool | None = typer.Option(None, "--object/--no-object", help="Build object file"),
    shared: bool | None = typer.Option(None, "--shared/--no-shared", help="Build shared library"),
    executable: bool | None = typer.Option(
        None, "--executable/--no-executable", help="Build executable"
    ),
    julialibs: bool | None = typer.Option(
        None, "--julialibs/--no-julialibs", help="Sync Julia libraries to the build directory"
    ),
    verbose: bool | None = typer.Option(None, "--verbose", "-v", help="Increase verbosity"),
    quiet: bool | None = typer.Option(None, "--quiet", "-q", help="Suppress non-error messages"),
    clean: bool | None = typer.Option(None, "--clean", help="Delete the build directory first"),
    sysimage: Path | None = typer.Option(None, "--sysimage", "-J", help="Start up with this system image"),
    compile_: str | None = typer.Option(None, "--compile", help="{yes|no|all|min}"),
    cpu_target: str | None = typer.Option(None, "--cpu-target", "-C", help="Limit CPU features to TARGET"),
    optimize: int | None = typer.Option(None, "--optimize", "-O", help="{0,1,2,3}"),
    debug: int | None = typer.Option(None, "--debug", "-g", help="{0,1,2}"),
    inline: str | None = typer.Option(None, "--inline", help="{yes|no}"),
    check_bounds: str | None = typer.Option(None, "--check-bounds", help="{yes|no}"),
    math_mode: str | None = typer.Option(None, "--math-mode", help="{ieee|fast}"),
    depwarn: str | None = typer.Option(None, "--depwarn", help="{yes|no|error}"),
    cc: str | None = CcOption,
    julia: str | None = JuliaOption,
    json_output: bool = typer.Option(False, "--json", help="Print a JSON build report"),
) -> None:
    """Build native artifacts from a Julia program."""
    overrides: dict[str, Any] = {
        "cprog": cprog,
        "builddir": builddir,
        "name": name,
        "autodeps": autodeps,
        "object": object_,
        "shared": shared,
        "executable": executable,
        "sync_libraries": julialibs,
        "verbose": verbose,
        "quiet": quiet,
        "clean": clean,
        "sysimage": sysimage,
        "compile": compile_,
        "cpu_target": cpu_target,
        "optimize": optimize,
        "debug": debug,
        "inline": inline,
        "check_bounds": check_bounds,
        "math_mode": math_mode,
        "depwarn": depwarn,
        "cc": cc,
        "julia": julia,
    }
    try:
        options = load_options(program, overrides)
        config = resolve_config(options)
        report = build(config)
    except BuildError as exc:
        error_exit(str(exc), json_mode=json_output)

    if json_output:
        json_print(report.to_dict())


def main_entry() -> None:
    app()
