"""Library Synchronizer: keep the runtime's shared libraries next to the build.

Candidates come from the runtime's public and private library directories.
A candidate is copied into the build directory when the destination is
missing, its size differs, or the source's ctime or mtime is newer.  This is
a cheap stat comparison, not a content hash: a second run with unchanged
sources copies nothing.

Usage::

    jlbuild sync-libs builddir
    jlbuild sync-libs builddir --julia /opt/julia/bin/julia -v
"""

from __future__ import annotations

import os
import re
import shutil
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.markup import escape

from jlbuild.cli import JuliaOption, error_exit, json_print
from jlbuild.config import default_julia
from jlbuild.errors import BuildError, FilesystemError
from jlbuild.log import BuildLog
from jlbuild.platform import OSKind, current_os, dlext
from jlbuild.runtime import query_runtime

# libfoo.so, libfoo.so.1, libfoo.so.1.2.3
_UNIX_LIB_RE = re.compile(r"^lib.+\.so(?:\.\d+)*$")
_DEBUG_RE = re.compile(r"debug")


@dataclass(frozen=True)
class LibraryFile:
    """Point-in-time stat snapshot of a library file."""

    path: Path
    size: int
    mtime: float
    ctime: float

    @classmethod
    def from_path(cls, path: Path) -> LibraryFile:
        st = os.stat(path)
        return cls(path=path, size=st.st_size, mtime=st.st_mtime, ctime=st.st_ctime)


def is_candidate(name: str, os_kind: OSKind) -> bool:
    """Whether a directory entry named *name* looks like a runtime library."""
    if os_kind in (OSKind.WINDOWS, OSKind.APPLE):
        return name.endswith("." + dlext(os_kind))
    return _UNIX_LIB_RE.match(name) is not None


def find_library_files(dirs: Iterable[Path], os_kind: OSKind) -> list[Path]:
    """Candidate library files in *dirs*, debug builds excluded.

    Missing directories are skipped.
    """
    found: list[Path] = []
    for directory in dirs:
        if not directory.is_dir():
            continue
        for name in sorted(os.listdir(directory)):
            path = directory / name
            if _DEBUG_RE.search(str(path)):
                continue
            if is_candidate(name, os_kind) and path.is_file():
                found.append(path)
    return found


def needs_copy(src: LibraryFile, dst: LibraryFile | None) -> bool:
    """Stat heuristic deciding whether *src* must replace *dst*."""
    if dst is None:
        return True
    return src.size != dst.size or src.ctime > dst.ctime or src.mtime > dst.mtime


def _copy(src: Path, dst: Path) -> None:
    # Replace rather than write through: dst may be a symlink into the runtime.
    if dst.is_symlink() or dst.exists():
        dst.unlink()
    shutil.copy2(src, dst)


def sync_libraries(
    dirs: Iterable[Path],
    build_dir: Path,
    os_kind: OSKind | None = None,
    log: BuildLog | None = None,
) -> list[Path]:
    """Copy changed runtime libraries from *dirs* into *build_dir*.

    Returns the destination paths that were written, in copy order.

    Raises:
        FilesystemError: a stat or copy failed.
    """
    os_kind = os_kind if os_kind is not None else current_os()
    log = log if log is not None else BuildLog()
    log.detail("Sync Julia libraries to build directory:")

    copied: list[Path] = []
    for src_path in find_library_files(dirs, os_kind):
        dst_path = build_dir / src_path.name
        try:
            src = LibraryFile.from_path(src_path)
            dst = LibraryFile.from_path(dst_path) if dst_path.exists() else None
            if not needs_copy(src, dst):
                continue
            log.detail(f"  {escape(dst_path.name)}")
            _copy(src_path, dst_path)
        except OSError as e:
            raise FilesystemError(f"Cannot copy {src_path} to {dst_path}: {e}") from e
        copied.append(dst_path)

    if not copied:
        log.detail("  none")
    return copied


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="Copy the Julia runtime's shared libraries into a build directory.",
    rich_markup_mode="rich",
    epilog="""\
[bold]Examples:[/bold]

jlbuild sync-libs builddir          Copy changed libraries

jlbuild sync-libs builddir -v       List every copied file

[dim]Only files whose size or timestamps changed are copied.[/dim]""",
)


@app.callback(invoke_without_command=True)
def main(
    builddir: Path = typer.Argument(Path("builddir"), help="Build directory"),
    julia: str | None = JuliaOption,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="List copied files"),
    json_output: bool = typer.Option(False, "--json", help="Output results as JSON"),
) -> None:
    """Sync Julia runtime libraries into BUILDDIR."""
    os_kind = current_os()
    log = BuildLog(verbose=verbose and not json_output)
    try:
        runtime = query_runtime(julia or default_julia())
        try:
            builddir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create build directory {builddir}: {e}") from e
        copied = sync_libraries(runtime.shlib_dirs(os_kind), builddir, os_kind, log)
    except BuildError as exc:
        error_exit(str(exc), json_mode=json_output)

    if json_output:
        json_print({"build_dir": str(builddir.resolve()), "copied": [p.name for p in copied]})
    elif not verbose:
        print(f"Copied {len(copied)} file(s) to {builddir}")


def main_entry() -> None:
    app()
