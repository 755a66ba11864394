"""One-shot query of the installed Julia runtime.

The runtime is asked once for everything the build needs to know about it:
its version (names the scratch directory), ``Sys.BINDIR`` (locates
``julia-config.jl``), the public and private shared-library directories
(sources for library sync) and its word size (``-m32``/``-m64``).
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from jlbuild.errors import ToolchainError
from jlbuild.platform import OSKind

_QUERY_EXPR = """\
print(join([
    string(VERSION),
    Sys.BINDIR,
    abspath(Sys.BINDIR, Base.LIBDIR),
    abspath(Sys.BINDIR, Base.PRIVATE_LIBDIR),
    string(Sys.WORD_SIZE),
], "\\n"))"""


@dataclass(frozen=True)
class RuntimeInfo:
    """Facts about a Julia installation."""

    binary: str
    version: str
    bindir: Path
    libdir: Path
    private_libdir: Path
    word_size: int = 64

    @property
    def bitness_flag(self) -> str:
        return "-m32" if self.word_size == 32 else "-m64"

    @property
    def scratch_dirname(self) -> str:
        """Per-version scratch directory name, e.g. ``tmp_v1.10.2``."""
        return f"tmp_v{self.version}"

    @property
    def config_script(self) -> Path:
        return self.bindir.parent / "share" / "julia" / "julia-config.jl"

    def shlib_dirs(self, os_kind: OSKind) -> tuple[Path, Path]:
        """Public and private library directories.

        On Windows the DLLs live next to the julia binary.
        """
        public = self.bindir if os_kind is OSKind.WINDOWS else self.libdir
        return public, self.private_libdir


def query_runtime(julia: str) -> RuntimeInfo:
    """Run *julia* once and return its :class:`RuntimeInfo`.

    Raises:
        ToolchainError: the binary cannot be started, exits non-zero, or
            prints something unexpected.
    """
    cmd = [julia, "--startup-file=no", "-e", _QUERY_EXPR]
    try:
        r = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ToolchainError(f"Cannot run Julia runtime '{julia}': {e}") from e
    if r.returncode != 0:
        raise ToolchainError(
            f"Julia runtime '{julia}' exited with status {r.returncode}: {r.stderr.strip()[:400]}"
        )

    lines = [line.strip() for line in r.stdout.strip().splitlines()]
    if len(lines) != 5:
        raise ToolchainError(f"Unexpected output from '{julia}' runtime query: {r.stdout!r}")
    version, bindir, libdir, private_libdir, word_size = lines
    try:
        bits = int(word_size)
    except ValueError as e:
        raise ToolchainError(f"Unexpected word size from '{julia}': {word_size!r}") from e

    return RuntimeInfo(
        binary=julia,
        version=version,
        bindir=Path(bindir),
        libdir=Path(libdir),
        private_libdir=Path(private_libdir),
        word_size=bits,
    )
