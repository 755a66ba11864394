"""Build configuration: raw options, validation and stage expansion.

Caller options arrive as a :class:`BuildOptions` (everything optional, the
same knobs as the command line).  :func:`resolve_config` validates them and
produces an immutable :class:`BuildConfig`.  Nothing in this module spawns a
process, so a bad option always fails before any work is done.

Project defaults can be kept in a ``jlbuild.toml`` next to the program (or in
any parent directory)::

    [build]
    optimize = 3
    cpu_target = "generic"
    builddir = "out"

    [toolchain]
    cc = "clang"
    julia = "/opt/julia-1.10/bin/julia"

Command-line flags override the file; the file overrides built-in defaults.
"""

from __future__ import annotations

import dataclasses
import os
import shutil
import sys
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from jlbuild.errors import InvalidOptionError, SourceNotFoundError
from jlbuild.platform import OSKind, current_os

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

PROJECT_FILE = "jlbuild.toml"

# ---------------------------------------------------------------------------
# Closed option sets
# ---------------------------------------------------------------------------

OPTION_CHOICES: dict[str, tuple[Any, ...]] = {
    "compile": ("yes", "no", "all", "min"),
    "optimize": (0, 1, 2, 3),
    "debug": (0, 1, 2),
    "inline": ("yes", "no"),
    "check_bounds": ("yes", "no"),
    "math_mode": ("ieee", "fast"),
    "depwarn": ("yes", "no", "error"),
}

_INT_OPTIONS = {"optimize", "debug"}


def validate_option(name: str, value: Any) -> Any:
    """Return the normalised *value* for option *name*, or raise.

    ``None`` means "unset" and is always accepted.  Integer options also
    accept their decimal string form (``"2"``) but never booleans.
    """
    if value is None:
        return None
    choices = OPTION_CHOICES[name]
    normalised = value
    if name in _INT_OPTIONS and isinstance(value, str):
        text = value.strip()
        # isdigit() alone also matches superscripts and other non-ASCII digits
        if text.isascii() and text.isdigit():
            normalised = int(text)
    # type check keeps True/1 and 2.0/2 apart
    if type(normalised) is not type(choices[0]) or normalised not in choices:
        raise InvalidOptionError(name, value, f"expected one of {list(choices)}")
    return normalised


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Stages:
    """Which pipeline stages run, plus the library sync toggle."""

    object: bool = False
    shared: bool = False
    executable: bool = False
    sync_libraries: bool = False

    @property
    def links(self) -> bool:
        """True if any stage needs linker flags."""
        return self.shared or self.executable


def expand_stages(stages: Stages) -> Stages:
    """Turn on every prerequisite of the requested stages.

    Executable needs the shared library, which needs the object file.
    Monotone (never disables a stage) and idempotent.
    """
    shared = stages.shared or stages.executable
    obj = stages.object or shared
    return dataclasses.replace(stages, object=obj, shared=shared)


def _missing_prerequisite(stages: Stages) -> tuple[str, str] | None:
    if stages.executable and not stages.shared:
        return "executable", "shared"
    if stages.shared and not stages.object:
        return "shared", "object"
    return None


# ---------------------------------------------------------------------------
# Raw options and resolved config
# ---------------------------------------------------------------------------


@dataclass
class BuildOptions:
    """Raw caller options; ``None`` means "use the default"."""

    program: str | Path = ""
    name: str | None = None
    cprog: str | Path | None = None
    builddir: str | Path = "builddir"

    # stages
    autodeps: bool = True
    object: bool = False
    shared: bool = False
    executable: bool = True
    sync_libraries: bool = True

    # output
    verbose: bool = False
    quiet: bool = False
    clean: bool = False

    # runtime tuning
    sysimage: str | Path | None = None
    compile: str | None = None
    cpu_target: str | None = None
    optimize: int | str | None = None
    debug: int | str | None = None
    inline: str | None = None
    check_bounds: str | None = None
    math_mode: str | None = None
    depwarn: str | None = None

    # toolchain
    cc: str | None = None
    julia: str | None = None
    aux_toolchain_root: str | Path | None = None

    def merged(self, overrides: dict[str, Any]) -> BuildOptions:
        """Copy with every non-``None`` entry of *overrides* applied."""
        known = {f.name for f in dataclasses.fields(self)}
        for key in overrides:
            if key not in known:
                raise InvalidOptionError(key, overrides[key], "unknown option")
        return dataclasses.replace(
            self, **{k: v for k, v in overrides.items() if v is not None}
        )


@dataclass(frozen=True)
class TuningOptions:
    """Runtime flags forwarded to the object stage; ``None`` = runtime default."""

    sysimage: Path | None = None
    compile: str | None = None
    cpu_target: str | None = None
    optimize: int | None = None
    debug: int | None = None
    inline: str | None = None
    check_bounds: str | None = None
    math_mode: str | None = None
    depwarn: str | None = None


@dataclass(frozen=True)
class BuildConfig:
    """Validated, expanded configuration for one build invocation."""

    program: Path
    name: str
    build_dir: Path
    stages: Stages
    cprog: Path | None = None
    tuning: TuningOptions = field(default_factory=TuningOptions)
    cc: str = "gcc"
    julia: str = "julia"
    aux_toolchain_root: Path | None = None
    os_kind: OSKind = OSKind.UNIX
    verbose: bool = False
    quiet: bool = False
    clean: bool = False


def default_driver_program() -> Path:
    """The minimal C driver bundled with jlbuild."""
    return Path(str(resources.files("jlbuild") / "data" / "program.c"))


def default_cc() -> str:
    return os.environ.get("CC") or "gcc"


def default_julia() -> str:
    return os.environ.get("JULIA") or shutil.which("julia") or "julia"


def resolve_config(options: BuildOptions, *, os_kind: OSKind | None = None) -> BuildConfig:
    """Validate *options* and return the immutable :class:`BuildConfig`.

    Raises:
        InvalidOptionError: an enumerated option is out of range, or (with
            ``autodeps`` off) a requested stage lacks its prerequisite.
        SourceNotFoundError: the program, or the driver program when an
            executable is requested, does not exist.
    """
    tuning = TuningOptions(
        sysimage=Path(options.sysimage) if options.sysimage else None,
        compile=validate_option("compile", options.compile),
        cpu_target=options.cpu_target or None,
        optimize=validate_option("optimize", options.optimize),
        debug=validate_option("debug", options.debug),
        inline=validate_option("inline", options.inline),
        check_bounds=validate_option("check_bounds", options.check_bounds),
        math_mode=validate_option("math_mode", options.math_mode),
        depwarn=validate_option("depwarn", options.depwarn),
    )

    stages = Stages(
        object=bool(options.object),
        shared=bool(options.shared),
        executable=bool(options.executable),
        sync_libraries=bool(options.sync_libraries),
    )
    if options.autodeps:
        stages = expand_stages(stages)
    else:
        missing = _missing_prerequisite(stages)
        if missing is not None:
            stage, needs = missing
            raise InvalidOptionError(
                stage, True, f"requires '{needs}'; enable it or turn on autodeps"
            )

    if not str(options.program):
        raise InvalidOptionError("program", options.program, "no program given")
    program = Path(options.program).resolve()
    if not program.is_file():
        raise SourceNotFoundError(program)

    cprog: Path | None = None
    if stages.executable:
        cprog = Path(options.cprog).resolve() if options.cprog else default_driver_program()
        if not cprog.is_file():
            raise SourceNotFoundError(cprog)

    # A relative build directory is taken relative to the program.
    build_dir = Path(options.builddir)
    if not build_dir.is_absolute():
        build_dir = program.parent / build_dir
    build_dir = build_dir.resolve()

    verbose = bool(options.verbose)
    return BuildConfig(
        program=program,
        name=options.name or program.stem,
        build_dir=build_dir,
        stages=stages,
        cprog=cprog,
        tuning=tuning,
        cc=options.cc or default_cc(),
        julia=options.julia or default_julia(),
        aux_toolchain_root=Path(options.aux_toolchain_root) if options.aux_toolchain_root else None,
        os_kind=os_kind if os_kind is not None else current_os(),
        verbose=verbose,
        quiet=bool(options.quiet) and not verbose,
        clean=bool(options.clean),
    )


# ---------------------------------------------------------------------------
# jlbuild.toml
# ---------------------------------------------------------------------------


def find_project_file(start: Path) -> Path | None:
    """Walk up from *start* looking for ``jlbuild.toml``."""
    candidate = start.resolve()
    if candidate.is_file():
        candidate = candidate.parent
    while True:
        path = candidate / PROJECT_FILE
        if path.is_file():
            return path
        if candidate == candidate.parent:
            return None
        candidate = candidate.parent


_TOOLCHAIN_KEYS = {"cc", "julia", "aux_toolchain_root"}

# Command-line spellings accepted in [build] alongside the option names.
_KEY_ALIASES = {"julialibs": "sync_libraries"}


def _table(raw: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    table = raw.get(name, {})
    if not isinstance(table, dict):
        raise InvalidOptionError(name, table, f"[{name}] in {path.name} must be a table")
    return {k.replace("-", "_"): v for k, v in table.items()}


def load_project_file(path: Path) -> dict[str, Any]:
    """Read ``[build]`` and ``[toolchain]`` from *path* as flat option overrides.

    ``[toolchain]`` only takes ``cc``, ``julia`` and ``aux_toolchain_root``.
    Relative paths in the file are resolved against the file's directory.
    """
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise InvalidOptionError(path.name, str(path), f"not valid TOML: {e}") from e

    known = {f.name for f in dataclasses.fields(BuildOptions)} - {"program"}

    opts: dict[str, Any] = {}
    for key, value in _table(raw, "build", path).items():
        key = _KEY_ALIASES.get(key, key)
        if key not in known:
            raise InvalidOptionError(key, value, f"unknown key in [build] of {path.name}")
        opts[key] = value
    for key, value in _table(raw, "toolchain", path).items():
        if key not in _TOOLCHAIN_KEYS:
            raise InvalidOptionError(key, value, f"unknown key in [toolchain] of {path.name}")
        opts[key] = value

    for key in ("builddir", "cprog", "sysimage", "aux_toolchain_root"):
        if key in opts and not Path(opts[key]).is_absolute():
            opts[key] = str(path.parent / opts[key])
    return opts
