"""Stage pipeline: Object -> Shared library -> Executable.

Command construction and execution are kept apart.  The ``*_command``
functions are pure: they turn a :class:`~jlbuild.config.BuildConfig`, the
:class:`~jlbuild.runtime.RuntimeInfo` and (for linking stages) the
:class:`~jlbuild.flags.PlatformFlags` into an explicit, ordered token list::

    tool, bit-width flag, stage flags, output flag, inputs, platform flags

:class:`Pipeline` walks the stages in that fixed order, skipping disabled
ones, runs each command to completion and records a :class:`StageResult`.
The first failure aborts the run.

Artifacts are named relative to the build directory, which is the working
directory of every child process, so the executable records the shared
library by file name and finds it again through its rpath.
"""

from __future__ import annotations

import enum
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from jlbuild.config import BuildConfig, TuningOptions
from jlbuild.errors import FilesystemError, StageError
from jlbuild.flags import PlatformFlags, query_platform_flags
from jlbuild.log import BuildLog
from jlbuild.platform import (
    aux_toolchain_env,
    aux_toolchain_flags,
    executable_link_flags,
    executable_name,
    object_name,
    shared_link_flags,
    shared_name,
)
from jlbuild.runtime import RuntimeInfo

# Compile-time symbol through which the driver program finds the library.
LIBNAME_SYMBOL = "JULIAC_PROGRAM_LIBNAME"


class StageKind(enum.Enum):
    OBJECT = "object"
    SHARED = "shared"
    EXECUTABLE = "executable"


class PipelineState(enum.Enum):
    NOT_STARTED = "not-started"
    OBJECT = "object"
    SHARED = "shared"
    EXECUTABLE = "executable"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult:
    """Artifact produced by a stage and the command that produced it."""

    kind: StageKind
    artifact: Path
    command: tuple[str, ...]


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------


def julia_string(text: str) -> str:
    """Quote *text* as a Julia string literal."""
    escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


def include_expr(program: Path, scratch_dir: Path) -> str:
    """Expression that loads *program* with *scratch_dir* first on the depot path.

    Precompiled caches for the program's dependencies land in (and are read
    from) ``scratch_dir/compiled``.
    """
    return "\n".join(
        [
            "Base.init_depot_path()",
            "Base.init_load_path()",
            f"pushfirst!(DEPOT_PATH, {julia_string(str(scratch_dir))})",
            f"include({julia_string(str(program))})",
        ]
    )


def runtime_command(julia: str, tuning: TuningOptions) -> list[str]:
    """Julia invocation with every configured tuning flag.

    Unset options are left out so the runtime's own defaults apply.
    """
    cmd = [julia]
    if tuning.cpu_target is not None:
        cmd.append(f"-C{tuning.cpu_target}")
    if tuning.sysimage is not None:
        cmd.append(f"-J{tuning.sysimage}")
    if tuning.compile is not None:
        cmd.append(f"--compile={tuning.compile}")
    if tuning.depwarn is not None:
        cmd.append(f"--depwarn={tuning.depwarn}")
    cmd.append("--startup-file=no")
    if tuning.optimize is not None:
        cmd.append(f"-O{tuning.optimize}")
    if tuning.debug is not None:
        cmd.append(f"-g{tuning.debug}")
    if tuning.inline is not None:
        cmd.append(f"--inline={tuning.inline}")
    if tuning.check_bounds is not None:
        cmd.append(f"--check-bounds={tuning.check_bounds}")
    if tuning.math_mode is not None:
        cmd.append(f"--math-mode={tuning.math_mode}")
    return cmd


def object_commands(config: BuildConfig, runtime: RuntimeInfo) -> tuple[list[str], list[str]]:
    """The precompile pass and the object-emitting pass.

    Both share one template; the second only adds the output flag.
    """
    scratch = config.build_dir / runtime.scratch_dirname
    template = runtime_command(runtime.binary, config.tuning)
    expr = include_expr(config.program, scratch)
    precompile = [*template, "-e", expr]
    emit = [*template, "--output-o", object_name(config.name), "-e", expr]
    return precompile, emit


def shared_command(
    config: BuildConfig,
    runtime: RuntimeInfo,
    flags: PlatformFlags,
    object_file: str,
) -> list[str]:
    so_file = shared_name(config.name, config.os_kind)
    return [
        config.cc,
        runtime.bitness_flag,
        "-shared",
        "-o",
        so_file,
        object_file,
        *flags.tokens(),
        *shared_link_flags(config.os_kind, so_file),
    ]


def executable_command(
    config: BuildConfig,
    runtime: RuntimeInfo,
    flags: PlatformFlags,
    shared_file: str,
) -> list[str]:
    if config.cprog is None:
        raise ValueError("executable stage requires a driver program")
    return [
        config.cc,
        runtime.bitness_flag,
        f'-D{LIBNAME_SYMBOL}="{shared_file}"',
        "-o",
        executable_name(config.name, config.os_kind),
        str(config.cprog),
        shared_file,
        *flags.tokens(),
        *aux_toolchain_flags(config.os_kind, config.aux_toolchain_root),
        *executable_link_flags(config.os_kind),
    ]


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def run_stage_command(
    kind: StageKind,
    cmd: Sequence[str],
    cwd: Path,
    env: dict[str, str] | None = None,
) -> None:
    """Run *cmd* to completion; any failure is a :class:`StageError`."""
    try:
        r = subprocess.run(list(cmd), cwd=str(cwd), env=env)
    except OSError as e:
        raise StageError(kind.value, cmd, f"cannot run {cmd[0]}: {e}") from e
    if r.returncode != 0:
        raise StageError(kind.value, cmd, f"exit status {r.returncode}")


class Pipeline:
    """Runs the enabled stages of one build in order."""

    def __init__(self, config: BuildConfig, runtime: RuntimeInfo, log: BuildLog | None = None):
        self.config = config
        self.runtime = runtime
        self.log = log if log is not None else BuildLog(config.verbose, config.quiet)
        self.state = PipelineState.NOT_STARTED
        self.results: dict[StageKind, StageResult] = {}
        self._flags: PlatformFlags | None = None

    @property
    def flags(self) -> PlatformFlags:
        """Platform flags, fetched on first use and reused afterwards."""
        if self._flags is None:
            self._flags = query_platform_flags(self.runtime, self.config.os_kind)
        return self._flags

    def run(self) -> list[StageResult]:
        """Run every enabled stage; returns the results in stage order."""
        stages = self.config.stages
        steps = (
            (PipelineState.OBJECT, stages.object, self._object),
            (PipelineState.SHARED, stages.shared, self._shared),
            (PipelineState.EXECUTABLE, stages.executable, self._executable),
        )
        try:
            for state, enabled, step in steps:
                self.state = state
                if enabled:
                    result = step()
                    self.results[result.kind] = result
        except BaseException:
            self.state = PipelineState.FAILED
            raise
        self.state = PipelineState.DONE
        return list(self.results.values())

    def _execute(
        self, kind: StageKind, label: str, cmd: list[str], env: dict[str, str] | None = None
    ) -> None:
        self.log.command(label, cmd)
        run_stage_command(kind, cmd, self.config.build_dir, env)

    def _object(self) -> StageResult:
        cfg = self.config
        scratch = cfg.build_dir / self.runtime.scratch_dirname
        try:
            scratch.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create scratch directory {scratch}: {e}") from e

        precompile, emit = object_commands(cfg, self.runtime)
        self._execute(
            StageKind.OBJECT,
            f'Build module cache files in subdirectory "{scratch.name}"',
            precompile,
        )
        o_file = object_name(cfg.name)
        self._execute(StageKind.OBJECT, f'Build object file "{o_file}"', emit)
        return StageResult(StageKind.OBJECT, cfg.build_dir / o_file, tuple(emit))

    def _shared(self) -> StageResult:
        cfg = self.config
        obj = self.results[StageKind.OBJECT].artifact.name
        cmd = shared_command(cfg, self.runtime, self.flags, obj)
        so_file = shared_name(cfg.name, cfg.os_kind)
        self._execute(StageKind.SHARED, f'Build shared library "{so_file}"', cmd)
        return StageResult(StageKind.SHARED, cfg.build_dir / so_file, tuple(cmd))

    def _executable(self) -> StageResult:
        cfg = self.config
        so_file = self.results[StageKind.SHARED].artifact.name
        cmd = executable_command(cfg, self.runtime, self.flags, so_file)
        env = aux_toolchain_env(cfg.os_kind, cfg.aux_toolchain_root)
        e_file = executable_name(cfg.name, cfg.os_kind)
        self._execute(StageKind.EXECUTABLE, f'Build executable file "{e_file}"', cmd, env)
        return StageResult(StageKind.EXECUTABLE, cfg.build_dir / e_file, tuple(cmd))
