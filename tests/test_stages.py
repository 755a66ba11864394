"""Tests for jlbuild.stages: command builders and the Pipeline state machine."""

import subprocess
from pathlib import Path
from typing import Any

import pytest

from jlbuild.config import BuildConfig, Stages, TuningOptions
from jlbuild.errors import StageError
from jlbuild.flags import PlatformFlags
from jlbuild.log import BuildLog
from jlbuild.platform import OSKind
from jlbuild.runtime import RuntimeInfo
from jlbuild.stages import (
    Pipeline,
    PipelineState,
    StageKind,
    executable_command,
    include_expr,
    julia_string,
    object_commands,
    run_stage_command,
    runtime_command,
    shared_command,
)

FLAGS = PlatformFlags(
    cflags=("-std=gnu99", "-I/opt/julia/include/julia"),
    ldflags=("-L/opt/julia/lib",),
    ldlibs=("-ljulia",),
)


def _runtime(tmp_path: Path) -> RuntimeInfo:
    return RuntimeInfo(
        binary="/opt/julia/bin/julia",
        version="1.10.2",
        bindir=tmp_path / "julia" / "bin",
        libdir=tmp_path / "julia" / "lib",
        private_libdir=tmp_path / "julia" / "lib" / "julia",
        word_size=64,
    )


def _config(tmp_path: Path, **overrides: Any) -> BuildConfig:
    values: dict[str, Any] = {
        "program": tmp_path / "hello.jl",
        "name": "hello",
        "build_dir": tmp_path / "builddir",
        "stages": Stages(object=True, shared=True, executable=True),
        "cprog": tmp_path / "program.c",
        "cc": "gcc",
        "os_kind": OSKind.UNIX,
    }
    values.update(overrides)
    return BuildConfig(**values)


class _Recorder:
    """Stands in for subprocess.run and remembers every command."""

    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[list[str]] = []
        self.cwds: list[str] = []
        self.fail_on = fail_on

    def __call__(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        self.cwds.append(kwargs.get("cwd", ""))
        code = 1 if self.fail_on is not None and self.fail_on in cmd else 0
        return subprocess.CompletedProcess(cmd, code)


# ---------------------------------------------------------------------------
# Pure builders
# ---------------------------------------------------------------------------


class TestJuliaString:
    def test_plain(self) -> None:
        assert julia_string("/a/b.jl") == '"/a/b.jl"'

    def test_escapes_backslashes_quotes_and_dollar(self) -> None:
        assert julia_string('C:\\x\\"$y') == '"C:\\\\x\\\\\\"\\$y"'


class TestIncludeExpr:
    def test_scratch_first_then_include(self, tmp_path: Path) -> None:
        expr = include_expr(Path("/src/hello.jl"), Path("/b/tmp_v1.10.2"))
        lines = expr.splitlines()
        assert lines[-2] == 'pushfirst!(DEPOT_PATH, "/b/tmp_v1.10.2")'
        assert lines[-1] == 'include("/src/hello.jl")'


class TestRuntimeCommand:
    def test_unset_options_omitted(self) -> None:
        assert runtime_command("julia", TuningOptions()) == ["julia", "--startup-file=no"]

    def test_all_options_in_order(self) -> None:
        tuning = TuningOptions(
            sysimage=Path("/s/sys.so"),
            compile="all",
            cpu_target="generic",
            optimize=3,
            debug=0,
            inline="no",
            check_bounds="yes",
            math_mode="fast",
            depwarn="error",
        )
        assert runtime_command("julia", tuning) == [
            "julia",
            "-Cgeneric",
            "-J/s/sys.so",
            "--compile=all",
            "--depwarn=error",
            "--startup-file=no",
            "-O3",
            "-g0",
            "--inline=no",
            "--check-bounds=yes",
            "--math-mode=fast",
        ]


class TestObjectCommands:
    def test_passes_share_template(self, tmp_path: Path) -> None:
        cfg = _config(tmp_path, tuning=TuningOptions(optimize=2))
        precompile, emit = object_commands(cfg, _runtime(tmp_path))
        assert precompile[:-2] == emit[:-4]
        assert emit[-4:-2] == ["--output-o", "hello.o"]
        assert precompile[-2:] == emit[-2:]
        assert precompile[-2] == "-e"

    def test_scratch_dir_named_by_version(self, tmp_path: Path) -> None:
        precompile, _ = object_commands(_config(tmp_path), _runtime(tmp_path))
        scratch = tmp_path / "builddir" / "tmp_v1.10.2"
        assert julia_string(str(scratch)) in precompile[-1]

    def test_starts_with_runtime_binary(self, tmp_path: Path) -> None:
        precompile, _ = object_commands(_config(tmp_path), _runtime(tmp_path))
        assert precompile[0] == "/opt/julia/bin/julia"


class TestSharedCommand:
    def test_order_unix(self, tmp_path: Path) -> None:
        cmd = shared_command(_config(tmp_path), _runtime(tmp_path), FLAGS, "hello.o")
        assert cmd == [
            "gcc",
            "-m64",
            "-shared",
            "-o",
            "hello.so",
            "hello.o",
            "-std=gnu99",
            "-I/opt/julia/include/julia",
            "-L/opt/julia/lib",
            "-ljulia",
        ]

    def test_apple_install_name(self, tmp_path: Path) -> None:
        cfg = _config(tmp_path, os_kind=OSKind.APPLE)
        cmd = shared_command(cfg, _runtime(tmp_path), FLAGS, "hello.o")
        assert cmd[4] == "hello.dylib"
        assert cmd[-1] == "-Wl,-install_name,@rpath/hello.dylib"

    def test_windows_exports_all(self, tmp_path: Path) -> None:
        cfg = _config(tmp_path, os_kind=OSKind.WINDOWS)
        cmd = shared_command(cfg, _runtime(tmp_path), FLAGS, "hello.o")
        assert cmd[4] == "hello.dll"
        assert cmd[-1] == "-Wl,--export-all-symbols"

    def test_32_bit_runtime(self, tmp_path: Path) -> None:
        runtime = RuntimeInfo("julia", "1.10.2", tmp_path, tmp_path, tmp_path, word_size=32)
        cmd = shared_command(_config(tmp_path), runtime, FLAGS, "hello.o")
        assert cmd[1] == "-m32"

    @pytest.mark.parametrize("os_kind", list(OSKind))
    def test_link_flags_independent_of_tuning(self, tmp_path: Path, os_kind: OSKind) -> None:
        plain = shared_command(_config(tmp_path, os_kind=os_kind), _runtime(tmp_path), FLAGS, "hello.o")
        tuned = shared_command(
            _config(
                tmp_path,
                os_kind=os_kind,
                tuning=TuningOptions(optimize=0, cpu_target="generic"),
                verbose=True,
                clean=True,
            ),
            _runtime(tmp_path),
            FLAGS,
            "hello.o",
        )
        assert plain == tuned


class TestExecutableCommand:
    def test_order_unix(self, tmp_path: Path) -> None:
        cfg = _config(tmp_path)
        cmd = executable_command(cfg, _runtime(tmp_path), FLAGS, "hello.so")
        assert cmd[:7] == [
            "gcc",
            "-m64",
            '-DJULIAC_PROGRAM_LIBNAME="hello.so"',
            "-o",
            "hello",
            str(tmp_path / "program.c"),
            "hello.so",
        ]
        assert cmd[7:-1] == FLAGS.tokens()
        assert cmd[-1] == "-Wl,-rpath,$ORIGIN"

    def test_apple_rpath(self, tmp_path: Path) -> None:
        cfg = _config(tmp_path, os_kind=OSKind.APPLE)
        cmd = executable_command(cfg, _runtime(tmp_path), FLAGS, "hello.dylib")
        assert cmd[-1] == "-Wl,-rpath,@executable_path"
        assert '-DJULIAC_PROGRAM_LIBNAME="hello.dylib"' in cmd

    def test_windows_exe_no_rpath(self, tmp_path: Path) -> None:
        cfg = _config(tmp_path, os_kind=OSKind.WINDOWS)
        cmd = executable_command(cfg, _runtime(tmp_path), FLAGS, "hello.dll")
        assert cmd[4] == "hello.exe"
        assert not any(tok.startswith("-Wl,-rpath") for tok in cmd)

    def test_windows_aux_toolchain_include(self, tmp_path: Path) -> None:
        root = tmp_path / "mingw"
        cfg = _config(tmp_path, os_kind=OSKind.WINDOWS, aux_toolchain_root=root)
        cmd = executable_command(cfg, _runtime(tmp_path), FLAGS, "hello.dll")
        assert cmd[-1] == f"-I{root / 'include'}"

    def test_aux_toolchain_ignored_off_windows(self, tmp_path: Path) -> None:
        cfg = _config(tmp_path, aux_toolchain_root=tmp_path / "mingw")
        cmd = executable_command(cfg, _runtime(tmp_path), FLAGS, "hello.so")
        assert not any(tok.startswith("-I" + str(tmp_path)) for tok in cmd)


# ---------------------------------------------------------------------------
# run_stage_command()
# ---------------------------------------------------------------------------


class TestRunStageCommand:
    def test_nonzero_exit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            "jlbuild.stages.subprocess.run",
            lambda cmd, **kw: subprocess.CompletedProcess(cmd, 2),
        )
        with pytest.raises(StageError) as exc_info:
            run_stage_command(StageKind.SHARED, ["gcc", "-shared"], tmp_path)
        assert exc_info.value.stage == "shared"
        assert exc_info.value.command == ["gcc", "-shared"]
        assert "gcc -shared" in str(exc_info.value)

    def test_spawn_failure(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        def _boom(cmd: list[str], **kw: Any) -> None:
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr("jlbuild.stages.subprocess.run", _boom)
        with pytest.raises(StageError, match="cannot run nocc"):
            run_stage_command(StageKind.EXECUTABLE, ["nocc"], tmp_path)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestPipeline:
    def _patch(
        self, monkeypatch: pytest.MonkeyPatch, recorder: _Recorder
    ) -> list[RuntimeInfo]:
        flag_calls: list[RuntimeInfo] = []

        def _flags(runtime: RuntimeInfo, os_kind: OSKind | None = None) -> PlatformFlags:
            flag_calls.append(runtime)
            return FLAGS

        monkeypatch.setattr("jlbuild.stages.subprocess.run", recorder)
        monkeypatch.setattr("jlbuild.stages.query_platform_flags", _flags)
        return flag_calls

    def test_object_only(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        recorder = _Recorder()
        flag_calls = self._patch(monkeypatch, recorder)
        cfg = _config(tmp_path, stages=Stages(object=True))
        (tmp_path / "builddir").mkdir()

        pipeline = Pipeline(cfg, _runtime(tmp_path), BuildLog(quiet=True))
        results = pipeline.run()

        assert [r.kind for r in results] == [StageKind.OBJECT]
        assert results[0].artifact == tmp_path / "builddir" / "hello.o"
        assert flag_calls == []
        assert len(recorder.calls) == 2
        assert (tmp_path / "builddir" / "tmp_v1.10.2").is_dir()
        assert pipeline.state is PipelineState.DONE

    def test_full_pipeline_order(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        recorder = _Recorder()
        flag_calls = self._patch(monkeypatch, recorder)
        cfg = _config(tmp_path)
        (tmp_path / "builddir").mkdir()

        results = Pipeline(cfg, _runtime(tmp_path), BuildLog(quiet=True)).run()

        assert [r.kind for r in results] == [
            StageKind.OBJECT,
            StageKind.SHARED,
            StageKind.EXECUTABLE,
        ]
        assert len(flag_calls) == 1
        assert len(recorder.calls) == 4
        assert recorder.calls[2][0] == "gcc" and "-shared" in recorder.calls[2]
        assert '-DJULIAC_PROGRAM_LIBNAME="hello.so"' in recorder.calls[3]
        assert all(cwd == str(tmp_path / "builddir") for cwd in recorder.cwds)
        assert results[-1].command == tuple(recorder.calls[3])

    def test_failure_aborts(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        recorder = _Recorder(fail_on="-shared")
        self._patch(monkeypatch, recorder)
        cfg = _config(tmp_path)
        (tmp_path / "builddir").mkdir()
        pipeline = Pipeline(cfg, _runtime(tmp_path), BuildLog(quiet=True))

        with pytest.raises(StageError) as exc_info:
            pipeline.run()

        assert exc_info.value.stage == "shared"
        assert pipeline.state is PipelineState.FAILED
        assert len(recorder.calls) == 3
        assert StageKind.EXECUTABLE not in pipeline.results

    def test_flag_provider_failure(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from jlbuild.errors import ToolchainError

        def _broken(runtime: RuntimeInfo, os_kind: OSKind | None = None) -> PlatformFlags:
            raise ToolchainError("julia-config.jl missing")

        monkeypatch.setattr("jlbuild.stages.subprocess.run", _Recorder())
        monkeypatch.setattr("jlbuild.stages.query_platform_flags", _broken)
        (tmp_path / "builddir").mkdir()
        pipeline = Pipeline(_config(tmp_path), _runtime(tmp_path), BuildLog(quiet=True))

        with pytest.raises(ToolchainError):
            pipeline.run()
        assert pipeline.state is PipelineState.FAILED

    def test_verbose_echoes_commands(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        import io

        from rich.console import Console

        self._patch(monkeypatch, _Recorder())
        buf = io.StringIO()
        log = BuildLog(verbose=True, console=Console(file=buf, width=400))
        cfg = _config(tmp_path, stages=Stages(object=True, shared=True))
        (tmp_path / "builddir").mkdir()

        Pipeline(cfg, _runtime(tmp_path), log).run()

        out = buf.getvalue()
        assert 'Build shared library "hello.so"' in out
        assert "gcc -m64 -shared -o hello.so hello.o" in out
