"""doctor.py – Diagnostic command for the jlbuild toolchain.

Checks everything a build depends on before a build is attempted: the Julia
runtime answers queries, its ``julia-config.jl`` helper is present, its
library directories exist, and the system C compiler runs.

Usage::

    jlbuild doctor
    jlbuild doctor --cc clang --julia /opt/julia/bin/julia
    jlbuild doctor --json
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any

import typer

from jlbuild.cli import CcOption, JuliaOption, json_print
from jlbuild.config import default_cc, default_julia
from jlbuild.errors import ToolchainError
from jlbuild.platform import OSKind, current_os
from jlbuild.runtime import RuntimeInfo, query_runtime

# ---------------------------------------------------------------------------
# Check result data
# ---------------------------------------------------------------------------

_PASS = "pass"
_FAIL = "fail"
_WARN = "warn"
_SKIP = "skip"


@dataclass
class CheckResult:
    """Result of a single diagnostic check."""

    name: str
    status: str  # "pass", "fail", "warn", "skip"
    message: str
    fix: str = ""

    def to_dict(self) -> dict[str, str]:
        d: dict[str, str] = {
            "name": self.name,
            "status": self.status,
            "message": self.message,
        }
        if self.fix:
            d["fix"] = self.fix
        return d


@dataclass
class DoctorReport:
    """Aggregated results from all diagnostic checks."""

    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """True if no checks failed."""
        return all(c.status != _FAIL for c in self.checks)

    def count(self, status: str) -> int:
        return sum(1 for c in self.checks if c.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "summary": {s: self.count(s) for s in (_PASS, _FAIL, _WARN)},
            "checks": [c.to_dict() for c in self.checks],
        }


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def check_compiler(cc: str) -> CheckResult:
    """Check that ``cc -v`` runs successfully."""
    if shutil.which(cc) is None:
        return CheckResult(
            name="C compiler",
            status=_FAIL,
            message=f"Executable '{cc}' not found in PATH",
            fix="Install gcc (or clang) or point --cc / $CC at a working compiler.",
        )
    try:
        r = subprocess.run([cc, "-v"], capture_output=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        return CheckResult(name="C compiler", status=_FAIL, message=f"Cannot run '{cc}': {e}")
    if r.returncode != 0:
        return CheckResult(
            name="C compiler",
            status=_FAIL,
            message=f"'{cc} -v' exited with status {r.returncode}",
        )
    return CheckResult(name="C compiler", status=_PASS, message=f"{cc} works")


def check_runtime(julia: str) -> tuple[CheckResult, RuntimeInfo | None]:
    """Check that the Julia runtime can be queried."""
    try:
        runtime = query_runtime(julia)
    except ToolchainError as e:
        return (
            CheckResult(
                name="Julia runtime",
                status=_FAIL,
                message=str(e),
                fix="Install Julia or point --julia / $JULIA at the julia binary.",
            ),
            None,
        )
    return (
        CheckResult(
            name="Julia runtime",
            status=_PASS,
            message=f"Julia {runtime.version} ({runtime.word_size}-bit) at {runtime.bindir}",
        ),
        runtime,
    )


def check_config_helper(runtime: RuntimeInfo | None) -> CheckResult:
    if runtime is None:
        return CheckResult(name="julia-config.jl", status=_SKIP, message="No runtime")
    script = runtime.config_script
    if not script.is_file():
        return CheckResult(
            name="julia-config.jl",
            status=_FAIL,
            message=f"Not found: {script}",
            fix="Use a complete Julia installation (share/julia/julia-config.jl is required).",
        )
    return CheckResult(name="julia-config.jl", status=_PASS, message=str(script))


def check_library_dirs(runtime: RuntimeInfo | None, os_kind: OSKind) -> CheckResult:
    if runtime is None:
        return CheckResult(name="Runtime libraries", status=_SKIP, message="No runtime")
    missing = [str(d) for d in runtime.shlib_dirs(os_kind) if not d.is_dir()]
    if missing:
        return CheckResult(
            name="Runtime libraries",
            status=_WARN,
            message=f"Missing library directories: {', '.join(missing)}",
            fix="Library sync will skip them; pass --no-julialibs to silence.",
        )
    return CheckResult(name="Runtime libraries", status=_PASS, message="Library directories found")


def run_doctor(cc: str, julia: str, os_kind: OSKind | None = None) -> DoctorReport:
    os_kind = os_kind if os_kind is not None else current_os()
    report = DoctorReport()
    runtime_check, runtime = check_runtime(julia)
    report.checks.append(runtime_check)
    report.checks.append(check_config_helper(runtime))
    report.checks.append(check_library_dirs(runtime, os_kind))
    report.checks.append(check_compiler(cc))
    return report


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

_STATUS_ICONS = {
    _PASS: "✅",
    _FAIL: "❌",
    _WARN: "⚠️",
    _SKIP: "⏭️",
}

app = typer.Typer(
    help="Diagnostic checks for the Julia runtime and C compiler.",
    rich_markup_mode="rich",
    epilog="""\
[bold]Example:[/bold]

jlbuild doctor                   Check the default toolchain

jlbuild doctor --json            Machine-readable output""",
)


@app.callback(invoke_without_command=True)
def main(
    cc: str | None = CcOption,
    julia: str | None = JuliaOption,
    json_output: bool = typer.Option(False, "--json", help="Output results as JSON"),
) -> None:
    """Run diagnostic checks on the build toolchain."""
    report = run_doctor(cc or default_cc(), julia or default_julia())

    if json_output:
        json_print(report.to_dict())
    else:
        print("\njlbuild doctor")
        print("=" * 60)
        for check in report.checks:
            icon = _STATUS_ICONS.get(check.status, "?")
            print(f"  {icon}  {check.name}: {check.message}")
            if check.fix:
                print(f"       Fix: {check.fix}")
        print("=" * 60)
        if report.passed:
            print("\n  Toolchain looks healthy!\n")
        else:
            print("\n  Issues found. Fix the failures above and re-run.\n")

    if not report.passed:
        raise typer.Exit(code=1)


def main_entry() -> None:
    app()
