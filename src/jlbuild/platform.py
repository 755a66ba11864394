"""Host classification and the platform-specific parts of linking.

Everything here is a pure function of :class:`OSKind`; nothing else about
the build influences which link adjustments are chosen.
"""

from __future__ import annotations

import enum
import os
import sys
from pathlib import Path


class OSKind(enum.Enum):
    WINDOWS = "windows"
    APPLE = "apple"
    UNIX = "unix"

    @property
    def is_unix(self) -> bool:
        """Apple counts as Unix for rpath purposes."""
        return self is not OSKind.WINDOWS


def current_os(platform: str | None = None) -> OSKind:
    """Classify *platform* (default ``sys.platform``)."""
    name = sys.platform if platform is None else platform
    if name.startswith(("win32", "cygwin", "msys")):
        return OSKind.WINDOWS
    if name == "darwin":
        return OSKind.APPLE
    return OSKind.UNIX


_DLEXT = {
    OSKind.WINDOWS: "dll",
    OSKind.APPLE: "dylib",
    OSKind.UNIX: "so",
}


def dlext(os_kind: OSKind) -> str:
    """Shared library extension without the leading dot."""
    return _DLEXT[os_kind]


def object_name(basename: str) -> str:
    return f"{basename}.o"


def shared_name(basename: str, os_kind: OSKind) -> str:
    return f"{basename}.{dlext(os_kind)}"


def executable_name(basename: str, os_kind: OSKind) -> str:
    return basename + (".exe" if os_kind is OSKind.WINDOWS else "")


# ---------------------------------------------------------------------------
# Link adjustments
# ---------------------------------------------------------------------------


def shared_link_flags(os_kind: OSKind, shared_file: str) -> list[str]:
    """Extra linker flags for the shared library stage.

    Apple gets a relocatable install name so the executable can find the
    library through its rpath; Windows exports every symbol.
    """
    if os_kind is OSKind.APPLE:
        return [f"-Wl,-install_name,@rpath/{shared_file}"]
    if os_kind is OSKind.WINDOWS:
        return ["-Wl,--export-all-symbols"]
    return []


def executable_link_flags(os_kind: OSKind) -> list[str]:
    """rpath pointing at the executable's own directory."""
    if os_kind is OSKind.APPLE:
        return ["-Wl,-rpath,@executable_path"]
    if os_kind.is_unix:
        return ["-Wl,-rpath,$ORIGIN"]
    return []


def aux_toolchain_flags(os_kind: OSKind, root: Path | None) -> list[str]:
    """Include path for an auxiliary MinGW tree (Windows only)."""
    if os_kind is not OSKind.WINDOWS or root is None:
        return []
    return [f"-I{root / 'include'}"]


def aux_toolchain_env(
    os_kind: OSKind, root: Path | None, base: dict[str, str] | None = None
) -> dict[str, str] | None:
    """Child environment with the auxiliary toolchain's DLLs on ``PATH``.

    Returns ``None`` (inherit the parent environment) when the hook does not
    apply.
    """
    if os_kind is not OSKind.WINDOWS or root is None:
        return None
    env = dict(os.environ if base is None else base)
    bindir = str(root / "bin")
    existing = env.get("PATH", "")
    env["PATH"] = f"{existing};{bindir}" if existing else bindir
    return env
