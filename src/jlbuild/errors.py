"""Fatal error kinds raised by the build pipeline.

Every error is a :class:`BuildError` and also derives from the closest
builtin so callers that only know about ``ValueError`` or ``OSError`` still
catch it.  None of them are retried.
"""

from __future__ import annotations

import shlex
from collections.abc import Sequence


class BuildError(Exception):
    """Base class for all fatal build errors."""


class InvalidOptionError(BuildError, ValueError):
    """An option value outside its declared set."""

    def __init__(self, field: str, value: object, reason: str = "") -> None:
        self.field = field
        self.value = value
        msg = f"Invalid value for option '{field}': {value!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class SourceNotFoundError(BuildError, FileNotFoundError):
    """The Julia program or the C driver program does not exist."""

    def __init__(self, path: object) -> None:
        self.path = path
        super().__init__(f"Cannot find file: {path}")


class ToolchainError(BuildError, RuntimeError):
    """The runtime, its config helper or the C compiler is unusable."""


class StageError(BuildError, RuntimeError):
    """A pipeline stage's child process failed."""

    def __init__(self, stage: str, command: Sequence[str], detail: str) -> None:
        self.stage = stage
        self.command = list(command)
        self.detail = detail
        super().__init__(f"{stage} stage failed: {detail}\n  {shlex.join(self.command)}")


class FilesystemError(BuildError, OSError):
    """Creating, deleting or copying files in the build directory failed."""
