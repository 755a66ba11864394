"""Verbosity-aware console output for build progress."""

from __future__ import annotations

import shlex
from collections.abc import Sequence

from rich.console import Console
from rich.markup import escape


class BuildLog:
    """Small wrapper around a rich console honouring ``--verbose``/``--quiet``.

    ``verbose`` wins when both are set.
    """

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        console: Console | None = None,
    ) -> None:
        self.verbose = verbose
        self.quiet = quiet and not verbose
        self.console = console if console is not None else Console(stderr=True, highlight=False)

    def info(self, msg: str) -> None:
        if not self.quiet:
            self.console.print(msg)

    def detail(self, msg: str) -> None:
        if self.verbose:
            self.console.print(msg)

    def command(self, label: str, cmd: Sequence[str]) -> None:
        """Echo a composed command line before it runs (verbose only)."""
        if self.verbose:
            self.console.print(f"{escape(label)}:\n  [dim]{escape(shlex.join(cmd))}[/dim]")
