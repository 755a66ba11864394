"""jlbuild: native build orchestrator for Julia programs.

Drives the Julia runtime's own embedding toolchain and a system C compiler to
produce an object file, a shared library and a standalone executable, and
keeps the runtime's shared libraries in sync next to the result.
"""

__version__ = "0.1.0"
