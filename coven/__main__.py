"""Module entrypoint for ``python -m coven``.

A thin wrapper around :func:`coven.cli.main`; the CLI return code becomes the process exit
status. Equivalent to the ``coven`` console script.

Exit status
-----------
- ``0``: the command finished.
- ``1``: a ``CovenError`` (git failure, malformed agent or transition, corrupt state); a
  one-line ``[coven] error: ...`` diagnostic is printed to stderr.
- ``2``: argument parsing failed (``argparse``).
- ``130``: the worker was interrupted (Ctrl-C) and shut down.

Other exceptions are not caught and surface with a stack trace.
"""

from __future__ import annotations

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
