"""Module entrypoint for ``python -m buildline``."""

from __future__ import annotations

from buildline.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
