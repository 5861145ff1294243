"""irbench package entrypoint."""

from irbench.cli.app import main as _cli_main
from irbench.version import __version__

__all__ = ["__version__", "main"]


def main() -> None:
    """Run the irbench CLI."""
    raise SystemExit(_cli_main())
