"""Main Typer application — registers all CLI commands.

Entry point: ``promote-release`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from promote_release.cli.commands.release import release_cmd
from promote_release.cli.commands.verify import verify_cmd

app = typer.Typer(
    name="promote-release",
    help="Promote CI toolchain builds to the public distribution store.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

app.command(name="release", help="Run the promotion pipeline for a channel.")(release_cmd)
app.command(name="verify", help="Verify a channel's published manifest.")(verify_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
