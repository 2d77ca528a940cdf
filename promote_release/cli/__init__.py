"""promote-release CLI — Typer-based command-line interface.

Provides the ``promote-release`` command with ``release`` and ``verify``
subcommands. All output uses Rich for formatted terminal display.
"""
