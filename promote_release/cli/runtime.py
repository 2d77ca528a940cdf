"""Process-level plumbing shared by CLI commands: config, logging, locking."""

from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from promote_release.config import PromoteConfig

err_console = Console(stderr=True)

LOCK_FILE = ".lock"


def load_config(**overrides: Any) -> PromoteConfig:
    """Build the run configuration; a validation failure exits with code 1.

    Options left as None on the command line fall back to the environment.
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return PromoteConfig(**values)
    except ValidationError as exc:
        err_console.print(f"[bold red]configuration error:[/bold red]\n{exc}")
        raise typer.Exit(code=1) from exc


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@contextmanager
def run_lock(work_dir: Path) -> Iterator[None]:
    """Hold an exclusive lock on ``{work_dir}/.lock`` for one channel writer."""
    work_dir.mkdir(parents=True, exist_ok=True)
    path = work_dir / LOCK_FILE
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            err_console.print(
                f"[bold red]another promote-release holds {path}[/bold red]"
            )
            raise typer.Exit(code=1) from None
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
