"""``promote-release verify CHANNEL`` — check a published release.

Verifies the latest manifest's Ed25519 and/or OpenPGP signature against the
given public keys and re-hashes every object it references.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from promote_release.cli.runtime import configure_logging, err_console, load_config
from promote_release.config import Product
from promote_release.core.errors import PromoteError
from promote_release.stages.verifier import verify_release
from promote_release.storage.object_store import open_store

console = Console()


def _result(valid: bool | None) -> str:
    if valid is None:
        return "[dim]not checked[/dim]"
    return "[green]valid[/green]" if valid else "[bold red]INVALID[/bold red]"


def verify_cmd(
    channel: str = typer.Argument(..., help="Channel whose latest release to check."),
    public_key: str = typer.Option(
        None,
        "--public-key",
        "-k",
        help="Hex-encoded Ed25519 public key the manifest .sig must match.",
    ),
    pgp_public_key: Path = typer.Option(
        None,
        "--pgp-public-key",
        exists=True,
        dir_okay=False,
        readable=True,
        help="Armored OpenPGP public key the manifest .asc must match.",
    ),
    product: Product = typer.Option(
        None, "--product", "-p", case_sensitive=False, help="rust or rustup."
    ),
) -> None:
    """Verify signatures and checksums of CHANNEL's published manifest."""
    config = load_config(channel=channel, product=product)
    configure_logging(config.log_level)

    store = open_store(config, config.upload_bucket)
    try:
        report = verify_release(
            config,
            store,
            public_key,
            pgp_public_key.read_text(encoding="utf-8") if pgp_public_key else None,
        )
    except PromoteError as exc:
        err_console.print(f"[bold red]{exc.category.value} error:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc

    table = Table(title=f"Verification of {report.manifest_key}")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_row("signature", _result(report.signature_valid))
    table.add_row("OpenPGP signature", _result(report.pgp_signature_valid))
    table.add_row("objects checked", str(report.checked))
    table.add_row("checksum mismatches", str(len(report.mismatches)))
    table.add_row("missing objects", str(len(report.missing)))
    console.print(table)

    for key in report.mismatches:
        err_console.print(f"[red]checksum mismatch:[/red] {key}")
    for key in report.missing:
        err_console.print(f"[red]missing:[/red] {key}")
    raise typer.Exit(code=0 if report.ok else 1)
