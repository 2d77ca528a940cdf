"""``promote-release release CHANNEL`` — run the promotion pipeline.

Exit codes: 0 when the release was published or there was nothing to do,
1 on failure, 130 when interrupted.
"""

from __future__ import annotations

import typer
from rich.console import Console

from promote_release.cli.runtime import configure_logging, err_console, load_config, run_lock
from promote_release.config import Product
from promote_release.core.orchestrator import Orchestrator
from promote_release.models.stages import PipelineState
from promote_release.monitor.renderer import OutcomeRenderer

console = Console()

EXIT_INTERRUPTED = 130


def release_cmd(
    channel: str = typer.Argument(
        ...,
        help="Channel to release (nightly, beta, stable, or a named channel).",
    ),
    commit: str = typer.Option(
        None,
        "--commit",
        "-c",
        help="Release this 40-hex commit instead of the branch tip.",
    ),
    product: Product = typer.Option(
        None,
        "--product",
        "-p",
        case_sensitive=False,
        help="What to release: rust (toolchain) or rustup.",
    ),
    bypass_startup_checks: bool = typer.Option(
        None,
        "--bypass-startup-checks/--no-bypass-startup-checks",
        help="Release even if the marker says the commit is already live.",
    ),
    skip_invalidations: bool = typer.Option(
        None,
        "--skip-invalidations/--no-skip-invalidations",
        help="Do not purge CDN caches after publishing.",
    ),
) -> None:
    """Promote a CI build of CHANNEL to the public distribution store.

    Everything not given on the command line comes from PROMOTE_RELEASE_*
    environment variables or a .env file.
    """
    config = load_config(
        channel=channel,
        override_commit=commit,
        product=product,
        bypass_startup_checks=bypass_startup_checks,
        skip_invalidations=skip_invalidations,
    )
    configure_logging(config.log_level)

    with run_lock(config.work_dir):
        orchestrator = Orchestrator(config)
        try:
            outcome = orchestrator.run()
        except KeyboardInterrupt:
            err_console.print("[bold red]interrupted; release marker untouched[/bold red]")
            raise typer.Exit(code=EXIT_INTERRUPTED) from None

    OutcomeRenderer(console=console).print_outcome(outcome)
    if outcome.state == PipelineState.FAILED:
        category = outcome.error_category.value if outcome.error_category else "unknown"
        err_console.print(f"[bold red]{category} error:[/bold red] {outcome.reason}")
    raise typer.Exit(code=outcome.exit_code)
