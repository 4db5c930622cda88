"""Terminal progress output for deployment runs.

Phase narration is written with click so it stays separate from the log
stream, which goes to stderr through ``ezdeploy.lib.logging_config``.
"""

from __future__ import annotations

import click

from ezdeploy.models.phase import DeploymentSummary, PhaseResult, PhaseStatus

STATUS_STYLE: dict[PhaseStatus, tuple[str, str]] = {
    PhaseStatus.SUCCEEDED: ("ok", "green"),
    PhaseStatus.DEGRADED: ("degraded", "yellow"),
    PhaseStatus.WARNED: ("warning", "yellow"),
}


class ClickReporter:
    """Prints one line per phase and the final deployment summary."""

    def phase_started(self, phase: str, index: int, total: int) -> None:
        click.secho(f"[{index}/{total}] {phase}...", bold=True)

    def phase_finished(self, result: PhaseResult) -> None:
        label, color = STATUS_STYLE[result.status]
        click.echo("  ", nl=False)
        click.secho(label, fg=color, nl=False)
        click.echo(f"  {result.message}")
        for warning in result.warnings:
            click.secho(f"  ! {warning}", fg="yellow")

    def summary(self, summary: DeploymentSummary) -> None:
        """Print the final report of a successful run."""
        click.echo()
        if any(p.status == PhaseStatus.DEGRADED for p in summary.phases):
            click.secho(
                "Deployment completed with a degraded apply", fg="yellow", bold=True
            )
        else:
            click.secho("Deployment Successful!", fg="green", bold=True)
        click.echo(f"  Project:   {summary.project}")
        click.echo(f"  Source:    {summary.source_path}")
        click.echo(f"  Image:     {summary.image}")
        click.echo(f"  Strategy:  {summary.strategy}")
        for url in summary.urls:
            click.echo(f"  URL:       {url}")
        if summary.warnings:
            click.echo()
            click.secho("Warnings:", fg="yellow", bold=True)
            for warning in summary.warnings:
                click.echo(f"  - {warning}")
        click.echo()
