"""The ``ezdeploy CONFIG`` command.

Loads the configuration file, runs the deployment pipeline against the
configured server and prints a summary. Failures are mapped to exit codes
by ``handle_deployment_errors``.
"""

from __future__ import annotations

import sys
from collections.abc import Generator
from contextlib import contextmanager

import click

from ezdeploy import __version__
from ezdeploy.lib.errors import (
    ConfigError,
    EzDeployError,
    OperatorAbortError,
    PhaseFailedError,
)
from ezdeploy.lib.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_CONFIG = 2
EXIT_PHASE_FAILED = 3
EXIT_ABORTED = 4
EXIT_INTERRUPTED = 130


@contextmanager
def handle_deployment_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in the deploy command.

    Exit codes:
        2: Configuration error
        3: A deployment phase failed
        4: Operator aborted at a prompt
        130: Interrupted
    """
    try:
        yield
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(EXIT_CONFIG)
    except OperatorAbortError as e:
        logger.warning(f"Aborted: {e}")
        click.secho(f"Aborted: {e.message}", fg="yellow", err=True)
        sys.exit(EXIT_ABORTED)
    except PhaseFailedError as e:
        logger.error(f"Phase failure: {e}")
        click.secho(f"Error: phase '{e.phase}' failed", fg="red", err=True)
        click.echo(f"  {e.cause}", err=True)
        if e.output:
            click.echo(err=True)
            click.secho("Last remote output:", bold=True, err=True)
            for line in e.output.splitlines():
                click.echo(f"  {line}", err=True)
        if e.remediation:
            click.echo(err=True)
            click.echo(f"Suggested fix: {e.remediation}", err=True)
        sys.exit(EXIT_PHASE_FAILED)
    except (KeyboardInterrupt, click.Abort):
        click.secho("\nInterrupted", fg="yellow", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except EzDeployError as e:
        logger.error(f"Deployment error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_PHASE_FAILED)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_PHASE_FAILED)


@click.command(name="ezdeploy")
@click.argument("config", type=click.Path(exists=True, dir_okay=False))
@click.version_option(version=__version__, prog_name="ezdeploy")
def main(config: str) -> None:
    """Deploy the application described by CONFIG to its server.

    CONFIG is a YAML file or a shell-style KEY="value" file.

    Example:

        ezdeploy deploy.yaml
    """
    setup_logging()

    with handle_deployment_errors():
        from ezdeploy.cli.reporter import ClickReporter
        from ezdeploy.config.loader import ConfigLoader
        from ezdeploy.deploy.orchestrator import DeploymentOrchestrator

        click.echo(f"Loading configuration from {config}...")
        deployment = ConfigLoader().load(config)

        click.echo()
        click.secho("Deploy Configuration:", bold=True)
        click.echo(f"  Project:   {deployment.project_name}")
        click.echo(f"  Server:    {deployment.server.user}@{deployment.server.ip}")
        click.echo(f"  Repo:      {deployment.repository.url}")
        click.echo(f"  Branch:    {deployment.repository.branch}")
        click.echo(f"  Strategy:  {deployment.kubernetes.strategy.value}")
        click.echo(f"  Hosts:     {', '.join(deployment.ingress.hosts)}")
        click.echo()

        reporter = ClickReporter()
        summary = DeploymentOrchestrator(deployment, reporter=reporter).run()
        reporter.summary(summary)


if __name__ == "__main__":
    main()
