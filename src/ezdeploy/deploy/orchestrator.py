"""Deployment orchestrator: runs the phases in order and owns failure handling."""

from __future__ import annotations

import time
from typing import Protocol

from ezdeploy.deploy.operator import ClickOperator, Operator
from ezdeploy.deploy.phases import DeploymentContext, Phase, default_phases
from ezdeploy.lib.errors import (
    EzDeployError,
    OperatorAbortError,
    PhaseFailedError,
    RemoteCommandError,
    ValidationError,
)
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import SleepFn
from ezdeploy.models.deployment import DeploymentConfig
from ezdeploy.models.phase import DeploymentSummary, PhaseResult, PhaseStatus
from ezdeploy.remote.transport import SSHTransport, Transport

logger = get_logger(__name__)

OUTPUT_TAIL = 40


class Reporter(Protocol):
    """Receives progress events from the orchestrator."""

    def phase_started(self, phase: str, index: int, total: int) -> None: ...

    def phase_finished(self, result: PhaseResult) -> None: ...


class NullReporter:
    """Reporter that discards every event."""

    def phase_started(self, phase: str, index: int, total: int) -> None:
        pass

    def phase_finished(self, result: PhaseResult) -> None:
        pass


def captured_output(error: Exception) -> str:
    """Last lines of remote output carried by ``error``, if any."""
    if isinstance(error, RemoteCommandError):
        text = "\n".join(part for part in (error.stdout, error.stderr) if part)
    elif isinstance(error, ValidationError):
        text = error.details
    else:
        return ""
    lines = text.strip().splitlines()
    return "\n".join(lines[-OUTPUT_TAIL:])


class DeploymentOrchestrator:
    """Runs the deployment pipeline against one server.

    Phases run strictly in order. The first fatal failure stops the run and
    is raised as ``PhaseFailedError`` naming the phase; an operator abort is
    raised unchanged. The remote lock is released and the connection closed
    whatever the outcome.

    Example:
        >>> orchestrator = DeploymentOrchestrator(config)
        >>> summary = orchestrator.run()
        >>> summary.urls
        ['https://app.example.com']
    """

    def __init__(
        self,
        config: DeploymentConfig,
        *,
        transport: Transport | None = None,
        operator: Operator | None = None,
        reporter: Reporter | None = None,
        phases: list[Phase] | None = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.config = config
        self.transport = transport or SSHTransport(
            config.server, mask=config.secrets(), sleep=sleep
        )
        self.operator = operator or ClickOperator()
        self.reporter = reporter or NullReporter()
        self.phases = phases if phases is not None else default_phases()
        self.sleep = sleep

    def summary(self, ctx: DeploymentContext) -> DeploymentSummary:
        scheme = "https" if self.config.tls_enabled else "http"
        return DeploymentSummary(
            project=self.config.project_name,
            source_path=self.config.source_path,
            image=self.config.image_ref,
            strategy=self.config.kubernetes.strategy.value,
            urls=[f"{scheme}://{host}" for host in self.config.ingress.hosts],
            phases=list(ctx.results),
        )

    def _run_phase(self, phase: Phase, ctx: DeploymentContext) -> PhaseResult:
        try:
            return phase.run(ctx)
        except OperatorAbortError:
            raise
        except EzDeployError as e:
            if phase.advisory:
                logger.warning(f"Advisory phase {phase.name} failed: {e}")
                return PhaseResult(
                    name=phase.name,
                    status=PhaseStatus.WARNED,
                    message=str(e),
                    warnings=[str(e)],
                )
            logger.error(f"Phase {phase.name} failed: {e}")
            raise PhaseFailedError(
                phase.name,
                e,
                output=captured_output(e),
                remediation=phase.remediation,
            ) from e
        except Exception as e:
            logger.exception(f"Phase {phase.name} failed unexpectedly")
            raise PhaseFailedError(
                phase.name, e, remediation=phase.remediation
            ) from e

    def run(self) -> DeploymentSummary:
        """Run every phase.

        Returns:
            DeploymentSummary for the final report

        Raises:
            PhaseFailedError: If a phase fails fatally
            OperatorAbortError: If the operator aborts at a prompt
        """
        ctx = DeploymentContext(
            config=self.config,
            transport=self.transport,
            operator=self.operator,
            sleep=self.sleep,
        )
        total = len(self.phases)
        try:
            for index, phase in enumerate(self.phases, start=1):
                self.reporter.phase_started(phase.name, index, total)
                result = self._run_phase(phase, ctx)
                ctx.results.append(result)
                self.reporter.phase_finished(result)
        finally:
            self._cleanup(ctx)
        return self.summary(ctx)

    def _cleanup(self, ctx: DeploymentContext) -> None:
        if ctx.lock is not None:
            try:
                ctx.lock.release()
            except EzDeployError as e:
                logger.warning(
                    f"Could not release remote lock {ctx.lock.path}: {e}. "
                    f"Remove it with: rm -rf {ctx.lock.path}"
                )
        self.transport.close()
