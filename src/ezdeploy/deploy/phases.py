"""Deployment phases run in order by the orchestrator.

Each phase reads the immutable configuration, talks to the server through
the shared transport, and stores what later phases need on the context.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ezdeploy.deploy.bootstrap import SystemBootstrap
from ezdeploy.deploy.builder import BuildResult, ImageBuilder
from ezdeploy.deploy.deploy_key import DeployKeyLifecycle, run_deploy_key_flow
from ezdeploy.deploy.operator import Operator
from ezdeploy.deploy.source_sync import SourceSync, SyncResult
from ezdeploy.deploy.strategies import ApplyOutcome, ApplyStatus, create_strategy
from ezdeploy.deploy.validation import DeploymentValidator
from ezdeploy.lib.retry import SleepFn
from ezdeploy.models.deployment import DeploymentConfig
from ezdeploy.models.desired_state import DesiredState
from ezdeploy.models.phase import PhaseResult, PhaseStatus, ValidationReport
from ezdeploy.remote.lock import RemoteLock
from ezdeploy.remote.transport import Transport


@dataclass
class DeploymentContext:
    """Mutable per-run state shared between phases."""

    config: DeploymentConfig
    transport: Transport
    operator: Operator
    sleep: SleepFn = time.sleep
    lock: RemoteLock | None = None
    lifecycle: DeployKeyLifecycle | None = None
    sync: SyncResult | None = None
    build: BuildResult | None = None
    desired: DesiredState | None = None
    apply: ApplyOutcome | None = None
    validation: ValidationReport | None = None
    results: list[PhaseResult] = field(default_factory=list)


class Phase(ABC):
    """One step of a deployment run.

    Attributes:
        name: Phase name used in progress output and errors
        advisory: Failures are reported as warnings instead of failing the run
        remediation: Suggested manual fix printed when the phase fails
    """

    name: str = "phase"
    advisory: bool = False
    remediation: str = ""

    @abstractmethod
    def run(self, ctx: DeploymentContext) -> PhaseResult:
        """Execute the phase."""

    def result(self, status: PhaseStatus, message: str, **kwargs) -> PhaseResult:
        return PhaseResult(name=self.name, status=status, message=message, **kwargs)


class ConnectivityPhase(Phase):
    name = "connectivity"
    remediation = (
        "Check the server address, SSH port and credentials, e.g. "
        "ssh -p <port> <user>@<ip>"
    )

    def run(self, ctx: DeploymentContext) -> PhaseResult:
        ctx.transport.connect()
        info = ctx.transport.run("uname -srm", check=False).stdout.strip()
        ctx.lock = RemoteLock(ctx.transport, ctx.config.lock_path)
        ctx.lock.acquire()
        return self.result(
            PhaseStatus.SUCCEEDED,
            f"Connected to {ctx.config.server.ip}",
            details={"system": info},
        )


class DeployKeyPhase(Phase):
    name = "deploy_key"
    remediation = (
        "Register the printed public key as a deploy key on the repository, "
        "then run ezdeploy again"
    )

    def run(self, ctx: DeploymentContext) -> PhaseResult:
        ctx.lifecycle = DeployKeyLifecycle(ctx.transport, ctx.config, sleep=ctx.sleep)
        key = run_deploy_key_flow(ctx.lifecycle, ctx.operator)
        return self.result(
            PhaseStatus.SUCCEEDED,
            f"Deploy key verified for {key.host_alias}",
            details={"key_path": key.private_path},
        )


class BootstrapPhase(Phase):
    name = "bootstrap"
    remediation = (
        "Inspect the failing step on the server (apt, snap or systemctl logs) "
        "and re-run; completed steps are skipped"
    )

    def run(self, ctx: DeploymentContext) -> PhaseResult:
        report = SystemBootstrap(ctx.transport, ctx.config, sleep=ctx.sleep).run()
        if report.installed:
            message = f"Installed: {', '.join(report.installed)}"
        else:
            message = "Host already provisioned"
        return self.result(
            PhaseStatus.SUCCEEDED,
            message,
            details={"installed": report.installed, "satisfied": report.satisfied},
        )


class SourceSyncPhase(Phase):
    name = "source_sync"
    remediation = (
        "Check the repository URL and branch, and that the deploy key has "
        "access to the repository"
    )

    def run(self, ctx: DeploymentContext) -> PhaseResult:
        lifecycle = ctx.lifecycle or DeployKeyLifecycle(
            ctx.transport, ctx.config, sleep=ctx.sleep
        )
        ctx.lifecycle = lifecycle
        sync = SourceSync(
            ctx.transport, ctx.config, lifecycle, ctx.operator, sleep=ctx.sleep
        )
        ctx.sync = sync.run()
        return self.result(
            PhaseStatus.SUCCEEDED,
            f"Working copy {ctx.sync.action} at {ctx.sync.path}",
            details={"commit": ctx.sync.commit},
        )


class ImageBuildPhase(Phase):
    name = "image_build"
    remediation = "Build the image on the server by hand to see the full Docker output"

    def run(self, ctx: DeploymentContext) -> PhaseResult:
        commit = ctx.sync.commit if ctx.sync else None
        ctx.build = ImageBuilder(ctx.transport, ctx.config).build(source_sha=commit)
        return self.result(
            PhaseStatus.SUCCEEDED,
            f"Built and imported {ctx.build.image_ref}",
            details={"image_id": ctx.build.image_id},
        )


class InfraApplyPhase(Phase):
    name = "infra_apply"
    remediation = (
        "Inspect the objects with kubectl get deploy,svc,ingress and the IaC "
        "directory under /deployments/<name>/iac"
    )

    def run(self, ctx: DeploymentContext) -> PhaseResult:
        ctx.desired = DesiredState.from_config(
            ctx.config,
            image_id=ctx.build.image_id if ctx.build else None,
            revision=ctx.sync.commit if ctx.sync else None,
        )
        strategy = create_strategy(ctx.transport, ctx.config, sleep=ctx.sleep)
        ctx.apply = strategy.apply(ctx.desired)
        status = (
            PhaseStatus.DEGRADED
            if ctx.apply.status == ApplyStatus.DEGRADED
            else PhaseStatus.SUCCEEDED
        )
        return self.result(
            status,
            ctx.apply.message,
            warnings=list(ctx.apply.warnings),
            details={"strategy": strategy.name, "attempts": ctx.apply.attempts},
        )


class ValidationPhase(Phase):
    name = "validation"
    remediation = (
        "Inspect the pods with kubectl describe pods -l app=<app> and "
        "kubectl logs"
    )

    def run(self, ctx: DeploymentContext) -> PhaseResult:
        ctx.validation = DeploymentValidator(
            ctx.transport, ctx.config, sleep=ctx.sleep
        ).validate()
        workload = ctx.validation.workload
        status = PhaseStatus.SUCCEEDED
        if ctx.validation.warnings:
            status = PhaseStatus.WARNED
        return self.result(
            status,
            f"{workload.ready_replicas}/{workload.desired_replicas} replicas ready",
            warnings=list(ctx.validation.warnings),
            details={
                "certificate_ready": ctx.validation.certificate_ready,
                "https_reachable": ctx.validation.https_reachable,
            },
        )


def default_phases() -> list[Phase]:
    """The deployment pipeline in execution order."""
    return [
        ConnectivityPhase(),
        DeployKeyPhase(),
        BootstrapPhase(),
        SourceSyncPhase(),
        ImageBuildPhase(),
        InfraApplyPhase(),
        ValidationPhase(),
    ]
