"""Phase outcome models shared by the orchestrator, phases and reporter."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PhaseStatus(str, Enum):
    """Outcome of a single deployment phase."""

    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    WARNED = "warned"


class PhaseResult(BaseModel):
    """Result of running one phase.

    Attributes:
        name: Phase name (connectivity, deploy_key, bootstrap, ...)
        status: Outcome status
        message: One-line human-readable summary
        warnings: Advisory problems that did not fail the phase
        details: Phase-specific data for the final summary
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    status: PhaseStatus
    message: str = ""
    warnings: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class PodStatus(BaseModel):
    """Observed state of one pod."""

    model_config = ConfigDict(extra="forbid")

    name: str
    phase: str = "Unknown"
    restarts: int = 0
    oom_killed: bool = False


class WorkloadStatus(BaseModel):
    """Snapshot of the live workload, re-queried on every poll."""

    model_config = ConfigDict(extra="forbid")

    desired_replicas: int = 0
    ready_replicas: int = 0
    deployment_exists: bool = False
    service_exists: bool = False
    ingress_exists: bool = False
    ingress_tls_secret: str | None = None
    pods: list[PodStatus] = Field(default_factory=list)

    @property
    def replicas_ready(self) -> bool:
        return self.desired_replicas > 0 and (
            self.ready_replicas == self.desired_replicas
        )

    def unmet_checks(self) -> list[str]:
        """Describe every hard readiness check that is not satisfied."""
        unmet: list[str] = []
        if not self.deployment_exists:
            unmet.append("deployment not found")
        elif not self.replicas_ready:
            unmet.append(
                f"ready replicas {self.ready_replicas}/{self.desired_replicas}"
            )
        if not self.service_exists:
            unmet.append("service not found")
        if not self.ingress_exists:
            unmet.append("ingress not found")
        return unmet


class ValidationReport(BaseModel):
    """Outcome of post-deploy validation."""

    model_config = ConfigDict(extra="forbid")

    workload: WorkloadStatus
    certificate_ready: bool | None = None
    https_reachable: bool | None = None
    warnings: list[str] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.workload.unmet_checks()


class DeploymentSummary(BaseModel):
    """Final summary printed after a successful run."""

    model_config = ConfigDict(extra="forbid")

    project: str
    source_path: str
    image: str
    strategy: str
    urls: list[str] = Field(default_factory=list)
    phases: list[PhaseResult] = Field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        collected: list[str] = []
        for phase in self.phases:
            collected.extend(f"{phase.name}: {w}" for w in phase.warnings)
        return collected
