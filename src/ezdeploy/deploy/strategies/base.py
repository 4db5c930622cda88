"""Base interface for infrastructure apply strategies."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from ezdeploy.deploy.kubectl import Kubectl
from ezdeploy.lib.retry import SleepFn
from ezdeploy.models.deployment import DeploymentConfig
from ezdeploy.models.desired_state import DesiredState
from ezdeploy.remote.transport import Transport


class ApplyStatus(str, Enum):
    """Outcome of an apply."""

    APPLIED = "applied"
    DEGRADED = "degraded"


@dataclass
class ApplyOutcome:
    """Result of ``BaseApplyStrategy.apply``.

    Attributes:
        status: APPLIED, or DEGRADED when the tool failed but the cluster
            already runs the desired workload
        message: Human-readable summary
        attempts: Apply attempts made
        warnings: Problems the operator should follow up on
    """

    status: ApplyStatus
    message: str
    attempts: int = 1
    warnings: list[str] = field(default_factory=list)


class BaseApplyStrategy(ABC):
    """Abstract base class for apply strategies."""

    name: str = "base"

    def __init__(
        self,
        transport: Transport,
        config: DeploymentConfig,
        *,
        kubectl: Kubectl | None = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.transport = transport
        self.config = config
        self.kubectl = kubectl or Kubectl(transport, config.kubectl)
        self.sleep = sleep

    @abstractmethod
    def render(self, desired: DesiredState) -> dict[str, str]:
        """Render the files uploaded to the server.

        Args:
            desired: Desired cluster state

        Returns:
            Relative path -> file content. Identical input yields identical
            output.
        """

    @abstractmethod
    def apply(self, desired: DesiredState) -> ApplyOutcome:
        """Converge the cluster on ``desired``.

        Args:
            desired: Desired cluster state

        Returns:
            ApplyOutcome describing how the cluster was converged

        Raises:
            ResourceConflictError: If the objects cannot be converged
            RemoteCommandError: If the tool fails outside the recovery path
        """
