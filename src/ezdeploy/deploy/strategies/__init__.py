"""Infrastructure apply strategies."""

from __future__ import annotations

import time

from ezdeploy.deploy.strategies.base import (
    ApplyOutcome,
    ApplyStatus,
    BaseApplyStrategy,
)
from ezdeploy.lib.errors import DeploymentError
from ezdeploy.lib.retry import SleepFn
from ezdeploy.models.deployment import ApplyStrategyType, DeploymentConfig
from ezdeploy.remote.transport import Transport


def create_strategy(
    transport: Transport,
    config: DeploymentConfig,
    *,
    sleep: SleepFn = time.sleep,
) -> BaseApplyStrategy:
    """Create the apply strategy selected by the configuration."""
    if config.kubernetes.strategy == ApplyStrategyType.PULUMI:
        from ezdeploy.deploy.strategies.pulumi import PulumiStrategy

        return PulumiStrategy(transport, config, sleep=sleep)

    if config.kubernetes.strategy == ApplyStrategyType.HELM:
        from ezdeploy.deploy.strategies.helm import HelmStrategy

        return HelmStrategy(transport, config, sleep=sleep)

    raise DeploymentError(
        operation="apply",
        message=f"Unsupported apply strategy: {config.kubernetes.strategy}",
    )


__all__ = [
    "ApplyOutcome",
    "ApplyStatus",
    "BaseApplyStrategy",
    "create_strategy",
]
