"""Keep the application's working copy on the server at the branch tip."""

from __future__ import annotations

import shlex
import time
from dataclasses import dataclass

from ezdeploy.deploy.deploy_key import DeployKeyLifecycle, run_deploy_key_flow
from ezdeploy.deploy.operator import Operator
from ezdeploy.lib.errors import DeploymentError, RemoteCommandError
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import RetryPolicy, SleepFn
from ezdeploy.models.deployment import DeploymentConfig
from ezdeploy.remote.transport import Transport

logger = get_logger(__name__)

CLONE_POLICY = RetryPolicy(attempts=3, delay=5.0)


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a source sync."""

    path: str
    action: str
    commit: str | None = None


class SourceSync:
    """Updates the working copy in place, or replaces it with a fresh clone.

    Attributes:
        clone_attempts: Clone attempts made during the last ``run``
    """

    def __init__(
        self,
        transport: Transport,
        config: DeploymentConfig,
        lifecycle: DeployKeyLifecycle,
        operator: Operator,
        *,
        policy: RetryPolicy = CLONE_POLICY,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.transport = transport
        self.config = config
        self.lifecycle = lifecycle
        self.operator = operator
        self.policy = policy
        self.sleep = sleep
        self.clone_attempts = 0

    @property
    def path(self) -> str:
        return self.config.source_path

    def _git(self, args: str) -> str:
        return f"git -C {shlex.quote(self.path)} {args}"

    def is_valid_working_copy(self) -> bool:
        """True when the checkout has a ``.git`` directory and an origin."""
        quoted = shlex.quote(self.path)
        if not self.transport.run(f"test -d {quoted}/.git", check=False).ok:
            return False
        return self.transport.run(self._git("remote get-url origin"), check=False).ok

    def update(self) -> None:
        """Fetch, check out and pull the configured branch in place.

        Raises:
            RemoteCommandError: If any git step fails
        """
        branch = shlex.quote(self.config.repository.branch)
        if not self.lifecycle.test_auth():
            raise RemoteCommandError(
                f"ssh -T git@{self.config.git_host_alias}", 1, "", "auth test failed"
            )
        run = self.transport.run
        run(self._git(f"remote set-url origin {shlex.quote(self.config.clone_url)}"))
        run(self._git("fetch origin"), timeout=600)
        has_branch = run(
            self._git(f"show-ref --verify --quiet refs/heads/{branch}"), check=False
        ).ok
        if has_branch:
            run(self._git(f"checkout {branch}"))
        else:
            run(self._git(f"checkout -b {branch} origin/{branch}"))
        run(self._git(f"pull origin {branch}"), timeout=600)
        run(self._git("clean -fd"), check=False)

    def _remove(self) -> None:
        self.transport.run(f"rm -rf {shlex.quote(self.path)}", sudo=True)

    def _clone_once(self) -> bool:
        self._remove()
        result = self.transport.run(
            f"git clone --branch {shlex.quote(self.config.repository.branch)} "
            f"{shlex.quote(self.config.clone_url)} {shlex.quote(self.path)}",
            check=False,
            timeout=900,
        )
        if not result.ok:
            logger.warning(f"Clone failed: {result.output[-500:]}")
        return result.ok

    def clone(self) -> None:
        """Clone fresh, regenerating the deploy key after each failure.

        Raises:
            DeploymentError: If every clone attempt fails
        """
        for attempt in range(1, self.policy.attempts + 1):
            self.clone_attempts = attempt
            if self._clone_once():
                return
            if attempt >= self.policy.attempts:
                break
            logger.warning(
                f"Clone attempt {attempt}/{self.policy.attempts} failed; "
                "the deploy key may be invalid, regenerating"
            )
            self.lifecycle.regenerate()
            run_deploy_key_flow(self.lifecycle, self.operator)
        raise DeploymentError(
            "clone",
            f"could not clone {self.config.repository.url} "
            f"(branch {self.config.repository.branch}) after "
            f"{self.policy.attempts} attempts",
        )

    def head_commit(self) -> str | None:
        result = self.transport.run(self._git("rev-parse --short HEAD"), check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def run(self) -> SyncResult:
        """Bring the working copy to the tip of the configured branch."""
        directory = shlex.quote(self.config.application.directory)
        self.transport.run(f"mkdir -p {directory}", sudo=True)
        self.transport.run(f"chown $(id -un):$(id -gn) {directory}", sudo=True)
        self.clone_attempts = 0

        if self.is_valid_working_copy():
            try:
                self.update()
                logger.info(f"Updated working copy at {self.path}")
                return SyncResult(self.path, "updated", self.head_commit())
            except RemoteCommandError as e:
                logger.warning(f"In-place update failed, re-cloning: {e}")
        else:
            logger.info(f"No valid working copy at {self.path}; cloning")

        self.clone()
        logger.info(f"Cloned {self.config.repository.url} into {self.path}")
        return SyncResult(self.path, "cloned", self.head_commit())
