"""apt-get wrapper that waits for the dpkg lock before every call."""

from __future__ import annotations

import shlex
import time

from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import RetryPolicy, SleepFn, poll_until
from ezdeploy.remote.transport import CommandResult, Transport

logger = get_logger(__name__)

DPKG_LOCKS = ("/var/lib/dpkg/lock-frontend", "/var/lib/dpkg/lock")

# 30 polls x 10 s = 300 s before the lock is forced
LOCK_POLICY = RetryPolicy(attempts=31, delay=10.0)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class PackageManager:
    """Runs apt-get on the remote host once the dpkg lock is free."""

    def __init__(
        self,
        transport: Transport,
        *,
        policy: RetryPolicy = LOCK_POLICY,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.transport = transport
        self.policy = policy
        self.sleep = sleep
        self._updated = False

    def is_locked(self) -> bool:
        result = self.transport.run(
            f"fuser {DPKG_LOCKS[0]} >/dev/null 2>&1", check=False, sudo=True
        )
        return result.ok

    def wait_for_package_manager(self) -> bool:
        """Block until the dpkg lock is released, forcing it after the timeout.

        Returns:
            True if the lock was released normally, False if it was forced
        """
        outcome = poll_until(
            self.is_locked,
            lambda locked: not locked,
            self.policy,
            on_wait=lambda attempt, _: logger.info(
                f"Package manager locked, waiting "
                f"({attempt * self.policy.delay:.0f}s/{self.policy.window:.0f}s)"
            ),
            sleep=self.sleep,
        )
        if outcome.satisfied:
            return True

        logger.warning(
            f"Package manager still locked after {self.policy.window:.0f}s; "
            "forcing unlock"
        )
        locks = " ".join(DPKG_LOCKS)
        self.transport.run_script(
            "pkill -f unattended-upgrade || true\n"
            f"rm -f {locks}\n"
            "dpkg --configure -a\n",
            sudo=True,
            label="force-dpkg-unlock",
        )
        return False

    def update(self) -> CommandResult:
        self.wait_for_package_manager()
        result = self.transport.run(
            "apt-get update -qq", env=APT_ENV, sudo=True, timeout=600
        )
        self._updated = True
        return result

    def install(self, *packages: str) -> CommandResult:
        """Install ``packages`` non-interactively."""
        if not self._updated:
            self.update()
        self.wait_for_package_manager()
        names = " ".join(shlex.quote(p) for p in packages)
        logger.info(f"Installing packages: {', '.join(packages)}")
        return self.transport.run(
            f"apt-get install -y -qq {names}", env=APT_ENV, sudo=True, timeout=1800
        )

    def missing(self, *packages: str) -> list[str]:
        """Return the subset of ``packages`` that is not installed."""
        absent = []
        for package in packages:
            result = self.transport.run(
                f"dpkg -s {shlex.quote(package)} >/dev/null 2>&1", check=False
            )
            if not result.ok:
                absent.append(package)
        return absent
