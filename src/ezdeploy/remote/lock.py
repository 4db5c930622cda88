"""Per-project remote lock preventing concurrent runs against one project."""

from __future__ import annotations

import getpass
import os
import shlex
import socket
from datetime import datetime, timezone

from ezdeploy.lib.errors import ResourceConflictError
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.remote.transport import Transport

logger = get_logger(__name__)


def lock_owner() -> str:
    """Describe the local process taking the lock."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()} pid={os.getpid()}"


class RemoteLock:
    """Directory lock at ``<project_root>/.lock`` created with atomic ``mkdir``.

    Usage:
        with RemoteLock(transport, config.lock_path):
            ...
    """

    def __init__(self, transport: Transport, path: str, owner: str | None = None):
        self.transport = transport
        self.path = path
        self.owner = owner or lock_owner()
        self.held = False

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            ResourceConflictError: If another run holds the lock
        """
        quoted = shlex.quote(self.path)
        parent = shlex.quote(self.path.rsplit("/", 1)[0] or "/")
        self.transport.run(f"mkdir -p {parent}", sudo=True)
        result = self.transport.run(f"mkdir {quoted}", check=False, sudo=True)
        if not result.ok:
            info = self.transport.run(
                f"cat {quoted}/owner 2>/dev/null", check=False, sudo=True
            )
            holder = info.stdout.strip() or "unknown owner"
            raise ResourceConflictError(
                self.path,
                f"another deployment is in progress ({holder}). "
                f"If no run is active, remove it with: rm -rf {self.path}",
            )
        stamp = datetime.now(timezone.utc).isoformat()
        self.transport.run(
            f"echo {shlex.quote(f'{self.owner} at {stamp}')} > {quoted}/owner",
            sudo=True,
        )
        self.held = True
        logger.debug(f"Acquired remote lock {self.path}")

    def release(self) -> None:
        """Remove the lock if this instance holds it."""
        if not self.held:
            return
        self.transport.run(f"rm -rf {shlex.quote(self.path)}", check=False, sudo=True)
        self.held = False
        logger.debug(f"Released remote lock {self.path}")

    def __enter__(self) -> RemoteLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
