"""SSH transport for running commands and uploading files on the target host.

Every phase talks to the server through the ``Transport`` protocol defined
here. ``SSHTransport`` implements it on top of paramiko; tests supply a
scripted fake.
"""

from __future__ import annotations

import posixpath
import shlex
import socket
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import paramiko

from ezdeploy.lib.errors import (
    ConnectivityError,
    DeploymentError,
    RemoteCommandError,
)
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import RetryPolicy, SleepFn, retry_call
from ezdeploy.models.deployment import ServerConfig, SSHAuthMethod

logger = get_logger(__name__)

CONNECT_POLICY = RetryPolicy(attempts=3, delay=5.0)

MASK = "***"


@dataclass(frozen=True)
class CommandResult:
    """Captured result of a remote command."""

    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stripped."""
        parts = [self.stdout.strip(), self.stderr.strip()]
        return "\n".join(part for part in parts if part)


class Transport(Protocol):
    """Remote execution interface used by every phase."""

    host: str

    def connect(self) -> None: ...

    def run(
        self,
        command: str,
        *,
        check: bool = True,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        sudo: bool = False,
    ) -> CommandResult: ...

    def run_script(
        self,
        body: str,
        *,
        check: bool = True,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        sudo: bool = False,
        label: str = "script",
    ) -> CommandResult: ...

    def upload_text(
        self, remote_path: str, content: str, mode: int = 0o644
    ) -> None: ...

    def upload_tree(self, remote_dir: str, files: Mapping[str, str]) -> None: ...

    def close(self) -> None: ...


def mask_secrets(text: str, secrets: list[str]) -> str:
    """Replace every secret value in ``text`` with ``***``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return text


def read_streams(
    stdout: paramiko.ChannelFile, stderr: paramiko.ChannelFile
) -> tuple[bytes, bytes]:
    """Read stdout and stderr to EOF at the same time.

    paramiko only reopens the channel window as buffered data is consumed, so
    a command that writes a lot to the stream nobody is reading stalls.
    """
    with ThreadPoolExecutor(max_workers=1) as pool:
        pending_err = pool.submit(stderr.read)
        out = stdout.read()
        err = pending_err.result()
    return out, err


def env_prefix(env: Mapping[str, str] | None) -> str:
    """Render ``env`` as ``export K=V;`` statements for a remote shell."""
    if not env:
        return ""
    return "".join(
        f"export {key}={shlex.quote(str(value))}; " for key, value in env.items()
    )


class SSHTransport:
    """paramiko-backed ``Transport`` for one server.

    Usage:
        with SSHTransport(config.server, mask=config.secrets()) as transport:
            transport.run("uname -a")
    """

    def __init__(
        self,
        server: ServerConfig,
        *,
        mask: list[str] | None = None,
        policy: RetryPolicy = CONNECT_POLICY,
        sleep: SleepFn = time.sleep,
    ) -> None:
        """Create a transport; no connection is made until ``connect``.

        Args:
            server: Target server settings
            mask: Secret values to hide in logged command lines
            policy: Connect retry policy
            sleep: Sleep function used between connect attempts
        """
        self.server = server
        self.host = server.ip
        self._mask = list(mask or [])
        self._policy = policy
        self._sleep = sleep
        self._client: paramiko.SSHClient | None = None

    def __enter__(self) -> SSHTransport:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _open_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh = self.server.ssh
        kwargs: dict[str, object] = {
            "hostname": self.server.ip,
            "port": self.server.port,
            "username": self.server.user,
            "timeout": self.server.connect_timeout,
            "banner_timeout": self.server.connect_timeout,
            "auth_timeout": self.server.connect_timeout,
        }
        if ssh.method == SSHAuthMethod.PASSWORD:
            kwargs.update(
                password=ssh.password, look_for_keys=False, allow_agent=False
            )
        else:
            kwargs["key_filename"] = str(Path(ssh.key_path or "").expanduser())
        try:
            client.connect(**kwargs)  # type: ignore[arg-type]
        except Exception:
            client.close()
            raise
        return client

    def connect(self) -> None:
        """Open the SSH connection, retrying per the connect policy.

        Raises:
            ConnectivityError: If every attempt fails
        """
        if self.is_connected:
            return
        logger.info(
            f"Connecting to {self.server.user}@{self.server.ip}:{self.server.port}"
        )
        try:
            self._client = retry_call(
                self._open_client,
                self._policy,
                retry_on=(
                    paramiko.SSHException,
                    socket.error,
                    socket.timeout,
                    EOFError,
                ),
                sleep=self._sleep,
            )
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectivityError(self.server.ip, self._policy.attempts, e) from e

    def close(self) -> None:
        """Close the connection if open."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def _require_client(self) -> paramiko.SSHClient:
        if not self.is_connected:
            self.connect()
        assert self._client is not None
        return self._client

    def _wrap(self, command: str, sudo: bool) -> str:
        if sudo and self.server.user != "root":
            return f"sudo -n bash -c {shlex.quote(command)}"
        return command

    def _exec(
        self,
        command: str,
        display: str,
        *,
        stdin_data: str | None,
        check: bool,
        timeout: float | None,
    ) -> CommandResult:
        client = self._require_client()
        logger.debug(f"[{self.host}] Running: {mask_secrets(display, self._mask)}")
        try:
            stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            if stdin_data is not None:
                stdin.write(stdin_data)
                stdin.flush()
                stdin.channel.shutdown_write()
            raw_out, raw_err = read_streams(stdout, stderr)
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise RemoteCommandError(
                mask_secrets(display, self._mask), -1, "", f"timed out: {e}"
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectivityError(self.host, 1, e) from e

        out = raw_out.decode("utf-8", errors="replace")
        err = raw_err.decode("utf-8", errors="replace")
        result = CommandResult(
            command=mask_secrets(display, self._mask),
            stdout=out,
            stderr=err,
            exit_code=exit_code,
        )
        if exit_code != 0:
            logger.debug(
                f"[{self.host}] Exit {exit_code}: "
                f"{mask_secrets(result.output, self._mask)[-2000:]}"
            )
            if check:
                raise RemoteCommandError(
                    result.command,
                    exit_code,
                    mask_secrets(out, self._mask),
                    mask_secrets(err, self._mask),
                )
        return result

    def run(
        self,
        command: str,
        *,
        check: bool = True,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        sudo: bool = False,
    ) -> CommandResult:
        """Run a single command and wait for it to exit.

        Args:
            command: Shell command line
            check: Raise on non-zero exit
            timeout: Channel timeout in seconds
            env: Variables exported before the command
            sudo: Run with sudo when the SSH user is not root

        Returns:
            CommandResult with captured output

        Raises:
            RemoteCommandError: If ``check`` and the command exits non-zero
            ConnectivityError: If the connection drops
        """
        full = self._wrap(env_prefix(env) + command, sudo)
        return self._exec(
            full, command, stdin_data=None, check=check, timeout=timeout
        )

    def run_script(
        self,
        body: str,
        *,
        check: bool = True,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        sudo: bool = False,
        label: str = "script",
    ) -> CommandResult:
        """Pipe a multi-line script into ``bash -s`` on the remote host.

        Args:
            body: Script text
            check: Raise on non-zero exit
            timeout: Channel timeout in seconds
            env: Variables exported at the top of the script
            sudo: Run with sudo when the SSH user is not root
            label: Short name used in logs and errors instead of the body

        Returns:
            CommandResult with captured output
        """
        shell = "bash -s"
        if sudo and self.server.user != "root":
            shell = "sudo -n bash -s"
        script = env_prefix(env) + "\n" + body if env else body
        return self._exec(
            shell,
            f"{shell} <<{label}>>",
            stdin_data=script,
            check=check,
            timeout=timeout,
        )

    def upload_text(self, remote_path: str, content: str, mode: int = 0o644) -> None:
        """Write ``content`` to ``remote_path`` over SFTP."""
        client = self._require_client()
        logger.debug(f"[{self.host}] Uploading {remote_path}")
        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectivityError(self.host, 1, e) from e
        try:
            with sftp.file(remote_path, "w") as f:
                f.write(content)
            sftp.chmod(remote_path, mode)
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise DeploymentError(
                "upload", f"Could not write {remote_path} on {self.host}: {e}"
            ) from e
        finally:
            sftp.close()

    def upload_tree(self, remote_dir: str, files: Mapping[str, str]) -> None:
        """Upload a set of text files below ``remote_dir``.

        Args:
            remote_dir: Remote base directory (created if missing)
            files: Relative POSIX path -> file content
        """
        dirs = {remote_dir}
        for relative in files:
            dirs.add(posixpath.dirname(posixpath.join(remote_dir, relative)))
        self.run("mkdir -p " + " ".join(shlex.quote(d) for d in sorted(dirs)))
        for relative, content in files.items():
            self.upload_text(posixpath.join(remote_dir, relative), content)
