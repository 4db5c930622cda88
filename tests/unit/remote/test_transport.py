"""Tests for the paramiko SSH transport."""

from __future__ import annotations

import socket
import threading
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from ezdeploy.lib.errors import (
    ConnectivityError,
    DeploymentError,
    RemoteCommandError,
)
from ezdeploy.lib.retry import RetryPolicy
from ezdeploy.models.deployment import ServerConfig, SSHConfig
from ezdeploy.remote.transport import (
    CommandResult,
    SSHTransport,
    env_prefix,
    mask_secrets,
)


@pytest.fixture
def server() -> ServerConfig:
    return ServerConfig(
        ip="203.0.113.10",
        user="deploy",
        ssh=SSHConfig(method="password", password="s3cret"),
    )


def _channel_output(stdout: bytes, stderr: bytes, exit_code: int) -> tuple:
    stdin = MagicMock()
    out = MagicMock()
    out.read.return_value = stdout
    out.channel.recv_exit_status.return_value = exit_code
    err = MagicMock()
    err.read.return_value = stderr
    return stdin, out, err


@pytest.fixture
def client() -> MagicMock:
    mock = MagicMock(spec=paramiko.SSHClient)
    mock.get_transport.return_value.is_active.return_value = True
    mock.exec_command.return_value = _channel_output(b"ok\n", b"", 0)
    return mock


class TestHelpers:
    """Tests for mask_secrets() and env_prefix()."""

    def test_mask_secrets(self) -> None:
        text = "mysql -p'hunter2' -e 'SELECT 1' # hunter2"
        masked = mask_secrets(text, ["hunter2", ""])
        assert masked == "mysql -p'***' -e 'SELECT 1' # ***"

    def test_env_prefix_quotes_values(self) -> None:
        prefix = env_prefix({"PULUMI_CONFIG_PASSPHRASE": "", "A": "x y"})
        assert prefix == "export PULUMI_CONFIG_PASSPHRASE=''; export A='x y'; "

    def test_env_prefix_empty(self) -> None:
        assert env_prefix(None) == ""

    def test_command_result_output(self) -> None:
        result = CommandResult("ls", " out \n", "\nerr ", 1)
        assert not result.ok
        assert result.output == "out\nerr"


class TestConnect:
    """Tests for SSHTransport.connect()."""

    def test_password_auth(self, server: ServerConfig, client: MagicMock) -> None:
        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(server, sleep=lambda _: None)
            transport.connect()

        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "203.0.113.10"
        assert kwargs["username"] == "deploy"
        assert kwargs["password"] == "s3cret"
        assert kwargs["look_for_keys"] is False

    def test_retries_then_raises_connectivity_error(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        client.connect.side_effect = socket.timeout("timed out")
        sleeps: list[float] = []

        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(
                server, policy=RetryPolicy(attempts=3, delay=5.0), sleep=sleeps.append
            )
            with pytest.raises(ConnectivityError) as exc_info:
                transport.connect()

        assert client.connect.call_count == 3
        assert sleeps == [5.0, 5.0]
        assert exc_info.value.attempts == 3
        assert exc_info.value.host == "203.0.113.10"

    def test_auth_failure_is_connectivity_error(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        client.connect.side_effect = paramiko.AuthenticationException("denied")
        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(
                server, policy=RetryPolicy(attempts=1), sleep=lambda _: None
            )
            with pytest.raises(ConnectivityError, match="denied"):
                transport.connect()


class TestRun:
    """Tests for SSHTransport.run() and run_script()."""

    def test_run_returns_result(self, server: ServerConfig, client: MagicMock) -> None:
        with patch("paramiko.SSHClient", return_value=client):
            with SSHTransport(server, sleep=lambda _: None) as transport:
                result = transport.run("uname -a")

        assert result.ok
        assert result.stdout == "ok\n"
        client.exec_command.assert_called_once_with("uname -a", timeout=None)
        client.close.assert_called()

    def test_non_zero_exit_raises_with_output(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        client.exec_command.return_value = _channel_output(b"", b"E: locked\n", 100)
        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(server, sleep=lambda _: None)
            with pytest.raises(RemoteCommandError) as exc_info:
                transport.run("apt-get install -y git")

        assert exc_info.value.exit_code == 100
        assert "E: locked" in exc_info.value.stderr

    def test_unchecked_failure_returns_result(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        client.exec_command.return_value = _channel_output(b"", b"", 1)
        with patch("paramiko.SSHClient", return_value=client):
            result = SSHTransport(server, sleep=lambda _: None).run(
                "command -v docker", check=False
            )
        assert result.exit_code == 1

    def test_sudo_wraps_for_non_root(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        with patch("paramiko.SSHClient", return_value=client):
            SSHTransport(server, sleep=lambda _: None).run(
                "apt-get update", sudo=True, env={"DEBIAN_FRONTEND": "noninteractive"}
            )
        command = client.exec_command.call_args.args[0]
        assert command.startswith("sudo -n bash -c ")
        assert "DEBIAN_FRONTEND=noninteractive" in command

    def test_secrets_masked_in_errors(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        client.exec_command.return_value = _channel_output(b"", b"bad s3cret", 1)
        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(server, mask=["s3cret"], sleep=lambda _: None)
            with pytest.raises(RemoteCommandError) as exc_info:
                transport.run("echo s3cret")
        assert "s3cret" not in str(exc_info.value)
        assert "***" in exc_info.value.command

    def test_run_script_pipes_body(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        stdin, out, err = _channel_output(b"done", b"", 0)
        client.exec_command.return_value = (stdin, out, err)
        with patch("paramiko.SSHClient", return_value=client):
            result = SSHTransport(server, sleep=lambda _: None).run_script(
                "set -e\necho done\n", sudo=True, label="test"
            )

        assert client.exec_command.call_args.args[0] == "sudo -n bash -s"
        stdin.write.assert_called_once_with("set -e\necho done\n")
        stdin.channel.shutdown_write.assert_called_once()
        assert "<<test>>" in result.command

    def test_stderr_is_drained_while_stdout_is_open(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        """A command flooding stderr must not block the stdout read."""
        stdin, out, err = _channel_output(b"", b"", 0)
        stderr_drained = threading.Event()

        def read_stderr() -> bytes:
            stderr_drained.set()
            return b"#5 [2/4] RUN npm ci\n"

        def read_stdout() -> bytes:
            return b"built" if stderr_drained.wait(timeout=5) else b"stalled"

        err.read.side_effect = read_stderr
        out.read.side_effect = read_stdout
        client.exec_command.return_value = (stdin, out, err)

        with patch("paramiko.SSHClient", return_value=client):
            result = SSHTransport(server, sleep=lambda _: None).run("docker build .")

        assert result.stdout == "built"
        assert result.stderr == "#5 [2/4] RUN npm ci\n"

    def test_connection_reset_is_connectivity_error(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        stdin, out, err = _channel_output(b"", b"", 0)
        out.read.side_effect = ConnectionResetError(104, "Connection reset by peer")
        client.exec_command.return_value = (stdin, out, err)

        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(server, sleep=lambda _: None)
            with pytest.raises(ConnectivityError, match="reset by peer"):
                transport.run("docker build .")

    def test_eof_is_connectivity_error(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        client.exec_command.side_effect = EOFError()
        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(server, sleep=lambda _: None)
            with pytest.raises(ConnectivityError):
                transport.run("uname -a")


class TestUpload:
    """Tests for SSHTransport.upload_text()."""

    def test_writes_and_chmods(self, server: ServerConfig, client: MagicMock) -> None:
        sftp = client.open_sftp.return_value
        with patch("paramiko.SSHClient", return_value=client):
            SSHTransport(server, sleep=lambda _: None).upload_text(
                "/deployments/shop/iac/pulumi/Pulumi.yaml", "name: shop\n", 0o600
            )

        sftp.file.assert_called_once_with(
            "/deployments/shop/iac/pulumi/Pulumi.yaml", "w"
        )
        sftp.file.return_value.__enter__.return_value.write.assert_called_once_with(
            "name: shop\n"
        )
        sftp.chmod.assert_called_once_with(
            "/deployments/shop/iac/pulumi/Pulumi.yaml", 0o600
        )
        sftp.close.assert_called_once()

    def test_permission_error_is_deployment_error(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        sftp = client.open_sftp.return_value
        sftp.file.side_effect = PermissionError(13, "Permission denied")

        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(server, sleep=lambda _: None)
            with pytest.raises(DeploymentError) as exc_info:
                transport.upload_text("/etc/ezdeploy.yaml", "x")

        assert exc_info.value.operation == "upload"
        assert "/etc/ezdeploy.yaml" in str(exc_info.value)
        assert "Permission denied" in str(exc_info.value)
        sftp.close.assert_called_once()

    def test_sftp_subsystem_failure_is_connectivity_error(
        self, server: ServerConfig, client: MagicMock
    ) -> None:
        client.open_sftp.side_effect = paramiko.SSHException("subsystem failed")
        with patch("paramiko.SSHClient", return_value=client):
            transport = SSHTransport(server, sleep=lambda _: None)
            with pytest.raises(ConnectivityError, match="subsystem failed"):
                transport.upload_text("/tmp/x", "x")
