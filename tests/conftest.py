"""Pytest configuration and shared fixtures for ezdeploy tests."""

from __future__ import annotations

import copy
import json
import os
from collections.abc import Callable, Generator, Mapping
from pathlib import Path
from typing import Any

import pytest

from ezdeploy.lib.errors import ConnectivityError, RemoteCommandError
from ezdeploy.models.deployment import DeploymentConfig
from ezdeploy.remote.transport import CommandResult

PUBLIC_KEY = (
    "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAACAQDdeployKeyForTests0123456789+/= "
    "deploy-shop@203.0.113.10"
)
AUTH_BANNER = (
    "Hi acme/shop! You've successfully authenticated, but GitHub does not "
    "provide shell access."
)

Response = CommandResult | Callable[[str], CommandResult]


def result(stdout: str = "", exit_code: int = 0, stderr: str = "") -> CommandResult:
    """Build a CommandResult for scripted responses."""
    return CommandResult(command="", stdout=stdout, stderr=stderr, exit_code=exit_code)


class FakeTransport:
    """Scripted in-memory ``Transport``.

    Responses are looked up by substring. Rules added later win, so a test
    can install a healthy host and then override single commands. A rule
    with several responses replays them in order and repeats the last one.
    Commands without a rule succeed with empty output.
    """

    def __init__(self, host: str = "203.0.113.10") -> None:
        self.host = host
        self.rules: list[tuple[str, list[Response]]] = []
        self.history: list[str] = []
        self.scripts: list[tuple[str, str]] = []
        self.uploads: dict[str, str] = {}
        self.connect_error: Exception | None = None
        self.connected = False
        self.closed = False

    # Scripting

    def on(
        self, pattern: str, stdout: str = "", exit_code: int = 0, stderr: str = ""
    ) -> FakeTransport:
        self.rules.append((pattern, [result(stdout, exit_code, stderr)]))
        return self

    def on_sequence(self, pattern: str, *responses: Response) -> FakeTransport:
        self.rules.append((pattern, list(responses)))
        return self

    def on_json(self, pattern: str, payload: Any) -> FakeTransport:
        return self.on(pattern, json.dumps(payload))

    def fail(
        self, pattern: str, stderr: str = "error", exit_code: int = 1
    ) -> FakeTransport:
        return self.on(pattern, "", exit_code, stderr)

    # Inspection

    def ran(self, fragment: str) -> bool:
        return any(fragment in command for command in self.history)

    def count(self, fragment: str) -> int:
        return sum(1 for command in self.history if fragment in command)

    def index_of(self, fragment: str) -> int:
        for index, command in enumerate(self.history):
            if fragment in command:
                return index
        raise AssertionError(f"{fragment!r} was never run")

    def script_labels(self) -> list[str]:
        return [label for label, _ in self.scripts]

    # Transport protocol

    def _respond(self, command: str, check: bool) -> CommandResult:
        self.history.append(command)
        response: Response = result()
        for pattern, responses in reversed(self.rules):
            if pattern in command:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                break
        if callable(response):
            response = response(command)
        outcome = CommandResult(
            command=command,
            stdout=response.stdout,
            stderr=response.stderr,
            exit_code=response.exit_code,
        )
        if check and not outcome.ok:
            raise RemoteCommandError(
                command, outcome.exit_code, outcome.stdout, outcome.stderr
            )
        return outcome

    def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def run(
        self,
        command: str,
        *,
        check: bool = True,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        sudo: bool = False,
    ) -> CommandResult:
        return self._respond(command, check)

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
        self.scripts.append((label, body))
        return self._respond(f"<<{label}>>\n{body}", check)

    def upload_text(self, remote_path: str, content: str, mode: int = 0o644) -> None:
        self.history.append(f"upload {remote_path}")
        self.uploads[remote_path] = content

    def upload_tree(self, remote_dir: str, files: Mapping[str, str]) -> None:
        for relative, content in files.items():
            self.upload_text(f"{remote_dir}/{relative}", content)

    def close(self) -> None:
        self.closed = True


def deployment_data() -> dict[str, Any]:
    """Raw configuration for the ``shop`` sample project."""
    return {
        "server": {
            "ip": "203.0.113.10",
            "user": "root",
            "ssh": {"method": "password", "password": "s3cret-ssh"},
        },
        "repository": {"url": "https://github.com/acme/shop", "branch": "main"},
        "application": {"name": "shop"},
        "kubernetes": {"deployment": {"replicas": 2, "port": 3000}},
        "ingress": {
            "hosts": ["app.example.com"],
            "tls": {"enabled": True, "email": "ops@example.com"},
        },
        "environment": {"values": {"NODE_ENV": "production"}},
    }


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


@pytest.fixture
def make_config() -> Callable[..., DeploymentConfig]:
    """Factory building a DeploymentConfig with nested overrides."""

    def _make(overrides: dict[str, Any] | None = None) -> DeploymentConfig:
        data = _merge(copy.deepcopy(deployment_data()), overrides or {})
        return DeploymentConfig(**data)

    return _make


@pytest.fixture
def config(make_config: Callable[..., DeploymentConfig]) -> DeploymentConfig:
    """Sample configuration: 2 replicas, TLS, app.example.com, Pulumi."""
    return make_config()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sleeps() -> list[float]:
    """Collects the delays passed to the injected sleep function."""
    return []


@pytest.fixture
def sleep(sleeps: list[float]) -> Callable[[float], None]:
    return sleeps.append


def workload_payloads(
    config: DeploymentConfig, ready: int | None = None
) -> dict[str, Any]:
    """kubectl JSON for a workload matching ``config``."""
    replicas = config.kubernetes.deployment.replicas
    ingress_spec: dict[str, Any] = {"rules": []}
    if config.tls_enabled:
        ingress_spec["tls"] = [
            {
                "hosts": list(config.ingress.hosts),
                "secretName": config.tls_secret_name,
            }
        ]
    return {
        "deployment": {
            "metadata": {"name": config.app_name},
            "spec": {"replicas": replicas},
            "status": {"readyReplicas": replicas if ready is None else ready},
        },
        "service": {"metadata": {"name": config.app_name}},
        "ingress": {"metadata": {"name": config.app_name}, "spec": ingress_spec},
        "pods": {
            "items": [
                {
                    "metadata": {"name": f"{config.app_name}-{i}"},
                    "status": {
                        "phase": "Running",
                        "containerStatuses": [{"restartCount": 0, "state": {}}],
                    },
                }
                for i in range(replicas)
            ]
        },
        "certificate": {
            "status": {"conditions": [{"type": "Ready", "status": "True"}]}
        },
    }


def install_healthy_workload(
    transport: FakeTransport, config: DeploymentConfig, ready: int | None = None
) -> None:
    """Script kubectl so the live workload matches ``config``."""
    payloads = workload_payloads(config, ready)
    app = config.app_name
    transport.on_json(f"get deployment {app} ", payloads["deployment"])
    transport.on_json(f"get service {app} ", payloads["service"])
    transport.on_json(f"get ingress {app} ", payloads["ingress"])
    transport.on_json(f"get pods -l app={app}", payloads["pods"])
    transport.on_json(
        f"get certificate {config.tls_secret_name}", payloads["certificate"]
    )
    transport.on("curl -ksS", "200")


def install_provisioned_host(
    transport: FakeTransport, config: DeploymentConfig
) -> None:
    """Script a host where every tool, key, checkout and object is in place."""
    transport.on(f"cat {config.deploy_key_path}.pub", PUBLIC_KEY)
    transport.on("ssh -T", "", 1, AUTH_BANNER)
    transport.on("microk8s status -a", "enabled")
    transport.on_json("get clusterissuer letsencrypt-prod", {"kind": "ClusterIssuer"})
    transport.on("rev-parse --short HEAD", "3f2a9c1")
    transport.on("docker image inspect", "sha256:0123456789abcdef0123")
    transport.on_json("stack export", {"deployment": {"resources": []}})
    transport.on("uname -srm", "Linux 6.8.0-45-generic x86_64")
    install_healthy_workload(transport, config)


@pytest.fixture
def provisioned(transport: FakeTransport, config: DeploymentConfig) -> FakeTransport:
    """FakeTransport scripted as a fully provisioned, healthy host."""
    install_provisioned_host(transport, config)
    return transport


@pytest.fixture
def unreachable() -> FakeTransport:
    fake = FakeTransport()
    fake.connect_error = ConnectivityError(
        fake.host, 3, TimeoutError("timed out")
    )
    return fake


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Working directory for config files."""
    return tmp_path


@pytest.fixture
def isolated_env() -> Generator[dict[str, str]]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.

    Yields:
        Dictionary of original environment variables
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)
