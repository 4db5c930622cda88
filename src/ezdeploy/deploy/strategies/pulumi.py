"""Pulumi apply strategy.

The workload is described as a Pulumi YAML program generated from the
shared manifest constructors, so no language runtime is needed on the
server. State lives in a file backend under the project root.

Applies climb a recovery ladder, each rung more invasive than the last:

1. plain ``pulumi up``
2. ``pulumi refresh`` then ``up``
3. force-delete the live objects, drop them from state, then ``up``
4. destroy and recreate the stack, then ``up``
"""

from __future__ import annotations

import json
import posixpath
import shlex
from collections.abc import Callable
from enum import Enum
from typing import Any

import yaml

from ezdeploy.deploy.manifests import (
    build_configmap,
    build_deployment,
    build_ingress,
    build_service,
)
from ezdeploy.deploy.strategies.base import (
    ApplyOutcome,
    ApplyStatus,
    BaseApplyStrategy,
)
from ezdeploy.lib.errors import (
    DeploymentError,
    RemoteCommandError,
    ResourceConflictError,
)
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import RetryPolicy, poll_until
from ezdeploy.models.deployment import KubernetesProvider
from ezdeploy.models.desired_state import DesiredState
from ezdeploy.remote.transport import CommandResult

logger = get_logger(__name__)

PULUMI = 'PATH="$HOME/.pulumi/bin:$PATH" pulumi'
MICROK8S_KUBECONFIG_CMD = "microk8s config"
RUNG_DELAY = 10.0
DELETE_WAIT_POLICY = RetryPolicy(attempts=12, delay=5.0)

# Pulumi resource name -> (Pulumi type token, kubectl kind)
RESOURCES: dict[str, tuple[str, str]] = {
    "configmap": ("kubernetes:core/v1:ConfigMap", "configmap"),
    "deployment": ("kubernetes:apps/v1:Deployment", "deployment"),
    "service": ("kubernetes:core/v1:Service", "service"),
    "ingress": ("kubernetes:networking.k8s.io/v1:Ingress", "ingress"),
}


class ApplyRung(str, Enum):
    """Rungs of the apply recovery ladder."""

    PLAIN = "plain"
    REFRESH = "refresh"
    FORCE_DELETE = "force_delete"
    RECREATE_STACK = "recreate_stack"


LADDER: tuple[ApplyRung, ...] = (
    ApplyRung.PLAIN,
    ApplyRung.REFRESH,
    ApplyRung.FORCE_DELETE,
    ApplyRung.RECREATE_STACK,
)


def _escape_interpolation(value: Any) -> Any:
    """Escape ``${`` so Pulumi YAML does not treat values as expressions."""
    if isinstance(value, str):
        return value.replace("${", "$${")
    if isinstance(value, dict):
        return {key: _escape_interpolation(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_escape_interpolation(item) for item in value]
    return value


def _properties(manifest: dict[str, Any]) -> dict[str, Any]:
    return _escape_interpolation(
        {
            key: value
            for key, value in manifest.items()
            if key not in ("apiVersion", "kind")
        }
    )


def render_program(project: str, desired: DesiredState) -> dict[str, Any]:
    """Build the Pulumi YAML program for ``desired``."""
    manifests = {
        "configmap": build_configmap(desired),
        "deployment": build_deployment(desired),
        "service": build_service(desired),
        "ingress": build_ingress(desired),
    }
    resources: dict[str, Any] = {}
    for name, manifest in manifests.items():
        resource: dict[str, Any] = {
            "type": RESOURCES[name][0],
            "properties": _properties(manifest),
        }
        if name == "deployment":
            resource["options"] = {"dependsOn": ["${configmap}"]}
        elif name == "ingress":
            resource["options"] = {"dependsOn": ["${service}"]}
        resources[name] = resource

    return {
        "name": project,
        "runtime": "yaml",
        "description": f"Kubernetes workload for {desired.project}",
        "resources": resources,
        "outputs": {
            "deploymentName": "${deployment.metadata.name}",
            "serviceName": "${service.metadata.name}",
            "ingressName": "${ingress.metadata.name}",
        },
    }


def pending_operations(state: dict[str, Any]) -> list[dict[str, Any]]:
    """Return pending operations from ``pulumi stack export`` JSON."""
    deployment = state.get("deployment") or {}
    return list(deployment.get("pending_operations") or [])


class PulumiStrategy(BaseApplyStrategy):
    """Applies the workload with Pulumi and a file state backend."""

    name = "pulumi"

    @property
    def workdir(self) -> str:
        return posixpath.join(self.config.iac_dir, "pulumi")

    @property
    def stack(self) -> str:
        return self.config.project_name

    @property
    def project(self) -> str:
        return f"{self.config.project_name}-infra"

    @property
    def kubeconfig(self) -> str:
        if self.config.kubernetes.provider == KubernetesProvider.MICROK8S:
            return posixpath.join(self.config.configs_dir, "kubeconfig")
        return "$HOME/.kube/config"

    def env(self) -> dict[str, str]:
        root = self.config.project_root
        return {
            "PULUMI_HOME": posixpath.join(root, ".pulumi-home"),
            "PULUMI_BACKEND_URL": f"file://{posixpath.join(root, '.pulumi-state')}",
            "PULUMI_CONFIG_PASSPHRASE": "",
            "PULUMI_SKIP_UPDATE_CHECK": "true",
        }

    def pulumi(
        self, args: str, *, check: bool = True, timeout: float | None = 900
    ) -> CommandResult:
        """Run a pulumi subcommand in the program directory."""
        return self.transport.run(
            f"cd {shlex.quote(self.workdir)} && KUBECONFIG={self.kubeconfig} "
            f"{PULUMI} {args} --non-interactive",
            check=check,
            timeout=timeout,
            env=self.env(),
        )

    def urn(self, resource: str) -> str:
        type_token = RESOURCES[resource][0]
        return f"urn:pulumi:{self.stack}::{self.project}::{type_token}::{resource}"

    def render(self, desired: DesiredState) -> dict[str, str]:
        program = render_program(self.project, desired)
        return {"Pulumi.yaml": yaml.safe_dump(program, sort_keys=False)}

    # Preparation

    def prepare(self, desired: DesiredState) -> None:
        """Upload the program and select (or create) the stack."""
        root = self.config.project_root
        dirs = [
            self.workdir,
            posixpath.join(root, ".pulumi-home"),
            posixpath.join(root, ".pulumi-state"),
            self.config.configs_dir,
        ]
        self.transport.run("mkdir -p " + " ".join(shlex.quote(d) for d in dirs))
        self.transport.upload_tree(self.workdir, self.render(desired))

        if self.config.kubernetes.provider == KubernetesProvider.MICROK8S:
            target = shlex.quote(self.kubeconfig)
            self.transport.run(
                f"{MICROK8S_KUBECONFIG_CMD} > {target}.tmp && mv {target}.tmp {target}",
                sudo=True,
            )
            self.transport.run(
                f"chown $(id -un):$(id -gn) {target} && chmod 600 {target}", sudo=True
            )

        selected = self.pulumi(f"stack select {shlex.quote(self.stack)}", check=False)
        if not selected.ok:
            self.pulumi(f"stack init {shlex.quote(self.stack)}")

    def clear_pending_operations(self) -> bool:
        """Clear operations left by an interrupted update.

        Returns:
            True if pending operations were found and cleared
        """
        exported = self.pulumi("stack export", check=False)
        if not exported.ok:
            return False
        try:
            state = json.loads(exported.stdout)
        except json.JSONDecodeError as e:
            raise DeploymentError(
                "pulumi stack export", f"unparsable state for stack {self.stack}: {e}"
            ) from e

        pending = pending_operations(state)
        if not pending:
            return False

        logger.warning(
            f"Stack {self.stack} has {len(pending)} pending operation(s); clearing"
        )
        self.pulumi("cancel --yes", check=False)
        state["deployment"]["pending_operations"] = []
        cleaned = posixpath.join(self.workdir, ".state-cleaned.json")
        self.transport.upload_text(cleaned, json.dumps(state), mode=0o600)
        self.pulumi(f"stack import --file {shlex.quote(cleaned)}")
        self.transport.run(f"rm -f {shlex.quote(cleaned)}", check=False)
        self.pulumi("refresh --yes --skip-preview", check=False)
        return True

    # Ladder

    def _up(self) -> CommandResult:
        return self.pulumi("up --yes --skip-preview", check=False, timeout=1800)

    def _force_delete_live_objects(self) -> None:
        name = self.config.app_name
        for resource, (_, kind) in RESOURCES.items():
            object_name = name
            if resource == "configmap":
                object_name = self.config.configmap_name
            self.kubectl.force_delete(kind, object_name)
            self.pulumi(
                f"state delete {shlex.quote(self.urn(resource))} --force --yes",
                check=False,
            )

        outcome = poll_until(
            lambda: self.kubectl.exists("deployment", name),
            lambda exists: not exists,
            DELETE_WAIT_POLICY,
            sleep=self.sleep,
        )
        if not outcome.satisfied:
            logger.warning(f"Deployment {name} still present after forced delete")

    def _recreate_stack(self) -> None:
        stack = shlex.quote(self.stack)
        self.pulumi("destroy --yes --skip-preview", check=False, timeout=1800)
        self.pulumi(f"stack rm {stack} --yes --force", check=False)
        self.pulumi(f"stack init {stack}")

    def _prepare_rung(self, rung: ApplyRung) -> None:
        actions: dict[ApplyRung, Callable[[], Any]] = {
            ApplyRung.PLAIN: lambda: None,
            ApplyRung.REFRESH: lambda: self.pulumi(
                "refresh --yes --skip-preview", check=False
            ),
            ApplyRung.FORCE_DELETE: self._force_delete_live_objects,
            ApplyRung.RECREATE_STACK: self._recreate_stack,
        }
        actions[rung]()

    def apply(self, desired: DesiredState) -> ApplyOutcome:
        self.prepare(desired)
        warnings: list[str] = []
        if self.clear_pending_operations():
            warnings.append("cleared pending operations left by an interrupted run")

        last: CommandResult | None = None
        for attempt, rung in enumerate(LADDER, start=1):
            if attempt > 1:
                self.sleep(RUNG_DELAY)
            logger.info(f"pulumi up attempt {attempt}/{len(LADDER)} ({rung.value})")
            try:
                self._prepare_rung(rung)
            except RemoteCommandError as e:
                logger.warning(f"Recovery step {rung.value} failed: {e}")
                continue
            last = self._up()
            if last.ok:
                if attempt > 1:
                    warnings.append(f"applied after recovery step '{rung.value}'")
                return ApplyOutcome(
                    status=ApplyStatus.APPLIED,
                    message=f"Pulumi stack {self.stack} is up to date",
                    attempts=attempt,
                    warnings=warnings,
                )
            logger.warning(f"pulumi up failed: {last.output[-1000:]}")

        status = self.kubectl.workload_status(desired.app_name)
        if status.replicas_ready and status.service_exists and status.ingress_exists:
            warnings.append(
                "Pulumi could not record the apply, but the workload is running. "
                f"Reconcile the state with: cd {self.workdir} && pulumi refresh --yes"
            )
            return ApplyOutcome(
                status=ApplyStatus.DEGRADED,
                message="Workload running; Pulumi state out of sync",
                attempts=len(LADDER),
                warnings=warnings,
            )

        detail = last.output[-2000:] if last is not None else "no apply attempt ran"
        raise ResourceConflictError(
            f"pulumi stack {self.stack}",
            f"apply failed after {len(LADDER)} attempts:\n{detail}",
        )
