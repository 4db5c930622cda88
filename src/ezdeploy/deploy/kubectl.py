"""Thin kubectl wrapper returning parsed JSON objects."""

from __future__ import annotations

import json
import shlex
from typing import Any

from ezdeploy.lib.errors import DeploymentError
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.models.phase import PodStatus, WorkloadStatus
from ezdeploy.remote.transport import CommandResult, Transport

logger = get_logger(__name__)


class Kubectl:
    """Runs kubectl on the remote host with the provider's command prefix."""

    def __init__(self, transport: Transport, prefix: str, namespace: str = "default"):
        self.transport = transport
        self.prefix = prefix
        self.namespace = namespace

    def run(self, args: str, *, check: bool = True) -> CommandResult:
        return self.transport.run(f"{self.prefix} {args}", check=check)

    def get_json(
        self, kind: str, name: str | None = None, *, selector: str | None = None
    ) -> dict[str, Any] | None:
        """Return the object (or list) as JSON, or None when it does not exist."""
        args = f"get {kind}"
        if name:
            args += f" {shlex.quote(name)}"
        if selector:
            args += f" -l {shlex.quote(selector)}"
        args += f" -n {self.namespace} -o json"
        result = self.run(args, check=False)
        if not result.ok:
            if "NotFound" in result.stderr or "not found" in result.stderr:
                return None
            logger.debug(f"kubectl get {kind} failed: {result.stderr.strip()}")
            return None
        if not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise DeploymentError(
                "kubectl", f"Unparsable output from kubectl get {kind}: {e}"
            ) from e

    def exists(self, kind: str, name: str) -> bool:
        return self.get_json(kind, name) is not None

    def apply_manifest(self, manifest: str) -> CommandResult:
        """Apply a YAML manifest passed on stdin."""
        body = (
            f"{self.prefix} apply -f - <<'EZDEPLOY_MANIFEST_EOF'\n"
            f"{manifest}EZDEPLOY_MANIFEST_EOF\n"
        )
        return self.transport.run_script(body, label="kubectl-apply")

    def force_delete(
        self, kind: str, name: str | None = None, *, selector: str | None = None
    ) -> CommandResult:
        args = f"delete {kind}"
        if name:
            args += f" {shlex.quote(name)}"
        if selector:
            args += f" -l {shlex.quote(selector)}"
        args += f" -n {self.namespace} --force --grace-period=0 --ignore-not-found"
        return self.run(args, check=False)

    def describe_tail(self, kind: str, name: str, lines: int = 40) -> str:
        result = self.run(
            f"describe {kind} {shlex.quote(name)} -n {self.namespace} "
            f"| tail -n {lines}",
            check=False,
        )
        return result.output

    def workload_status(self, app_name: str) -> WorkloadStatus:
        """Query deployment, service, ingress and pods for ``app_name``."""
        deployment = self.get_json("deployment", app_name)
        service = self.get_json("service", app_name)
        ingress = self.get_json("ingress", app_name)
        pods = self.get_json("pods", selector=f"app={app_name}")

        status = WorkloadStatus(
            deployment_exists=deployment is not None,
            service_exists=service is not None,
            ingress_exists=ingress is not None,
        )
        if deployment is not None:
            spec = deployment.get("spec", {})
            observed = deployment.get("status", {})
            status.desired_replicas = int(spec.get("replicas", 0) or 0)
            status.ready_replicas = int(observed.get("readyReplicas", 0) or 0)
        if ingress is not None:
            for tls in ingress.get("spec", {}).get("tls", []) or []:
                if tls.get("secretName"):
                    status.ingress_tls_secret = tls["secretName"]
                    break
        if pods is not None:
            status.pods = [parse_pod(item) for item in pods.get("items", [])]
        return status


def parse_pod(item: dict[str, Any]) -> PodStatus:
    """Extract phase, restarts and OOM state from a pod object."""
    container_statuses = item.get("status", {}).get("containerStatuses", []) or []
    restarts = sum(int(cs.get("restartCount", 0) or 0) for cs in container_statuses)
    oom = False
    for cs in container_statuses:
        for key in ("state", "lastState"):
            terminated = (cs.get(key) or {}).get("terminated") or {}
            if terminated.get("reason") == "OOMKilled":
                oom = True
    return PodStatus(
        name=item.get("metadata", {}).get("name", "unknown"),
        phase=item.get("status", {}).get("phase", "Unknown"),
        restarts=restarts,
        oom_killed=oom,
    )
