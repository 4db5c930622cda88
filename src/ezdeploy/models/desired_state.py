"""Desired Kubernetes state derived from a deployment configuration."""

from __future__ import annotations

import hashlib
import json

from pydantic import BaseModel, ConfigDict, Field

from ezdeploy.models.deployment import CLUSTER_ISSUER_NAME, DeploymentConfig

IMAGE_ID_ANNOTATION = "ezdeploy.io/image-id"
REVISION_ANNOTATION = "ezdeploy.io/revision"
ENV_CHECKSUM_ANNOTATION = "ezdeploy.io/env-checksum"


def env_checksum(env: dict[str, str]) -> str:
    """Short stable digest of the env values."""
    payload = json.dumps(env, sort_keys=True).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:16]


class ResourceSpec(BaseModel):
    """CPU and memory requests/limits for the workload container."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    cpu_request: str
    cpu_limit: str
    memory_request: str
    memory_limit: str

    def to_manifest(self) -> dict[str, dict[str, str]]:
        return {
            "requests": {"cpu": self.cpu_request, "memory": self.memory_request},
            "limits": {"cpu": self.cpu_limit, "memory": self.memory_limit},
        }


class DesiredState(BaseModel):
    """Everything an apply strategy needs to converge the cluster.

    Both strategies render the same object names and labels from this value,
    so validation never needs to know which one ran.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    project: str
    app_name: str
    release_name: str
    namespace: str = "default"
    image: str
    replicas: int
    container_port: int
    service_port: int
    hosts: list[str]
    tls_enabled: bool
    tls_email: str | None = None
    tls_secret_name: str
    cluster_issuer: str = CLUSTER_ISSUER_NAME
    configmap_name: str
    env: dict[str, str] = Field(default_factory=dict)
    resources: ResourceSpec | None = None
    # Pod template annotations; a new image or env changes them, which rolls
    # the pods even though the tag and pull policy stay the same
    pod_annotations: dict[str, str] = Field(default_factory=dict)

    @property
    def labels(self) -> dict[str, str]:
        return {"app": self.app_name, "project": self.project}

    @classmethod
    def from_config(
        cls,
        config: DeploymentConfig,
        *,
        image_id: str | None = None,
        revision: str | None = None,
    ) -> DesiredState:
        """Build the desired state from a loaded configuration.

        Args:
            config: Loaded deployment configuration
            image_id: ID of the image just built, if any
            revision: Source commit the image was built from, if known
        """
        env = dict(config.environment.values)
        annotations = {ENV_CHECKSUM_ANNOTATION: env_checksum(env)}
        if image_id:
            annotations[IMAGE_ID_ANNOTATION] = image_id
        if revision:
            annotations[REVISION_ANNOTATION] = revision
        limits = config.kubernetes.resources.limits
        resources = None
        if limits.enabled:
            resources = ResourceSpec(
                cpu_request=limits.cpu.request,
                cpu_limit=limits.cpu.limit,
                memory_request=limits.memory.request,
                memory_limit=limits.memory.limit,
            )
        workload = config.kubernetes.deployment
        return cls(
            project=config.project_name,
            app_name=config.app_name,
            release_name=config.release_name,
            image=config.image_ref,
            replicas=workload.replicas,
            container_port=workload.port,
            service_port=workload.service_port,
            hosts=list(config.ingress.hosts),
            tls_enabled=config.tls_enabled,
            tls_email=config.ingress.tls.email,
            tls_secret_name=config.tls_secret_name,
            configmap_name=config.configmap_name,
            env=env,
            resources=resources,
            pod_annotations=annotations,
        )
