"""Container image builder for ezdeploy applications.

This module builds the application image on the target server with the
Docker CLI and imports it into the cluster's image store, so the workload
runs with ``imagePullPolicy: Never`` and no registry is involved.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ezdeploy.lib.errors import DeploymentError, RemoteCommandError
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.models.deployment import DeploymentConfig, KubernetesProvider
from ezdeploy.remote.transport import Transport

logger = get_logger(__name__)

BUILD_TIMEOUT = 3600
IMPORT_TIMEOUT = 1200


@dataclass
class BuildResult:
    """Result of a container image build operation.

    Attributes:
        image_ref: Full image reference (name:tag)
        image_id: The SHA256 ID of the built image
        log_lines: Build log output lines
    """

    image_ref: str
    image_id: str
    log_lines: list[str] = field(default_factory=list)

    @property
    def short_id(self) -> str:
        return self.image_id.removeprefix("sha256:")[:12]


def get_oci_labels(
    project_name: str,
    version: str,
    source_sha: str | None = None,
) -> dict[str, str]:
    """Generate OCI-compliant container image labels.

    Args:
        project_name: Project name for the image title
        version: Version string for the image (the image tag)
        source_sha: Optional git SHA for source tracking

    Returns:
        Dictionary of OCI labels

    Example:
        >>> labels = get_oci_labels("shop", "latest")
        >>> labels["org.opencontainers.image.title"]
        'shop'
    """
    created = datetime.now(timezone.utc).isoformat()

    labels = {
        "org.opencontainers.image.title": project_name,
        "org.opencontainers.image.version": version,
        "org.opencontainers.image.created": created,
        "io.ezdeploy.managed": "true",
    }

    if source_sha:
        labels["org.opencontainers.image.revision"] = source_sha[:7]

    return labels


def import_command(image_ref: str, provider: KubernetesProvider) -> str:
    """Pipe ``docker save`` into the cluster runtime's containerd."""
    quoted = shlex.quote(image_ref)
    if provider == KubernetesProvider.MICROK8S:
        return f"docker save {quoted} | microk8s ctr image import -"
    return f"docker save {quoted} | ctr -n k8s.io images import -"


class ImageBuilder:
    """Builds the application image on the remote host.

    Example:
        >>> builder = ImageBuilder(transport, config)
        >>> result = builder.build(source_sha="3f2a9c1")
        >>> result.image_ref
        'shop:latest'
    """

    def __init__(self, transport: Transport, config: DeploymentConfig) -> None:
        self.transport = transport
        self.config = config

    def _require_source(self) -> None:
        source = shlex.quote(self.config.source_path)
        if not self.transport.run(f"test -d {source}", check=False).ok:
            raise DeploymentError(
                operation="build",
                message=f"Source directory not found: {self.config.source_path}",
            )
        if not self.transport.run(f"test -f {source}/Dockerfile", check=False).ok:
            raise DeploymentError(
                operation="build",
                message=(
                    f"Dockerfile not found in {self.config.source_path}. "
                    "Add a Dockerfile at the repository root"
                ),
            )

    def build(self, source_sha: str | None = None) -> BuildResult:
        """Build, import and tidy up the application image.

        Args:
            source_sha: Commit the image is built from, recorded as a label

        Returns:
            BuildResult with image details and build logs

        Raises:
            DeploymentError: If the source or Dockerfile is missing, or the
                build or import fails
        """
        self._require_source()
        image_ref = self.config.image_ref
        labels = get_oci_labels(
            self.config.project_name, self.config.application.image.tag, source_sha
        )
        label_args = " ".join(
            f"--label {shlex.quote(f'{key}={value}')}" for key, value in labels.items()
        )
        source = shlex.quote(self.config.source_path)

        logger.info(f"Building image {image_ref} in {self.config.source_path}")
        try:
            build = self.transport.run(
                f"cd {source} && docker build -t {shlex.quote(image_ref)} "
                f"{label_args} .",
                sudo=True,
                timeout=BUILD_TIMEOUT,
            )
        except RemoteCommandError as e:
            raise DeploymentError(
                operation="build",
                message=f"Docker build failed: {(e.stderr or e.stdout)[-2000:]}",
            ) from e

        image_id = self.transport.run(
            f"docker image inspect --format '{{{{.Id}}}}' {shlex.quote(image_ref)}",
            sudo=True,
        ).stdout.strip()

        logger.info(f"Importing {image_ref} into the cluster image store")
        try:
            self.transport.run_script(
                "set -o pipefail\n"
                + import_command(image_ref, self.config.kubernetes.provider)
                + "\n",
                sudo=True,
                timeout=IMPORT_TIMEOUT,
                label="image-import",
            )
        except RemoteCommandError as e:
            raise DeploymentError(
                operation="image import",
                message=f"Could not import {image_ref}: {e.stderr.strip()[-1000:]}",
            ) from e

        prune = self.transport.run("docker image prune -f", check=False, sudo=True)
        if not prune.ok:
            logger.warning(f"Image prune failed: {prune.output}")

        log_lines = [line for line in build.output.splitlines() if line.strip()]
        return BuildResult(image_ref=image_ref, image_id=image_id, log_lines=log_lines)
