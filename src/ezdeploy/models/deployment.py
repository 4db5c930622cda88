"""Pydantic models for deployment configuration.

This module defines the configuration schema for an ezdeploy run: the
target server and its SSH credentials, the source repository, the
application image, the Kubernetes workload, ingress/TLS, and the optional
database and cache services. A ``DeploymentConfig`` is parsed once per run
and never mutated; every phase reads from it.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Annotated

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class SSHAuthMethod(str, Enum):
    """SSH authentication methods for the target server."""

    PASSWORD = "password"
    KEY = "key"


class KubernetesProvider(str, Enum):
    """Cluster runtimes ezdeploy can drive."""

    MICROK8S = "microk8s"
    KUBEADM = "kubeadm"


class ApplyStrategyType(str, Enum):
    """Infrastructure apply strategies."""

    PULUMI = "pulumi"
    HELM = "helm"


class DatabaseType(str, Enum):
    """Database engines that can be provisioned on the host."""

    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRES = "postgres"


# DNS-1123 label, capped so "<name>-tls" style suffixes stay under 63 chars
PROJECT_NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,51}[a-z0-9])?$")
HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)([a-z0-9*]([a-z0-9-]{0,61}[a-z0-9])?)(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$"
)
K8S_QUANTITY_PATTERN = re.compile(r"^\d+(\.\d+)?(m|Ki|Mi|Gi|Ti|k|M|G|T)?$")
HTTPS_GIT_URL_PATTERN = re.compile(
    r"^https://(?P<host>[^/]+)/(?P<path>[^/]+/[^/]+?)(\.git)?/?$"
)
SCP_GIT_URL_PATTERN = re.compile(r"^git@(?P<host>[^:]+):(?P<path>.+?)(\.git)?$")

DEPLOYMENTS_ROOT = "/deployments"
CLUSTER_ISSUER_NAME = "letsencrypt-prod"


class SSHConfig(BaseModel):
    """SSH authentication settings.

    Attributes:
        method: Authentication method (password or key)
        password: SSH password when method is password
        key_path: Local private key path when method is key
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: SSHAuthMethod = Field(
        default=SSHAuthMethod.KEY, description="SSH authentication method"
    )
    password: str | None = Field(default=None, description="SSH password")
    key_path: str | None = Field(default=None, description="Local private key path")

    @model_validator(mode="after")
    def validate_credentials(self) -> SSHConfig:
        """Validate that the selected method has usable credentials."""
        if self.method == SSHAuthMethod.PASSWORD:
            if not self.password:
                raise ValueError("password is required when ssh.method is 'password'")
        else:
            if not self.key_path:
                raise ValueError("key_path is required when ssh.method is 'key'")
            if not Path(self.key_path).expanduser().is_file():
                raise ValueError(f"SSH key not found: {self.key_path}")
        return self


class ServerConfig(BaseModel):
    """Target server configuration.

    Attributes:
        ip: Server address (IP or hostname)
        user: SSH user
        port: SSH port
        ssh: Authentication settings
        connect_timeout: Seconds to wait for the SSH handshake
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    ip: str = Field(..., min_length=1, description="Server address")
    user: str = Field(default="root", min_length=1, description="SSH user")
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=22, description="SSH port"
    )
    ssh: SSHConfig = Field(
        default_factory=SSHConfig, description="SSH authentication settings"
    )
    connect_timeout: float = Field(
        default=10.0, gt=0, description="SSH connect timeout in seconds"
    )


class RepositoryConfig(BaseModel):
    """Source repository configuration.

    HTTPS URLs are normalized to the SSH form so that the per-project deploy
    key can be used for cloning.

    Attributes:
        url: Repository URL in SSH form (``git@host:owner/repo.git``)
        branch: Branch to deploy
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str = Field(..., min_length=1, description="Repository URL")
    branch: str = Field(default="main", min_length=1, description="Branch to deploy")

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        """Convert HTTPS URLs to SSH form and require a supported format."""
        v = v.strip()
        match = HTTPS_GIT_URL_PATTERN.match(v)
        if match:
            return f"git@{match.group('host')}:{match.group('path')}.git"
        match = SCP_GIT_URL_PATTERN.match(v)
        if match:
            return f"git@{match.group('host')}:{match.group('path')}.git"
        raise ValueError(
            f"Unsupported repository URL: {v}. "
            "Use https://host/owner/repo or git@host:owner/repo.git"
        )

    @property
    def git_host(self) -> str:
        """Git hosting provider hostname (e.g. github.com)."""
        match = SCP_GIT_URL_PATTERN.match(self.url)
        assert match is not None  # guaranteed by normalize_url
        return match.group("host")

    @property
    def repo_path(self) -> str:
        """Repository path without host or .git suffix (owner/repo)."""
        match = SCP_GIT_URL_PATTERN.match(self.url)
        assert match is not None
        return match.group("path")


class ImageConfig(BaseModel):
    """Container image naming."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str | None = Field(default=None, description="Image name")
    tag: str = Field(default="latest", min_length=1, description="Image tag")


class ApplicationConfig(BaseModel):
    """Application configuration.

    Attributes:
        name: Project name; namespaces remote paths and Kubernetes objects
        directory: Parent directory for the source checkout on the server
        image: Container image naming
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Project name")
    directory: str = Field(default="/apps", description="Source parent directory")
    image: ImageConfig = Field(default_factory=ImageConfig)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the project name is a DNS label."""
        if not PROJECT_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid project name: {v}. "
                "Use 1-53 lowercase letters, digits and '-', "
                "starting and ending with a letter or digit"
            )
        return v

    @field_validator("directory")
    @classmethod
    def validate_directory(cls, v: str) -> str:
        """Require an absolute remote directory."""
        if not v.startswith("/"):
            raise ValueError(f"application.directory must be absolute: {v}")
        return v.rstrip("/") or "/"


class WorkloadConfig(BaseModel):
    """Kubernetes workload settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=3000, description="Container port"
    )
    service_port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=80, description="Service port"
    )
    replicas: Annotated[int, Field(ge=1, le=20)] = Field(
        default=1, description="Replica count"
    )
    release_name: str | None = Field(default=None, description="Helm release name")
    app_name: str | None = Field(default=None, description="Kubernetes app name")

    @field_validator("release_name", "app_name")
    @classmethod
    def validate_object_name(cls, v: str | None) -> str | None:
        """Validate object names are DNS labels."""
        if v is not None and not PROJECT_NAME_PATTERN.match(v):
            raise ValueError(f"Invalid Kubernetes object name: {v}")
        return v


class ResourcePair(BaseModel):
    """Request/limit pair for one resource."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    request: str
    limit: str

    @field_validator("request", "limit")
    @classmethod
    def validate_quantity(cls, v: str) -> str:
        """Validate Kubernetes quantity syntax (250m, 512Mi, 1)."""
        if not K8S_QUANTITY_PATTERN.match(str(v)):
            raise ValueError(f"Invalid Kubernetes quantity: {v}")
        return str(v)


class ResourceLimitsConfig(BaseModel):
    """Optional resource requests and limits."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(default=False, description="Apply resource limits")
    cpu: ResourcePair = Field(
        default_factory=lambda: ResourcePair(request="250m", limit="500m")
    )
    memory: ResourcePair = Field(
        default_factory=lambda: ResourcePair(request="256Mi", limit="512Mi")
    )


class ResourcesConfig(BaseModel):
    """Wrapper matching the ``kubernetes.resources.limits`` YAML layout."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    limits: ResourceLimitsConfig = Field(default_factory=ResourceLimitsConfig)


class KubernetesConfig(BaseModel):
    """Kubernetes configuration.

    Attributes:
        provider: Cluster runtime (microk8s or kubeadm)
        strategy: Infrastructure apply strategy (pulumi or helm)
        deployment: Workload settings
        resources: Optional resource limits
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    provider: KubernetesProvider = Field(default=KubernetesProvider.MICROK8S)
    strategy: ApplyStrategyType = Field(default=ApplyStrategyType.PULUMI)
    deployment: WorkloadConfig = Field(default_factory=WorkloadConfig)
    resources: ResourcesConfig = Field(default_factory=ResourcesConfig)


class TLSConfig(BaseModel):
    """TLS settings for the ingress."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(default=True, description="Issue certificates")
    email: str | None = Field(default=None, description="ACME contact email")

    @model_validator(mode="after")
    def validate_email(self) -> TLSConfig:
        """Require a contact email when TLS is enabled."""
        if self.enabled and not self.email:
            raise ValueError("email is required when tls.enabled is true")
        if self.email and "@" not in self.email:
            raise ValueError(f"Invalid TLS contact email: {self.email}")
        return self


class IngressConfig(BaseModel):
    """Ingress hosts and TLS."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    hosts: list[str] = Field(..., description="Ingress hostnames")
    tls: TLSConfig = Field(default_factory=TLSConfig)

    @field_validator("hosts")
    @classmethod
    def validate_hosts(cls, v: list[str]) -> list[str]:
        """Require at least one valid host; drop duplicates keeping order."""
        hosts: list[str] = []
        for raw in v:
            host = str(raw).strip().lower()
            if not host:
                continue
            if not HOSTNAME_PATTERN.match(host):
                raise ValueError(f"Invalid ingress host: {raw}")
            if host not in hosts:
                hosts.append(host)
        if not hosts:
            raise ValueError("at least one ingress host is required")
        return hosts


class EnvironmentConfig(BaseModel):
    """Environment injected into the workload.

    Attributes:
        file: Local env file path (resolved by the loader)
        values: Parsed key/value pairs from the env file
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    file: str | None = Field(default=None, description="Local env file path")
    values: dict[str, str] = Field(default_factory=dict)


class DatabaseConfig(BaseModel):
    """Optional database provisioned on the host."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(default=False)
    type: DatabaseType = Field(default=DatabaseType.MYSQL)
    name: str | None = Field(default=None)
    user: str | None = Field(default=None)
    password: str | None = Field(default=None)

    @model_validator(mode="after")
    def validate_enabled(self) -> DatabaseConfig:
        """Require name, user and password when enabled."""
        if self.enabled:
            missing = [
                field
                for field in ("name", "user", "password")
                if not getattr(self, field)
            ]
            if missing:
                raise ValueError(
                    f"database.{', database.'.join(missing)} required when "
                    "database.enabled is true"
                )
            for field in ("name", "user"):
                value = getattr(self, field)
                if not re.match(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$", value):
                    raise ValueError(f"Invalid database {field}: {value}")
        return self


class RedisConfig(BaseModel):
    """Optional Redis cache provisioned on the host."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(default=False)
    password: str | None = Field(default=None)


class DeploymentConfig(BaseModel):
    """Main deployment configuration model.

    Immutable for the duration of a run. Derived properties expose the
    remote filesystem layout and Kubernetes object names so every phase
    computes them the same way.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: str = Field(default="1.0", description="Config file version")
    server: ServerConfig
    repository: RepositoryConfig
    application: ApplicationConfig
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    ingress: IngressConfig
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)

    # Naming

    @property
    def project_name(self) -> str:
        return self.application.name

    @property
    def app_name(self) -> str:
        return self.kubernetes.deployment.app_name or self.project_name

    @property
    def release_name(self) -> str:
        return self.kubernetes.deployment.release_name or self.project_name

    @property
    def image_ref(self) -> str:
        name = self.application.image.name or self.project_name
        return f"{name}:{self.application.image.tag}"

    @property
    def configmap_name(self) -> str:
        return f"{self.project_name}-env"

    @property
    def tls_secret_name(self) -> str:
        return f"{self.project_name}-tls"

    # Remote layout

    @property
    def project_root(self) -> str:
        return f"{DEPLOYMENTS_ROOT}/{self.project_name}"

    @property
    def keys_dir(self) -> str:
        return f"{self.project_root}/keys"

    @property
    def iac_dir(self) -> str:
        return f"{self.project_root}/iac"

    @property
    def configs_dir(self) -> str:
        return f"{self.project_root}/configs"

    @property
    def lock_path(self) -> str:
        return f"{self.project_root}/.lock"

    @property
    def deploy_key_path(self) -> str:
        return f"{self.keys_dir}/deploy_{self.project_name}"

    @property
    def source_path(self) -> str:
        directory = self.application.directory.rstrip("/")
        return f"{directory}/{self.project_name}"

    # Git

    @property
    def git_host_alias(self) -> str:
        """SSH ``Host`` alias bound to this project's deploy key."""
        return f"{self.repository.git_host}-{self.project_name}"

    @property
    def clone_url(self) -> str:
        """Repository URL rewritten onto the per-project SSH alias."""
        return f"git@{self.git_host_alias}:{self.repository.repo_path}.git"

    # Cluster

    @property
    def kubectl(self) -> str:
        """kubectl command prefix for the configured provider."""
        if self.kubernetes.provider == KubernetesProvider.MICROK8S:
            return "sudo microk8s kubectl"
        return "kubectl"

    @property
    def helm(self) -> str:
        """helm command prefix for the configured provider."""
        if self.kubernetes.provider == KubernetesProvider.MICROK8S:
            return "sudo microk8s helm3"
        return "helm"

    @property
    def tls_enabled(self) -> bool:
        return self.ingress.tls.enabled

    def secrets(self) -> list[str]:
        """Secret values that must never appear in logs."""
        values = [
            self.server.ssh.password,
            self.database.password,
            self.redis.password,
        ]
        return [value for value in values if value]
