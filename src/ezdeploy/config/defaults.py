"""Default configuration values for ezdeploy."""

from __future__ import annotations

from typing import Any

# Fields that must be supplied by the config file
REQUIRED_FIELDS: tuple[str, ...] = (
    "server.ip",
    "application.name",
    "repository.url",
)

DEFAULT_SSH_KEY_PATH = "~/.ssh/id_rsa"
DEFAULT_ENV_FILE = ".env"

# Defaults merged underneath the parsed config file
DEFAULT_CONFIG: dict[str, Any] = {
    "server": {
        "user": "root",
        "port": 22,
        "ssh": {"method": "key"},
    },
    "repository": {"branch": "main"},
    "application": {
        "directory": "/apps",
        "image": {"tag": "latest"},
    },
    "kubernetes": {
        "provider": "microk8s",
        "strategy": "pulumi",
        "deployment": {
            "port": 3000,
            "service_port": 80,
            "replicas": 1,
        },
        "resources": {
            "limits": {
                "enabled": False,
                "cpu": {"request": "250m", "limit": "500m"},
                "memory": {"request": "256Mi", "limit": "512Mi"},
            }
        },
    },
    "ingress": {"tls": {"enabled": True}},
    "database": {"enabled": False},
    "redis": {"enabled": False},
}

# Shell key/value config: variable name -> dotted config path
SHELL_KEY_MAP: dict[str, str] = {
    "SERVER_USER": "server.user",
    "SERVER_IP": "server.ip",
    "SERVER_PORT": "server.port",
    "SSH_AUTH_METHOD": "server.ssh.method",
    "SSH_PASSWORD": "server.ssh.password",
    "SSH_KEY_PATH": "server.ssh.key_path",
    "GIT_REPO_URL": "repository.url",
    "GIT_BRANCH": "repository.branch",
    "PROJECT_NAME": "application.name",
    "PROJECT_DIR": "application.directory",
    "K8S_PROVIDER": "kubernetes.provider",
    "DEPLOY_STRATEGY": "kubernetes.strategy",
    "CONTAINER_PORT": "kubernetes.deployment.port",
    "SERVICE_PORT": "kubernetes.deployment.service_port",
    "REPLICAS": "kubernetes.deployment.replicas",
    "RELEASE_NAME": "kubernetes.deployment.release_name",
    "APP_NAME": "kubernetes.deployment.app_name",
    "RESOURCE_LIMITS_ENABLED": "kubernetes.resources.limits.enabled",
    "CPU_REQUEST": "kubernetes.resources.limits.cpu.request",
    "CPU_LIMIT": "kubernetes.resources.limits.cpu.limit",
    "MEMORY_REQUEST": "kubernetes.resources.limits.memory.request",
    "MEMORY_LIMIT": "kubernetes.resources.limits.memory.limit",
    "INGRESS_HOSTS": "ingress.hosts",
    "TLS_ENABLED": "ingress.tls.enabled",
    "CERT_EMAIL": "ingress.tls.email",
    "ENV_FILE": "environment.file",
    "DB_ENABLED": "database.enabled",
    "DB_TYPE": "database.type",
    "DB_NAME": "database.name",
    "DB_USER": "database.user",
    "DB_PASSWORD": "database.password",
    "REDIS_ENABLED": "redis.enabled",
    "REDIS_PASSWORD": "redis.password",
}
