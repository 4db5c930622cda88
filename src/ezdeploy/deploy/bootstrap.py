"""System bootstrap: idempotent installation of everything the host needs.

Each sub-step probes first and installs only when the probe fails, so a run
against a fully provisioned host performs no installs at all.
"""

from __future__ import annotations

import shlex
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ezdeploy.deploy.kubectl import Kubectl
from ezdeploy.deploy.package_manager import PackageManager
from ezdeploy.deploy.scripts import (
    BASE_PACKAGES,
    DOCKER_ENABLE_TEMPLATE,
    DOCKER_PACKAGES,
    DOCKER_REPO_TEMPLATE,
    HELM_REPO_TEMPLATE,
    MICROK8S_INSTALL_TEMPLATE,
    MYSQL_BIND_TEMPLATE,
    MYSQL_PROVISION_TEMPLATE,
    POSTGRES_PROVISION_TEMPLATE,
    PULUMI_INSTALL_TEMPLATE,
    REDIS_CONFIGURE_TEMPLATE,
    cluster_issuer_manifest,
    render,
)
from ezdeploy.lib.errors import DeploymentError, RemoteCommandError, ToolMissingError
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import RetryPolicy, SleepFn, poll_until, retry_call
from ezdeploy.models.deployment import (
    CLUSTER_ISSUER_NAME,
    ApplyStrategyType,
    DatabaseType,
    DeploymentConfig,
    KubernetesProvider,
)
from ezdeploy.remote.transport import Transport

logger = get_logger(__name__)

PULUMI_BIN = "$HOME/.pulumi/bin/pulumi"
METALLB_RANGE = "10.64.140.43-10.64.140.49"
MICROK8S_ADDONS: tuple[tuple[str, str], ...] = (
    ("dns", "dns"),
    ("hostpath-storage", "hostpath-storage"),
    ("cert-manager", "cert-manager"),
    ("metallb", f"metallb:{METALLB_RANGE}"),
    ("ingress", "ingress"),
)

DOCKER_READY_POLICY = RetryPolicy(attempts=10, delay=2.0)
SERVICE_READY_POLICY = RetryPolicy(attempts=15, delay=2.0)
ISSUER_APPLY_POLICY = RetryPolicy(attempts=10, delay=6.0)


@dataclass
class BootstrapContext:
    """Collaborators shared by every bootstrap step."""

    transport: Transport
    config: DeploymentConfig
    packages: PackageManager
    kubectl: Kubectl
    sleep: SleepFn = time.sleep


class BootstrapStep(ABC):
    """One probe-then-install unit of host provisioning."""

    name: str = "step"

    def __init__(self, ctx: BootstrapContext) -> None:
        self.ctx = ctx

    @property
    def transport(self) -> Transport:
        return self.ctx.transport

    def check(self, command: str, *, sudo: bool = False) -> bool:
        return self.transport.run(command, check=False, sudo=sudo).ok

    @abstractmethod
    def probe(self) -> bool:
        """Return True when the step is already satisfied."""

    @abstractmethod
    def install(self) -> None:
        """Bring the host into the state ``probe`` checks for."""

    def ensure(self) -> bool:
        """Install if needed; return True when an install ran."""
        try:
            satisfied = self.probe()
        except ToolMissingError as e:
            logger.debug(f"{self.name}: {e.message}")
            satisfied = False
        if satisfied:
            logger.debug(f"{self.name}: already satisfied")
            return False
        logger.info(f"{self.name}: installing")
        self.install()
        return True

    def wait_for(self, command: str, what: str, policy: RetryPolicy) -> None:
        outcome = poll_until(
            lambda: self.check(command, sudo=True),
            bool,
            policy,
            on_wait=lambda attempt, _: logger.info(
                f"Waiting for {what} ({attempt}/{policy.attempts})"
            ),
            sleep=self.ctx.sleep,
        )
        if not outcome.satisfied:
            raise DeploymentError(
                self.name, f"{what} not ready after {policy.window:.0f}s"
            )


class BaseToolsStep(BootstrapStep):
    name = "base-tools"

    def probe(self) -> bool:
        self._missing = self.ctx.packages.missing(*BASE_PACKAGES)
        return not self._missing

    def install(self) -> None:
        self.ctx.packages.install(*self._missing)


class GitStep(BootstrapStep):
    name = "git"

    def probe(self) -> bool:
        return self.check("command -v git")

    def install(self) -> None:
        self.ctx.packages.install("git")


class DockerStep(BootstrapStep):
    name = "docker"

    def probe(self) -> bool:
        if not self.check("command -v docker"):
            raise ToolMissingError("docker")
        return self.check("docker info >/dev/null 2>&1", sudo=True)

    def install(self) -> None:
        if not self.check("command -v docker"):
            self.ctx.packages.wait_for_package_manager()
            self.transport.run_script(
                DOCKER_REPO_TEMPLATE, sudo=True, label="docker-repo"
            )
            self.ctx.packages.update()
            self.ctx.packages.install(*DOCKER_PACKAGES)
        self.transport.run_script(
            render(DOCKER_ENABLE_TEMPLATE, user=self.ctx.config.server.user),
            sudo=True,
            label="docker-enable",
        )
        self.wait_for("docker info >/dev/null 2>&1", "Docker", DOCKER_READY_POLICY)


class MicroK8sStep(BootstrapStep):
    name = "microk8s"

    def probe(self) -> bool:
        if not self.check("command -v microk8s"):
            raise ToolMissingError("microk8s")
        return self.check("microk8s status --wait-ready --timeout 60", sudo=True)

    def install(self) -> None:
        if self.check("command -v microk8s"):
            self.transport.run("microk8s start", sudo=True)
            self.transport.run(
                "microk8s status --wait-ready --timeout 300", sudo=True, timeout=330
            )
            return
        self.transport.run_script(
            render(
                MICROK8S_INSTALL_TEMPLATE,
                user=self.ctx.config.server.user,
                timeout=300,
            ),
            sudo=True,
            timeout=900,
            label="microk8s-install",
        )


class MicroK8sAddonStep(BootstrapStep):
    """Enable one MicroK8s addon unless ``microk8s status -a`` shows it enabled."""

    def __init__(self, ctx: BootstrapContext, addon: str, spec: str) -> None:
        super().__init__(ctx)
        self.addon = addon
        self.spec = spec
        self.name = f"microk8s-addon-{addon}"

    def probe(self) -> bool:
        result = self.transport.run(
            f"microk8s status -a {shlex.quote(self.addon)}", check=False, sudo=True
        )
        return result.ok and result.stdout.strip() == "enabled"

    def install(self) -> None:
        self.transport.run(
            f"microk8s enable {shlex.quote(self.spec)}", sudo=True, timeout=600
        )


class KubectlStep(BootstrapStep):
    """kubeadm clusters are provisioned out of band; only kubectl is checked."""

    name = "kubectl"

    def probe(self) -> bool:
        return self.check("command -v kubectl") and self.check(
            "kubectl get nodes >/dev/null 2>&1"
        )

    def install(self) -> None:
        raise ToolMissingError(
            "kubectl",
            "kubectl is missing or cannot reach the cluster. The kubeadm "
            "provider expects an existing cluster with kubectl configured",
        )


class ClusterIssuerStep(BootstrapStep):
    name = "cluster-issuer"

    def probe(self) -> bool:
        return self.ctx.kubectl.exists("clusterissuer", CLUSTER_ISSUER_NAME)

    def install(self) -> None:
        email = self.ctx.config.ingress.tls.email or ""
        manifest = cluster_issuer_manifest(email)
        # cert-manager's webhook takes a while to accept resources after enable
        retry_call(
            lambda: self.ctx.kubectl.apply_manifest(manifest),
            ISSUER_APPLY_POLICY,
            retry_on=(RemoteCommandError,),
            sleep=self.ctx.sleep,
        )


class PulumiToolStep(BootstrapStep):
    name = "pulumi"

    def probe(self) -> bool:
        return self.check(f"test -x {PULUMI_BIN}") or self.check("command -v pulumi")

    def install(self) -> None:
        self.transport.run_script(
            PULUMI_INSTALL_TEMPLATE, timeout=600, label="pulumi-install"
        )


class HelmToolStep(BootstrapStep):
    name = "helm"

    def probe(self) -> bool:
        return self.check(f"{self.ctx.config.helm} version >/dev/null 2>&1")

    def install(self) -> None:
        if self.ctx.config.kubernetes.provider == KubernetesProvider.MICROK8S:
            self.transport.run("microk8s enable helm3", sudo=True, timeout=600)
            return
        self.ctx.packages.wait_for_package_manager()
        self.transport.run_script(HELM_REPO_TEMPLATE, sudo=True, label="helm-repo")
        self.ctx.packages.update()
        self.ctx.packages.install("helm")


@dataclass(frozen=True)
class DatabaseEngine:
    package: str
    service: str
    client: str
    ready_command: str


DATABASE_ENGINES: dict[DatabaseType, DatabaseEngine] = {
    DatabaseType.MYSQL: DatabaseEngine(
        "mysql-server", "mysql", "mysql", "mysql -e 'SELECT 1' >/dev/null 2>&1"
    ),
    DatabaseType.MARIADB: DatabaseEngine(
        "mariadb-server", "mariadb", "mysql", "mysql -e 'SELECT 1' >/dev/null 2>&1"
    ),
    DatabaseType.POSTGRES: DatabaseEngine(
        "postgresql",
        "postgresql",
        "psql",
        "sudo -u postgres psql -c 'SELECT 1' >/dev/null 2>&1",
    ),
}


class DatabaseEngineStep(BootstrapStep):
    name = "database-engine"

    @property
    def engine(self) -> DatabaseEngine:
        return DATABASE_ENGINES[self.ctx.config.database.type]

    def probe(self) -> bool:
        engine = self.engine
        return self.check(f"command -v {engine.client}") and self.check(
            f"systemctl is-active --quiet {engine.service}"
        )

    def install(self) -> None:
        engine = self.engine
        if not self.check(f"command -v {engine.client}"):
            self.ctx.packages.install(engine.package)
        self.transport.run(
            f"systemctl enable --now {engine.service}", sudo=True, timeout=120
        )
        self.wait_for(engine.ready_command, engine.service, SERVICE_READY_POLICY)


class DatabaseProvisionStep(BootstrapStep):
    """Create the application database and user when they do not exist."""

    name = "database-provision"

    def probe(self) -> bool:
        db = self.ctx.config.database
        if db.type == DatabaseType.POSTGRES:
            role = self.transport.run(
                "sudo -u postgres psql -tAc "
                + shlex.quote(f"SELECT 1 FROM pg_roles WHERE rolname='{db.user}'"),
                check=False,
                sudo=True,
            )
            database = self.transport.run(
                "sudo -u postgres psql -tAc "
                + shlex.quote(f"SELECT 1 FROM pg_database WHERE datname='{db.name}'"),
                check=False,
                sudo=True,
            )
            return role.stdout.strip() == "1" and database.stdout.strip() == "1"

        user = self.transport.run(
            "mysql -N -e "
            + shlex.quote(f"SELECT COUNT(*) FROM mysql.user WHERE user='{db.user}'"),
            check=False,
            sudo=True,
        )
        database = self.transport.run(
            "mysql -N -e " + shlex.quote(f"SHOW DATABASES LIKE '{db.name}'"),
            check=False,
            sudo=True,
        )
        user_count = user.stdout.strip()
        return (
            user.ok
            and user_count.isdigit()
            and int(user_count) > 0
            and database.stdout.strip() == db.name
        )

    def install(self) -> None:
        db = self.ctx.config.database
        context = {"name": db.name, "user": db.user, "password": db.password}
        if db.type == DatabaseType.POSTGRES:
            self.transport.run_script(
                render(POSTGRES_PROVISION_TEMPLATE, **context),
                sudo=True,
                label="postgres-provision",
            )
            return
        sql = render(MYSQL_PROVISION_TEMPLATE, **context)
        self.transport.run_script(
            f"mysql <<'EZDEPLOY_SQL_EOF'\n{sql}EZDEPLOY_SQL_EOF\n",
            sudo=True,
            label="mysql-provision",
        )
        service = DATABASE_ENGINES[db.type].service
        self.transport.run_script(
            render(MYSQL_BIND_TEMPLATE, service=service),
            sudo=True,
            label="mysql-bind",
        )


class RedisEngineStep(BootstrapStep):
    name = "redis-engine"

    def probe(self) -> bool:
        return self.check("command -v redis-server")

    def install(self) -> None:
        self.ctx.packages.install("redis-server")


class RedisConfigStep(BootstrapStep):
    name = "redis-config"

    def probe(self) -> bool:
        conf = "/etc/redis/redis.conf"
        checks = [
            f"grep -q '^bind 0.0.0.0' {conf}",
            f"grep -q '^protected-mode no' {conf}",
            "systemctl is-active --quiet redis-server",
        ]
        password = self.ctx.config.redis.password
        if password:
            checks.append(
                f"grep -qxF {shlex.quote('requirepass ' + password)} {conf}"
            )
        return all(self.check(command, sudo=True) for command in checks)

    def install(self) -> None:
        self.transport.run_script(
            render(REDIS_CONFIGURE_TEMPLATE, password=self.ctx.config.redis.password),
            sudo=True,
            label="redis-config",
        )
        self.wait_for("nc -z 127.0.0.1 6379", "Redis", SERVICE_READY_POLICY)


@dataclass
class BootstrapReport:
    """Which steps ran an install."""

    installed: list[str] = field(default_factory=list)
    satisfied: list[str] = field(default_factory=list)


class SystemBootstrap:
    """Builds and runs the ordered bootstrap steps for a configuration."""

    def __init__(
        self,
        transport: Transport,
        config: DeploymentConfig,
        *,
        packages: PackageManager | None = None,
        kubectl: Kubectl | None = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.ctx = BootstrapContext(
            transport=transport,
            config=config,
            packages=packages or PackageManager(transport, sleep=sleep),
            kubectl=kubectl or Kubectl(transport, config.kubectl),
            sleep=sleep,
        )

    def steps(self) -> list[BootstrapStep]:
        """Ordered steps for this configuration."""
        ctx = self.ctx
        config = ctx.config
        steps: list[BootstrapStep] = [
            BaseToolsStep(ctx),
            GitStep(ctx),
            DockerStep(ctx),
        ]
        if config.kubernetes.provider == KubernetesProvider.MICROK8S:
            steps.append(MicroK8sStep(ctx))
            steps.extend(
                MicroK8sAddonStep(ctx, addon, spec) for addon, spec in MICROK8S_ADDONS
            )
        else:
            steps.append(KubectlStep(ctx))
        if config.tls_enabled:
            steps.append(ClusterIssuerStep(ctx))
        if config.kubernetes.strategy == ApplyStrategyType.PULUMI:
            steps.append(PulumiToolStep(ctx))
        else:
            steps.append(HelmToolStep(ctx))
        if config.database.enabled:
            steps.extend([DatabaseEngineStep(ctx), DatabaseProvisionStep(ctx)])
        if config.redis.enabled:
            steps.extend([RedisEngineStep(ctx), RedisConfigStep(ctx)])
        return steps

    def run(self) -> BootstrapReport:
        report = BootstrapReport()
        for step in self.steps():
            if step.ensure():
                report.installed.append(step.name)
            else:
                report.satisfied.append(step.name)
        logger.info(
            f"Bootstrap complete: {len(report.installed)} installed, "
            f"{len(report.satisfied)} already satisfied"
        )
        return report
