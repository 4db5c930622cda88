"""Post-deploy validation of the live workload.

Hard checks (replicas, service, ingress, TLS secret reference) fail the run.
Certificate readiness and the HTTPS probe are advisory and only produce
warnings.
"""

from __future__ import annotations

import shlex
import time

from ezdeploy.deploy.kubectl import Kubectl
from ezdeploy.lib.errors import ValidationError
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import RetryPolicy, SleepFn, poll_until
from ezdeploy.models.deployment import DeploymentConfig
from ezdeploy.models.phase import ValidationReport, WorkloadStatus
from ezdeploy.remote.transport import Transport

logger = get_logger(__name__)

READY_POLICY = RetryPolicy(attempts=30, delay=5.0)
CERTIFICATE_POLICY = RetryPolicy(attempts=10, delay=3.0)
HTTPS_PROBE_TIMEOUT = 15


def certificate_ready(certificate: dict | None) -> bool:
    """Whether a cert-manager Certificate has condition Ready=True."""
    if not certificate:
        return False
    for condition in certificate.get("status", {}).get("conditions", []) or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


class DeploymentValidator:
    """Polls the cluster until the workload is ready, then checks TLS."""

    def __init__(
        self,
        transport: Transport,
        config: DeploymentConfig,
        *,
        kubectl: Kubectl | None = None,
        ready_policy: RetryPolicy = READY_POLICY,
        certificate_policy: RetryPolicy = CERTIFICATE_POLICY,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.transport = transport
        self.config = config
        self.kubectl = kubectl or Kubectl(transport, config.kubectl)
        self.ready_policy = ready_policy
        self.certificate_policy = certificate_policy
        self.sleep = sleep

    def wait_until_ready(self) -> WorkloadStatus:
        """Poll until replicas are ready and service and ingress exist.

        Raises:
            ValidationError: If the window elapses first
        """
        app = self.config.app_name
        outcome = poll_until(
            lambda: self.kubectl.workload_status(app),
            lambda status: not status.unmet_checks(),
            self.ready_policy,
            on_wait=lambda attempt, status: logger.info(
                f"Waiting for {app} ({attempt}/{self.ready_policy.attempts}): "
                + "; ".join(status.unmet_checks())
            ),
            sleep=self.sleep,
        )
        status = outcome.last_value
        assert isinstance(status, WorkloadStatus)
        if not outcome.satisfied:
            raise ValidationError(
                status.unmet_checks(),
                details=self.kubectl.describe_tail("deployment", app),
            )
        return status

    def check_pods(self, status: WorkloadStatus) -> list[str]:
        warnings = []
        for pod in status.pods:
            logger.info(f"Pod {pod.name}: {pod.phase}, {pod.restarts} restart(s)")
            if pod.oom_killed:
                warnings.append(
                    f"pod {pod.name} was OOMKilled; consider raising memory limits"
                )
        return warnings

    def check_certificate(self) -> bool:
        outcome = poll_until(
            lambda: self.kubectl.get_json("certificate", self.config.tls_secret_name),
            certificate_ready,
            self.certificate_policy,
            sleep=self.sleep,
        )
        return outcome.satisfied

    def probe_https(self) -> bool:
        host = self.config.ingress.hosts[0]
        resolve = shlex.quote(f"{host}:443:{self.config.server.ip}")
        url = shlex.quote(f"https://{host}/")
        result = self.transport.run(
            f"curl -ksS -o /dev/null -w '%{{http_code}}' --max-time "
            f"{HTTPS_PROBE_TIMEOUT} --resolve {resolve} {url}",
            check=False,
        )
        code = result.stdout.strip()
        logger.debug(f"HTTPS probe {host} -> {code or result.stderr.strip()}")
        return result.ok and code.isdigit() and int(code) < 500

    def validate(self) -> ValidationReport:
        """Run every check and return the report.

        Raises:
            ValidationError: If a hard check fails
        """
        status = self.wait_until_ready()
        report = ValidationReport(workload=status)
        report.warnings.extend(self.check_pods(status))

        if not self.config.tls_enabled:
            return report

        if status.ingress_tls_secret != self.config.tls_secret_name:
            raise ValidationError(
                [
                    f"ingress TLS secret is {status.ingress_tls_secret!r}, "
                    f"expected {self.config.tls_secret_name!r}"
                ]
            )

        report.certificate_ready = self.check_certificate()
        if not report.certificate_ready:
            report.warnings.append(
                f"certificate {self.config.tls_secret_name} is not Ready yet. "
                "Check DNS for "
                + ", ".join(self.config.ingress.hosts)
                + f" and run: {self.config.kubectl} describe certificate "
                f"{self.config.tls_secret_name}"
            )

        report.https_reachable = self.probe_https()
        if not report.https_reachable:
            report.warnings.append(
                f"https://{self.config.ingress.hosts[0]} did not respond yet"
            )
        return report
