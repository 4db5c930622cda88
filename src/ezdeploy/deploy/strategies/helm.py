"""Helm apply strategy.

A small chart is generated on the fly: ``values.yaml`` carries the desired
state and a single template renders the ConfigMap, Deployment, Service and
Ingress. Every apply uninstalls the previous release and installs fresh.
"""

from __future__ import annotations

import posixpath
import shlex
from typing import Any

import yaml

from ezdeploy.deploy.manifests import INGRESS_CLASS, ingress_annotations
from ezdeploy.deploy.strategies.base import (
    ApplyOutcome,
    ApplyStatus,
    BaseApplyStrategy,
)
from ezdeploy.lib.errors import RemoteCommandError, ResourceConflictError
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import RetryPolicy, poll_until
from ezdeploy.models.desired_state import DesiredState
from ezdeploy.remote.transport import CommandResult

logger = get_logger(__name__)

RELEASE_GONE_POLICY = RetryPolicy(attempts=12, delay=5.0)

CHART_API_VERSION = "v2"

WORKLOAD_TEMPLATE = """\
{{- $labels := dict "app" .Values.appName "project" .Values.project -}}
apiVersion: v1
kind: ConfigMap
metadata:
  name: {{ .Values.configMapName }}
  labels:
    {{- toYaml $labels | nindent 4 }}
    app.kubernetes.io/instance: {{ .Release.Name }}
data:
  {{- range $key, $value := .Values.env }}
  {{ $key }}: {{ $value | quote }}
  {{- end }}
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {{ .Values.appName }}
  labels:
    {{- toYaml $labels | nindent 4 }}
    app.kubernetes.io/instance: {{ .Release.Name }}
spec:
  replicas: {{ .Values.replicaCount }}
  selector:
    matchLabels:
      app: {{ .Values.appName }}
  template:
    metadata:
      labels:
        {{- toYaml $labels | nindent 8 }}
        app.kubernetes.io/instance: {{ .Release.Name }}
      {{- with .Values.podAnnotations }}
      annotations:
        {{- toYaml . | nindent 8 }}
      {{- end }}
    spec:
      containers:
        - name: {{ .Values.appName }}
          image: {{ .Values.image.ref | quote }}
          imagePullPolicy: {{ .Values.image.pullPolicy }}
          ports:
            - name: http
              containerPort: {{ .Values.containerPort }}
          envFrom:
            - configMapRef:
                name: {{ .Values.configMapName }}
          {{- with .Values.resources }}
          resources:
            {{- toYaml . | nindent 12 }}
          {{- end }}
---
apiVersion: v1
kind: Service
metadata:
  name: {{ .Values.appName }}
  labels:
    {{- toYaml $labels | nindent 4 }}
    app.kubernetes.io/instance: {{ .Release.Name }}
spec:
  type: ClusterIP
  selector:
    app: {{ .Values.appName }}
  ports:
    - name: http
      port: {{ .Values.service.port }}
      targetPort: {{ .Values.containerPort }}
      protocol: TCP
---
apiVersion: networking.k8s.io/v1
kind: Ingress
metadata:
  name: {{ .Values.appName }}
  labels:
    {{- toYaml $labels | nindent 4 }}
    app.kubernetes.io/instance: {{ .Release.Name }}
  annotations:
    {{- toYaml .Values.ingress.annotations | nindent 4 }}
spec:
  ingressClassName: {{ .Values.ingress.className }}
  {{- if .Values.ingress.tls.enabled }}
  tls:
    - hosts:
        {{- toYaml .Values.ingress.hosts | nindent 8 }}
      secretName: {{ .Values.ingress.tls.secretName }}
  {{- end }}
  rules:
    {{- range .Values.ingress.hosts }}
    - host: {{ . | quote }}
      http:
        paths:
          - path: /
            pathType: Prefix
            backend:
              service:
                name: {{ $.Values.appName }}
                port:
                  number: {{ $.Values.service.port }}
    {{- end }}
"""


def chart_values(desired: DesiredState) -> dict[str, Any]:
    """values.yaml content for ``desired``."""
    return {
        "appName": desired.app_name,
        "project": desired.project,
        "replicaCount": desired.replicas,
        "image": {"ref": desired.image, "pullPolicy": "Never"},
        "containerPort": desired.container_port,
        "service": {"port": desired.service_port},
        "configMapName": desired.configmap_name,
        "env": dict(desired.env),
        "podAnnotations": dict(desired.pod_annotations),
        "resources": desired.resources.to_manifest() if desired.resources else {},
        "ingress": {
            "className": INGRESS_CLASS,
            "hosts": list(desired.hosts),
            "annotations": ingress_annotations(desired),
            "tls": {
                "enabled": desired.tls_enabled,
                "secretName": desired.tls_secret_name,
            },
        },
    }


class HelmStrategy(BaseApplyStrategy):
    """Applies the workload as a freshly installed Helm release."""

    name = "helm"

    @property
    def chart_dir(self) -> str:
        return posixpath.join(self.config.iac_dir, "chart")

    @property
    def release(self) -> str:
        return self.config.release_name

    def helm(self, args: str, *, check: bool = True) -> CommandResult:
        return self.transport.run(
            f"{self.config.helm} {args}", check=check, timeout=900
        )

    def render(self, desired: DesiredState) -> dict[str, str]:
        chart = {
            "apiVersion": CHART_API_VERSION,
            "name": desired.project,
            "description": f"Kubernetes workload for {desired.project}",
            "type": "application",
            "version": "0.1.0",
            "appVersion": desired.image.rpartition(":")[2] or "latest",
        }
        return {
            "Chart.yaml": yaml.safe_dump(chart, sort_keys=False),
            "values.yaml": yaml.safe_dump(chart_values(desired), sort_keys=False),
            "templates/workload.yaml": WORKLOAD_TEMPLATE,
        }

    def uninstall(self) -> bool:
        """Remove the previous release and its leftover pods.

        Returns:
            True if a release existed
        """
        release = shlex.quote(self.release)
        existed = self.helm(f"status {release}", check=False).ok
        if existed:
            logger.info(f"Uninstalling Helm release {self.release}")
            self.helm(f"uninstall {release}", check=False)

        self.kubectl.force_delete(
            "pods", selector=f"app.kubernetes.io/instance={self.release}"
        )
        outcome = poll_until(
            lambda: self.kubectl.exists("deployment", self.config.app_name),
            lambda exists: not exists,
            RELEASE_GONE_POLICY,
            sleep=self.sleep,
        )
        if not outcome.satisfied:
            self.kubectl.force_delete("deployment", self.config.app_name)
        return existed

    def apply(self, desired: DesiredState) -> ApplyOutcome:
        self.transport.run(f"rm -rf {shlex.quote(self.chart_dir)}")
        self.transport.upload_tree(self.chart_dir, self.render(desired))
        existed = self.uninstall()
        try:
            self.helm(
                f"install {shlex.quote(self.release)} {shlex.quote(self.chart_dir)} "
                f"--namespace {desired.namespace}"
            )
        except RemoteCommandError as e:
            raise ResourceConflictError(
                f"helm release {self.release}",
                f"install failed: {(e.stderr or e.stdout).strip()[-2000:]}",
            ) from e
        action = "reinstalled" if existed else "installed"
        return ApplyOutcome(
            status=ApplyStatus.APPLIED,
            message=f"Helm release {self.release} {action}",
        )
