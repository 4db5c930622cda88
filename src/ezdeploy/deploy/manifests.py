"""Kubernetes manifest constructors shared by both apply strategies.

Every function returns a plain manifest dict for one object. The Pulumi
program embeds them as resource properties and the Helm values mirror the
same fields, so both strategies converge on identical objects.
"""

from __future__ import annotations

from typing import Any

from ezdeploy.models.desired_state import DesiredState

Manifest = dict[str, Any]

INGRESS_CLASS = "nginx"


def _metadata(state: DesiredState, name: str, **extra: Any) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": state.namespace,
        "labels": dict(state.labels),
    }
    metadata.update(extra)
    return metadata


def build_configmap(state: DesiredState) -> Manifest:
    """ConfigMap holding the env file values."""
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(state, state.configmap_name),
        "data": dict(state.env),
    }


def build_deployment(state: DesiredState) -> Manifest:
    """Deployment running the locally imported image."""
    container: dict[str, Any] = {
        "name": state.app_name,
        "image": state.image,
        "imagePullPolicy": "Never",
        "ports": [{"containerPort": state.container_port, "name": "http"}],
        "envFrom": [{"configMapRef": {"name": state.configmap_name}}],
    }
    if state.resources is not None:
        container["resources"] = state.resources.to_manifest()

    template_metadata: dict[str, Any] = {"labels": dict(state.labels)}
    if state.pod_annotations:
        template_metadata["annotations"] = dict(state.pod_annotations)

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(state, state.app_name),
        "spec": {
            "replicas": state.replicas,
            "selector": {"matchLabels": {"app": state.app_name}},
            "template": {
                "metadata": template_metadata,
                "spec": {"containers": [container]},
            },
        },
    }


def build_service(state: DesiredState) -> Manifest:
    """ClusterIP Service in front of the deployment."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(state, state.app_name),
        "spec": {
            "type": "ClusterIP",
            "selector": {"app": state.app_name},
            "ports": [
                {
                    "name": "http",
                    "port": state.service_port,
                    "targetPort": state.container_port,
                    "protocol": "TCP",
                }
            ],
        },
    }


def ingress_annotations(state: DesiredState) -> dict[str, str]:
    """Annotations for the nginx ingress, with cert-manager when TLS is on."""
    annotations = {
        "nginx.ingress.kubernetes.io/backend-protocol": "HTTP",
        "nginx.ingress.kubernetes.io/enable-gzip": "true",
    }
    if state.tls_enabled:
        annotations.update(
            {
                "cert-manager.io/cluster-issuer": state.cluster_issuer,
                "cert-manager.io/issue-temporary-certificate": "true",
                "acme.cert-manager.io/http01-edit-in-place": "true",
            }
        )
    else:
        annotations.update(
            {
                "nginx.ingress.kubernetes.io/ssl-redirect": "false",
                "nginx.ingress.kubernetes.io/force-ssl-redirect": "false",
            }
        )
    return annotations


def build_ingress(state: DesiredState) -> Manifest:
    """Ingress routing every host to the service."""
    rules = [
        {
            "host": host,
            "http": {
                "paths": [
                    {
                        "path": "/",
                        "pathType": "Prefix",
                        "backend": {
                            "service": {
                                "name": state.app_name,
                                "port": {"number": state.service_port},
                            }
                        },
                    }
                ]
            },
        }
        for host in state.hosts
    ]
    spec: dict[str, Any] = {"ingressClassName": INGRESS_CLASS, "rules": rules}
    if state.tls_enabled:
        spec["tls"] = [
            {"hosts": list(state.hosts), "secretName": state.tls_secret_name}
        ]

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": _metadata(
            state, state.app_name, annotations=ingress_annotations(state)
        ),
        "spec": spec,
    }


def build_manifests(state: DesiredState) -> list[Manifest]:
    """All objects for the workload, in apply order."""
    return [
        build_configmap(state),
        build_deployment(state),
        build_service(state),
        build_ingress(state),
    ]
