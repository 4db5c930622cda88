"""Tests for the Kubernetes manifest constructors."""

from __future__ import annotations

from collections.abc import Callable

from ezdeploy.deploy.manifests import (
    build_configmap,
    build_deployment,
    build_ingress,
    build_manifests,
    build_service,
    ingress_annotations,
)
from ezdeploy.models.deployment import DeploymentConfig
from ezdeploy.models.desired_state import (
    ENV_CHECKSUM_ANNOTATION,
    IMAGE_ID_ANNOTATION,
    REVISION_ANNOTATION,
    DesiredState,
)


class TestManifests:
    """Tests for the per-object manifests."""

    def test_apply_order(self, config: DeploymentConfig) -> None:
        kinds = [m["kind"] for m in build_manifests(DesiredState.from_config(config))]
        assert kinds == ["ConfigMap", "Deployment", "Service", "Ingress"]

    def test_configmap_carries_env(self, config: DeploymentConfig) -> None:
        configmap = build_configmap(DesiredState.from_config(config))
        assert configmap["metadata"]["name"] == "shop-env"
        assert configmap["data"] == {"NODE_ENV": "production"}

    def test_deployment(self, config: DeploymentConfig) -> None:
        deployment = build_deployment(DesiredState.from_config(config))

        spec = deployment["spec"]
        container = spec["template"]["spec"]["containers"][0]
        assert spec["replicas"] == 2
        assert spec["selector"] == {"matchLabels": {"app": "shop"}}
        assert container["image"] == "shop:latest"
        assert container["imagePullPolicy"] == "Never"
        assert container["ports"] == [{"containerPort": 3000, "name": "http"}]
        assert container["envFrom"] == [{"configMapRef": {"name": "shop-env"}}]
        assert "resources" not in container

    def test_deployment_resources(
        self, make_config: Callable[..., DeploymentConfig]
    ) -> None:
        config = make_config(
            {"kubernetes": {"resources": {"limits": {"enabled": True}}}}
        )
        container = build_deployment(DesiredState.from_config(config))["spec"][
            "template"
        ]["spec"]["containers"][0]
        assert container["resources"]["limits"] == {"cpu": "500m", "memory": "512Mi"}

    def test_service_targets_container_port(self, config: DeploymentConfig) -> None:
        service = build_service(DesiredState.from_config(config))
        assert service["spec"]["selector"] == {"app": "shop"}
        assert service["spec"]["ports"][0]["port"] == 80
        assert service["spec"]["ports"][0]["targetPort"] == 3000

    def test_ingress_with_tls(self, config: DeploymentConfig) -> None:
        ingress = build_ingress(DesiredState.from_config(config))

        assert ingress["spec"]["ingressClassName"] == "nginx"
        assert ingress["spec"]["tls"] == [
            {"hosts": ["app.example.com"], "secretName": "shop-tls"}
        ]
        rule = ingress["spec"]["rules"][0]
        assert rule["host"] == "app.example.com"
        backend = rule["http"]["paths"][0]["backend"]["service"]
        assert backend == {"name": "shop", "port": {"number": 80}}
        annotations = ingress["metadata"]["annotations"]
        assert annotations["cert-manager.io/cluster-issuer"] == "letsencrypt-prod"

    def test_ingress_without_tls(
        self, make_config: Callable[..., DeploymentConfig]
    ) -> None:
        config = make_config(
            {
                "ingress": {
                    "hosts": ["app.example.com", "www.example.com"],
                    "tls": {"enabled": False},
                }
            }
        )
        state = DesiredState.from_config(config)
        ingress = build_ingress(state)

        assert "tls" not in ingress["spec"]
        assert [r["host"] for r in ingress["spec"]["rules"]] == [
            "app.example.com",
            "www.example.com",
        ]
        annotations = ingress_annotations(state)
        assert "cert-manager.io/cluster-issuer" not in annotations
        assert annotations["nginx.ingress.kubernetes.io/ssl-redirect"] == "false"

    def test_objects_share_labels(self, config: DeploymentConfig) -> None:
        for manifest in build_manifests(DesiredState.from_config(config)):
            assert manifest["metadata"]["labels"] == {"app": "shop", "project": "shop"}
            assert manifest["metadata"]["namespace"] == "default"


class TestPodTemplateAnnotations:
    """Tests for the annotations that roll pods on a new image or env."""

    def test_build_identity_is_annotated(self, config: DeploymentConfig) -> None:
        state = DesiredState.from_config(
            config, image_id="sha256:1111", revision="aaaaaaa"
        )
        annotations = build_deployment(state)["spec"]["template"]["metadata"][
            "annotations"
        ]
        assert annotations[IMAGE_ID_ANNOTATION] == "sha256:1111"
        assert annotations[REVISION_ANNOTATION] == "aaaaaaa"
        assert ENV_CHECKSUM_ANNOTATION in annotations

    def test_new_image_changes_pod_template(self, config: DeploymentConfig) -> None:
        first = build_deployment(
            DesiredState.from_config(config, image_id="sha256:1111")
        )
        second = build_deployment(
            DesiredState.from_config(config, image_id="sha256:2222")
        )
        assert first["spec"]["template"] != second["spec"]["template"]
        assert first["spec"]["selector"] == second["spec"]["selector"]

    def test_env_change_changes_checksum(
        self, make_config: Callable[..., DeploymentConfig]
    ) -> None:
        before = DesiredState.from_config(make_config())
        after = DesiredState.from_config(
            make_config({"environment": {"values": {"NODE_ENV": "staging"}}})
        )
        assert (
            before.pod_annotations[ENV_CHECKSUM_ANNOTATION]
            != after.pod_annotations[ENV_CHECKSUM_ANNOTATION]
        )

    def test_same_inputs_same_annotations(self, config: DeploymentConfig) -> None:
        assert DesiredState.from_config(
            config, image_id="sha256:1111"
        ) == DesiredState.from_config(config, image_id="sha256:1111")
