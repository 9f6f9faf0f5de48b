"""Service exposure for deployed processes."""

from __future__ import annotations

from typing import Any

from loguru import logger

from kubeploy.errors import AlreadyExistsError
from kubeploy.infra.k8s import ClusterController
from kubeploy.runtime.config import ProvisionerConfig

from .models import App, LabelSet, deployment_name, headless_service_name


def _service_manifest(
    name: str,
    namespace: str,
    labels: LabelSet,
    port: int,
    target_port: int,
    *,
    headless: bool,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "selector": labels.to_selector(),
        "ports": [{"protocol": "TCP", "port": port, "targetPort": target_port}],
    }
    if headless:
        spec["type"] = "ClusterIP"
        spec["clusterIP"] = "None"
    else:
        spec["type"] = "NodePort"
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels.to_labels(),
            "annotations": labels.to_annotations(),
        },
        "spec": spec,
    }


async def _create_if_absent(
    controller: ClusterController, namespace: str, manifest: dict[str, Any]
) -> bool:
    try:
        await controller.create_service(namespace, manifest)
    except AlreadyExistsError:
        return False
    logger.debug(f"Created service {namespace}/{manifest['metadata']['name']}")
    return True


async def expose_services(
    controller: ClusterController,
    config: ProvisionerConfig,
    app: App,
    process: str,
    labels: LabelSet,
    target_port: int,
) -> None:
    """Create the load-balanced and headless services of a process.

    The load-balanced service is a NodePort service named after the
    deployment; the headless one carries the ``-units`` suffix and the
    headless-service label. Services that already exist are left untouched,
    so calling this again with the same inputs succeeds.
    """
    namespace = config.namespace
    port = config.web_default_port

    await _create_if_absent(
        controller,
        namespace,
        _service_manifest(
            deployment_name(app, process),
            namespace,
            labels,
            port,
            target_port,
            headless=False,
        ),
    )

    headless_labels = labels.copy()
    headless_labels.set_is_headless_service()
    await _create_if_absent(
        controller,
        namespace,
        _service_manifest(
            headless_service_name(app, process),
            namespace,
            headless_labels,
            port,
            target_port,
            headless=True,
        ),
    )
