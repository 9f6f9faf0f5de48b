"""Workload identity and private registry credentials."""

from __future__ import annotations

import base64
import json
from typing import Any

from loguru import logger

from kubeploy.errors import AlreadyExistsError, NotFoundError
from kubeploy.infra.k8s import ClusterController
from kubeploy.runtime.config import ProvisionerConfig

from .models import (
    App,
    LabelSet,
    image_domain,
    registry_secret_name,
    service_account_name,
)

DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"
DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"


async def ensure_service_account(
    controller: ClusterController, namespace: str, app: App
) -> str:
    """Create the service account pods of ``app`` run as.

    An existing account counts as success.

    Returns:
        The service account name
    """
    name = service_account_name(app)
    manifest = {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": LabelSet.for_app(app).to_labels(),
        },
    }
    try:
        await controller.create_service_account(namespace, manifest)
        logger.debug(f"Created service account {namespace}/{name}")
    except AlreadyExistsError:
        pass
    return name


class RegistryProvisioner:
    """Manages the pull secret for the configured private registry."""

    def __init__(self, controller: ClusterController, config: ProvisionerConfig):
        self.controller = controller
        self.config = config

    @property
    def secret_name(self) -> str:
        return registry_secret_name(self.config.registry)

    def uses_registry(self, image: str) -> bool:
        return bool(self.config.registry) and image_domain(image) == self.config.registry

    async def pull_secrets_for(self, *images: str) -> list[dict[str, str]]:
        """Return the pull secret references needed to pull ``images``.

        Public images need none. When any image lives in the private registry
        and credentials are configured, the secret is written first.
        """
        if not any(self.uses_registry(image) for image in images):
            return []
        if not self.config.has_registry_auth:
            return []
        await self.ensure_auth_secret()
        return [{"name": self.secret_name}]

    async def ensure_auth_secret(self) -> None:
        """Write the registry credential secret (update, or create if missing)."""
        manifest = self._secret_manifest()
        namespace = self.config.namespace
        try:
            await self.controller.update_secret(namespace, manifest)
        except NotFoundError:
            await self.controller.create_secret(namespace, manifest)
            logger.debug(f"Created registry secret {namespace}/{self.secret_name}")

    def registry_auth(self, image: str) -> tuple[str, str, str]:
        """Return ``(username, password, domain)`` for pushing ``image``.

        All three are empty unless the image belongs to the private registry
        and credentials are configured.
        """
        if not self.uses_registry(image) or not self.config.has_registry_auth:
            return "", "", ""
        return (
            self.config.registry_username,
            self.config.registry_password,
            image_domain(image),
        )

    def _secret_manifest(self) -> dict[str, Any]:
        username = self.config.registry_username
        password = self.config.registry_password
        auth = base64.b64encode(f"{username}:{password}".encode()).decode()
        docker_config = {
            "auths": {
                self.config.registry: {
                    "username": username,
                    "password": password,
                    "auth": auth,
                }
            }
        }
        payload = base64.b64encode(json.dumps(docker_config).encode()).decode()
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": self.secret_name, "namespace": self.config.namespace},
            "type": DOCKER_CONFIG_JSON_TYPE,
            "data": {DOCKER_CONFIG_JSON_KEY: payload},
        }
