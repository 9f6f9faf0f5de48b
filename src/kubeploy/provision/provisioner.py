"""High-level build and deploy entry points."""

from __future__ import annotations

from collections.abc import Mapping
from typing import IO

from loguru import logger

from kubeploy.errors import PreconditionError
from kubeploy.infra.k8s import ClusterController
from kubeploy.runtime.config import ProvisionerConfig

from .manager import ServiceManager
from .metadata import ImageMetadataStore, InMemoryImageMetadataStore
from .models import App, ImageMetadata
from .output import DeployOutput
from .sidecar import create_build_pod, image_tag_and_push


class Provisioner:
    """Builds application images and deploys them process by process.

    Example:
        provisioner = Provisioner(controller, config, writer=sys.stdout)
        await provisioner.deploy_image(app, "docker.io/acme/web:1", "registry.local/acme/web:v2")
    """

    def __init__(
        self,
        controller: ClusterController,
        config: ProvisionerConfig,
        metadata: ImageMetadataStore | None = None,
        writer: IO[str] | None = None,
    ) -> None:
        self.controller = controller
        self.config = config
        self.metadata = metadata or InMemoryImageMetadataStore()
        self.writer = writer
        self.manager = ServiceManager(controller, config, self.metadata, writer)

    async def build(
        self,
        app: App,
        archive: IO[bytes],
        *,
        source_image: str,
        destination_image: str,
    ) -> str:
        """Build an application archive into ``destination_image``.

        Returns:
            The built image reference
        """
        await create_build_pod(
            self.controller,
            self.config,
            app,
            source_image=source_image,
            destination_images=[destination_image],
            input_stream=archive,
            output=DeployOutput(self.writer),
        )
        logger.info(f"Built {destination_image} for {app.name}")
        return destination_image

    async def deploy_image(
        self,
        app: App,
        source_image: str,
        new_image: str,
        *,
        replicas: int | Mapping[str, int] = 1,
    ) -> ImageMetadata:
        """Retag ``source_image`` as ``new_image`` and deploy every process it declares.

        Args:
            app: Application to deploy
            source_image: Prebuilt image to deploy
            new_image: Image reference the application is deployed from
            replicas: Units per process, or a single count for every process

        Returns:
            The metadata extracted from the image

        Raises:
            PreconditionError: If the image declares no process
        """
        result = await image_tag_and_push(
            self.controller, self.config, app, source_image, new_image
        )
        metadata = result.to_metadata()
        if not metadata.processes:
            raise PreconditionError(
                f"image {source_image!r} declares no process",
                details="Add a Procfile to the image.",
            )
        await self.metadata.save(new_image, metadata)

        for process in metadata.processes:
            if isinstance(replicas, Mapping):
                count = replicas.get(process.name, 1)
            else:
                count = replicas
            await self.manager.deploy_service(app, process.name, None, count, new_image)
        return metadata
