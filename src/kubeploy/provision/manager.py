"""Service manager: deploy, remove and describe application processes."""

from __future__ import annotations

from typing import IO

from loguru import logger

from kubeploy.errors import MultiError, NotFoundError, ProvisionError, UnitStartupError
from kubeploy.infra.k8s import ClusterController, DeploymentInfo
from kubeploy.runtime.config import ProvisionerConfig

from .metadata import ImageMetadataStore
from .models import App, LabelSet, deployment_name, headless_service_name
from .output import DeployOutput
from .registry import RegistryProvisioner, ensure_service_account
from .rollout import RolloutMonitor, build_deployment_manifest
from .services import expose_services


class ServiceManager:
    """Deploys application processes as Deployments with their Services.

    Progress is written to ``writer`` line by line as it happens. Without a
    writer the narration is discarded.
    """

    def __init__(
        self,
        controller: ClusterController,
        config: ProvisionerConfig,
        metadata: ImageMetadataStore,
        writer: IO[str] | None = None,
    ) -> None:
        self.controller = controller
        self.config = config
        self.metadata = metadata
        self.output = DeployOutput(writer)
        self.registry = RegistryProvisioner(controller, config)

    @property
    def namespace(self) -> str:
        return self.config.namespace

    async def deploy_service(
        self,
        app: App,
        process: str,
        labels: LabelSet | None,
        replicas: int,
        image: str,
    ) -> None:
        """Roll out ``image`` for one process and expose it.

        A failed rollout is rolled back to the previous revision. Services are
        only created once the rollout has converged.

        Raises:
            ConfigurationError: If the pool overcommit factor is invalid
            PreconditionError: If the image metadata is unusable
            UnitStartupError: If the rollout failed after the deployment was
                applied; carries the rollback failure too, if any
            ClusterApiError: If a cluster call outside the rollout fails
        """
        service_account = await ensure_service_account(
            self.controller, self.namespace, app
        )
        name = deployment_name(app, process)
        existing: DeploymentInfo | None
        try:
            existing = await self.controller.get_deployment(self.namespace, name)
        except NotFoundError:
            existing = None

        metadata = await self.metadata.get(image)
        process_labels = LabelSet.for_app(app, process)
        if labels is not None:
            process_labels.labels.update(labels.labels)
            process_labels.annotations.update(labels.annotations)
        pull_secrets = await self.registry.pull_secrets_for(image)
        manifest = build_deployment_manifest(
            app=app,
            process=process,
            image=image,
            replicas=replicas,
            labels=process_labels,
            metadata=metadata,
            config=self.config,
            service_account=service_account,
            pull_secrets=pull_secrets,
        )

        # Taken before the deployment changes so no rollout event is missed.
        resource_version = await self.controller.get_events_resource_version(
            self.namespace
        )
        monitor = RolloutMonitor(
            self.controller,
            self.config,
            self.output,
            manifest=manifest,
            existing=existing,
            process=process,
            resource_version=resource_version,
        )
        try:
            await monitor.run()
        except ProvisionError as e:
            if not monitor.applied:
                raise
            await self._rollback(name, e)

        await expose_services(
            self.controller,
            self.config,
            app,
            process,
            process_labels,
            metadata.target_port(self.config.web_default_port),
        )
        logger.info(f"Deployed {image} as {self.namespace}/{name} ({replicas} units)")

    async def _rollback(self, name: str, error: ProvisionError) -> None:
        self.output.print(f"\n**** ROLLING BACK AFTER FAILURE ****\n ---> {error} <---")
        rollback_error: ProvisionError | None = None
        try:
            await self.controller.rollback_deployment(self.namespace, name)
        except ProvisionError as e:
            rollback_error = e
            self.output.print(f"\n**** ERROR DURING ROLLBACK ****\n ---> {e} <---")
        raise UnitStartupError(error, rollback_error) from error

    async def remove_service(self, app: App, process: str) -> None:
        """Delete the deployment and both services of a process.

        Objects that do not exist are skipped.

        Raises:
            ClusterApiError: If exactly one deletion failed
            MultiError: If several deletions failed
        """
        name = deployment_name(app, process)
        errors = MultiError()
        try:
            await self.controller.delete_deployment(
                self.namespace, name, propagation="Foreground"
            )
        except NotFoundError:
            pass
        except ProvisionError as e:
            errors.add(e)

        for service in (name, headless_service_name(app, process)):
            try:
                await self.controller.delete_service(
                    self.namespace, service, propagation="Foreground"
                )
            except NotFoundError:
                pass
            except ProvisionError as e:
                errors.add(e)

        errors.raise_if_errors()
        logger.info(f"Removed {self.namespace}/{name}")

    async def current_labels(self, app: App, process: str) -> LabelSet | None:
        """Labels of the running pods of a process, or None if not deployed."""
        try:
            deployment = await self.controller.get_deployment(
                self.namespace, deployment_name(app, process)
            )
        except NotFoundError:
            return None
        return LabelSet(
            labels=dict(deployment.template_labels),
            annotations=dict(deployment.template_annotations),
        )
