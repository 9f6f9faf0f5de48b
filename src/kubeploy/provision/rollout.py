"""Deployment rollout monitor.

Applies a Deployment and follows it until the new replica set is fully
available and the old one drained, narrating progress as counters change.
Each loop iteration blocks on a single bounded wait that ends on the first of:
a poll tick, an event about one of the deployment's pods, the health-check
grace timer, or the overall progress timeout.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

from loguru import logger

from kubeploy.errors import (
    ClusterApiError,
    DeployTimeoutError,
    PreconditionError,
    ProgressDeadlineError,
)
from kubeploy.infra.k8s import (
    ClusterController,
    DeploymentInfo,
    EventWatch,
    format_event_message,
    is_deployment_event,
    selector_string,
    watch_events,
)
from kubeploy.infra.k8s.controller import POD_TEMPLATE_HASH_LABEL
from kubeploy.runtime.config import ProvisionerConfig

from .constants import ROLLOUT
from .models import (
    App,
    HealthCheck,
    ImageMetadata,
    LabelSet,
    deployment_name,
    headless_service_name,
    pool_node_selector,
)
from .output import DeployOutput
from .pods import not_ready_pod_events


class RolloutState(Enum):
    APPLYING = "applying"
    WAITING_GENERATION = "waiting-generation"
    WAITING_REPLICAS = "waiting-replicas"
    WAITING_HEALTH = "waiting-health"
    DONE = "done"
    FAILED = "failed"


def probe_from_healthcheck(hc: HealthCheck | None, port: int) -> dict[str, Any] | None:
    """Translate an image health check into an HTTP GET probe.

    Returns:
        The probe, or None when the health check has no path

    Raises:
        PreconditionError: If the health check uses a method other than GET
    """
    if hc is None or not hc.path:
        return None
    scheme = (hc.scheme or "http").upper()
    method = hc.method.upper()
    if method and method != "GET":
        raise PreconditionError(
            "healthcheck: only GET method is supported",
            details=f"The image declares a {method} health check on {hc.path!r}.",
        )
    probe: dict[str, Any] = {
        "httpGet": {"path": hc.path, "port": port, "scheme": scheme},
        "periodSeconds": ROLLOUT.PROBE_PERIOD_SECONDS,
        "timeoutSeconds": ROLLOUT.PROBE_TIMEOUT_SECONDS,
    }
    if hc.allowed_failures > 0:
        probe["failureThreshold"] = hc.allowed_failures
    return probe


def build_deployment_manifest(
    *,
    app: App,
    process: str,
    image: str,
    replicas: int,
    labels: LabelSet,
    metadata: ImageMetadata,
    config: ProvisionerConfig,
    service_account: str,
    pull_secrets: list[dict[str, str]],
) -> dict[str, Any]:
    """Compose the Deployment for one process of an application.

    Raises:
        ConfigurationError: If the pool overcommit factor is unset or not positive
        PreconditionError: If the process is unknown or the health check is invalid
    """
    overcommit = config.overcommit_for_pool(app.pool)
    name = deployment_name(app, process)
    port = metadata.target_port(config.web_default_port)
    command = metadata.command_for(process)

    probe = None
    if process == metadata.web_process_name:
        probe = probe_from_healthcheck(metadata.healthcheck, port)

    resources: dict[str, dict[str, str]] = {"limits": {}, "requests": {}}
    if app.memory:
        resources["limits"]["memory"] = str(app.memory)
        resources["requests"]["memory"] = str(int(app.memory / overcommit))

    container: dict[str, Any] = {
        "name": name,
        "image": image,
        "command": ["/bin/sh", "-lc", f"exec {command}"],
        "env": [{"name": k, "value": v} for k, v in app.envs.items()],
        "resources": resources,
        "ports": [{"containerPort": port}],
    }
    if probe is not None:
        container["readinessProbe"] = probe
        container["livenessProbe"] = probe

    pod_spec: dict[str, Any] = {
        "serviceAccountName": service_account,
        "restartPolicy": "Always",
        "subdomain": headless_service_name(app, process),
        "containers": [container],
    }
    if config.run_as_user is not None:
        pod_spec["securityContext"] = {"runAsUser": config.run_as_user}
    if pull_secrets:
        pod_spec["imagePullSecrets"] = pull_secrets
    node_selector = pool_node_selector(app.pool)
    if node_selector:
        pod_spec["nodeSelector"] = node_selector

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": config.namespace,
            "labels": labels.to_labels(),
            "annotations": labels.to_annotations(),
        },
        "spec": {
            "replicas": replicas,
            "revisionHistoryLimit": ROLLOUT.REVISION_HISTORY_LIMIT,
            "strategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {
                    "maxSurge": ROLLOUT.MAX_SURGE,
                    "maxUnavailable": ROLLOUT.MAX_UNAVAILABLE,
                },
            },
            "selector": {"matchLabels": labels.to_selector()},
            "template": {
                "metadata": {
                    "labels": labels.to_labels(),
                    "annotations": labels.to_annotations(),
                },
                "spec": pod_spec,
            },
        },
    }


class RolloutMonitor:
    """Applies one Deployment and follows its rollout to completion.

    Attributes:
        state: Current ``RolloutState``
        applied: True once the create or update call succeeded
    """

    def __init__(
        self,
        controller: ClusterController,
        config: ProvisionerConfig,
        output: DeployOutput,
        *,
        manifest: dict[str, Any],
        existing: DeploymentInfo | None,
        process: str,
        resource_version: str = "",
    ) -> None:
        self.controller = controller
        self.config = config
        self.output = output
        self.manifest = manifest
        self.existing = existing
        self.process = process
        self.resource_version = resource_version
        self.state = RolloutState.APPLYING
        self.applied = False
        self.selector: dict[str, str] = dict(manifest["spec"]["selector"]["matchLabels"])
        self._started = 0.0

    @property
    def namespace(self) -> str:
        return self.config.namespace

    @property
    def name(self) -> str:
        return self.manifest["metadata"]["name"]

    def _advance(self, state: RolloutState) -> None:
        logger.debug(f"Rollout {self.namespace}/{self.name}: {state.value}")
        self.state = state

    async def run(self) -> DeploymentInfo:
        """Apply the deployment and wait for the rollout to converge.

        Raises:
            ClusterApiError: If applying or reading the deployment fails
            ProgressDeadlineError: If the deployment exceeded its progress deadline
            DeployTimeoutError: If the rollout or health check timed out
        """
        try:
            deployment = await self._apply()
            deployment = await self._follow(deployment)
        except Exception:
            self._advance(RolloutState.FAILED)
            raise
        self._advance(RolloutState.DONE)
        return deployment

    async def _apply(self) -> DeploymentInfo:
        self._advance(RolloutState.APPLYING)
        if self.existing is None:
            deployment = await self.controller.create_deployment(
                self.namespace, self.manifest
            )
            logger.info(f"Created deployment {self.namespace}/{self.name}")
        else:
            deployment = await self.controller.update_deployment(
                self.namespace, self.manifest
            )
            logger.info(f"Updated deployment {self.namespace}/{self.name}")
        self.applied = True
        return deployment

    async def _follow(self, deployment: DeploymentInfo) -> DeploymentInfo:
        watch: EventWatch | None = watch_events(
            self.controller,
            self.namespace,
            resource_version=self.resource_version,
            timeout=self.config.watch_timeout,
        )
        try:
            try:
                await watch.start()
            except ClusterApiError as e:
                logger.warning(f"Rollout events unavailable for {self.name}: {e}")
                watch = None

            self.output.print(f"\n---- Updating units [{self.process}] ----")
            loop = asyncio.get_running_loop()
            self._started = loop.time()
            deadline = self._started + self.config.deployment_progress_timeout

            deployment = await self._wait_generation(deployment, deadline)
            deployment = await self._converge(deployment, watch, deadline)
        finally:
            if watch is not None:
                await watch.stop()
        self.output.print(" ---> Done updating units")
        return deployment

    async def _wait_generation(
        self, deployment: DeploymentInfo, deadline: float
    ) -> DeploymentInfo:
        self._advance(RolloutState.WAITING_GENERATION)
        loop = asyncio.get_running_loop()
        while deployment.observed_generation < deployment.generation:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DeployTimeoutError(
                    label="deployment generation",
                    elapsed=loop.time() - self._started,
                )
            await asyncio.sleep(min(self.config.poll_interval, remaining))
            deployment = await self.controller.get_deployment(
                self.namespace, deployment.name
            )
        return deployment

    async def _converge(
        self,
        deployment: DeploymentInfo,
        watch: EventWatch | None,
        deadline: float,
    ) -> DeploymentInfo:
        self._advance(RolloutState.WAITING_REPLICAS)
        loop = asyncio.get_running_loop()
        desired = deployment.spec_replicas
        old_updated = old_ready = old_pending = -1
        health_deadline: float | None = None

        while True:
            for condition in deployment.conditions:
                if condition.reason == ROLLOUT.PROGRESS_DEADLINE_REASON:
                    raise ProgressDeadlineError(
                        f"deployment {deployment.name!r} exceeded its progress deadline",
                        details=condition.message or None,
                    )

            updated = deployment.updated_replicas
            if updated != old_updated:
                self.output.print(f" ---> {updated} of {desired} new units created")

            if health_deadline is None and updated == desired:
                if await self._all_new_pods_running(deployment):
                    health_deadline = loop.time() + self.config.healthcheck_wait
                    self._advance(RolloutState.WAITING_HEALTH)
                    self.output.print(
                        f" ---> waiting healthcheck on {desired} created units"
                    )

            ready = updated - deployment.unavailable_replicas
            if ready != old_ready and ready >= 0:
                self.output.print(f" ---> {ready} of {desired} new units ready")

            pending = deployment.replicas - updated
            if pending != old_pending and pending > 0:
                self.output.print(f" ---> {pending} old units pending termination")

            old_updated, old_ready, old_pending = updated, ready, pending

            if ready == desired and deployment.replicas == desired:
                return deployment

            await self._wait_next(watch, health_deadline, deadline)
            deployment = await self.controller.get_deployment(
                self.namespace, deployment.name
            )

    async def _wait_next(
        self,
        watch: EventWatch | None,
        health_deadline: float | None,
        deadline: float,
    ) -> None:
        """Block until the next poll tick or relevant event.

        Raises:
            DeployTimeoutError: If the health-check timer or the overall
                timeout has fired
        """
        now = asyncio.get_running_loop().time()
        if health_deadline is not None and now >= health_deadline:
            raise await self._timeout_error("healthcheck")
        if now >= deadline:
            raise await self._timeout_error("full rollout")

        wait = min(self.config.poll_interval, deadline - now)
        if health_deadline is not None:
            wait = min(wait, health_deadline - now)

        if watch is None:
            await asyncio.sleep(wait)
            return
        event = await watch.next_event(wait)
        if event is not None and is_deployment_event(event, self.name):
            self.output.print(f"  ---> {format_event_message(event, False)}")

    async def _all_new_pods_running(self, deployment: DeploymentInfo) -> bool:
        """Whether every pod of the deployment's current revision is running."""
        selector: dict[str, str] = dict(deployment.selector or self.selector)
        try:
            replicasets = await self.controller.list_replicasets(
                self.namespace, selector_string(selector)
            )
            for rs in replicasets:
                if (
                    rs.owner_deployment == deployment.name
                    and rs.revision == deployment.revision
                    and rs.pod_template_hash
                ):
                    selector[POD_TEMPLATE_HASH_LABEL] = rs.pod_template_hash
                    break
            pods = await self.controller.list_pods(
                self.namespace, selector_string(selector)
            )
        except ClusterApiError as e:
            logger.debug(f"Could not check pods of {deployment.name}: {e}")
            return False
        return bool(pods) and all(
            pod.phase == "Running" and pod.all_containers_running for pod in pods
        )

    async def _timeout_error(self, label: str) -> DeployTimeoutError:
        elapsed = asyncio.get_running_loop().time() - self._started
        try:
            messages = await not_ready_pod_events(
                self.controller, self.namespace, self.selector
            )
        except ClusterApiError as e:
            logger.warning(f"Could not collect not-ready pods of {self.name}: {e}")
            messages = []
        for message in messages:
            self.output.print(f" ---> Pod not ready in time: {message}")
        return DeployTimeoutError(label=label, elapsed=elapsed, messages=messages)
