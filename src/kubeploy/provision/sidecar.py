"""Sidecar execution pipeline.

Builds and image inspections run in a two-container pod: a target container
running the source image and a privileged sidecar running the deploy agent
with access to the node's container engine. The two containers share a
scratch volume whose only purpose is a sentinel file. The target container
blocks until the sentinel appears, and the sidecar writes it on exit whether
its work succeeded or not, so the pod always terminates.

Pipeline per invocation:

    PENDING -> POD_CREATED -> CONTAINERS_RUNNING -> STREAMING
            -> POD_SUCCEEDED | POD_FAILED

Build pods are left behind so their logs stay readable; inspect pods are
deleted once the result has been captured.
"""

from __future__ import annotations

import asyncio
import io
import posixpath
import shlex
from collections.abc import Sequence
from enum import Enum
from typing import IO, Any

from loguru import logger

from kubeploy.errors import (
    AttachError,
    ClusterApiError,
    MultiError,
    PreconditionError,
    ProvisionError,
)
from kubeploy.infra.k8s import (
    ClusterController,
    EventWatch,
    format_event_message,
    watch_events,
)
from kubeploy.runtime.config import ProvisionerConfig

from .constants import SIDECAR
from .metadata import InspectResult
from .models import (
    App,
    LabelSet,
    build_pod_name,
    deploy_pod_name,
    pool_node_selector,
    split_image_name,
)
from .output import DeployOutput
from .pods import wait_for_pod, wait_for_pod_containers_running
from .registry import RegistryProvisioner, ensure_service_account


class SidecarState(Enum):
    PENDING = "pending"
    POD_CREATED = "pod-created"
    CONTAINERS_RUNNING = "containers-running"
    STREAMING = "streaming"
    POD_SUCCEEDED = "pod-succeeded"
    POD_FAILED = "pod-failed"


class SentinelSignal:
    """Two-state (not-done/done) signal between the containers of a pod.

    The signal is a file named ``file_name`` on a volume mounted at
    ``mount_path`` in both containers. ``wait_command`` blocks until it
    exists; ``guarded`` wraps a script so the file is written on every exit
    of that script.
    """

    def __init__(
        self,
        mount_path: str = SIDECAR.SIGNAL_MOUNT_PATH,
        file_name: str = SIDECAR.SIGNAL_FILE_NAME,
        *,
        volume_name: str = SIDECAR.SIGNAL_VOLUME,
        poll_seconds: int = SIDECAR.SIGNAL_POLL_SECONDS,
    ) -> None:
        self.mount_path = mount_path
        self.path = posixpath.join(mount_path, file_name)
        self.volume_name = volume_name
        self.poll_seconds = poll_seconds

    def volume(self) -> dict[str, Any]:
        return {"name": self.volume_name, "emptyDir": {}}

    def volume_mount(self) -> dict[str, str]:
        return {"name": self.volume_name, "mountPath": self.mount_path}

    def wait_command(self) -> list[str]:
        return [
            SIDECAR.SHELL,
            "-ec",
            f"while [ ! -f {self.path} ]; do sleep {self.poll_seconds}; done",
        ]

    def guarded(self, script: str) -> list[str]:
        return [
            "sh",
            "-ec",
            "\n".join(
                [
                    f"end() {{ touch {self.path}; }}",
                    "trap end EXIT",
                    script,
                ]
            ),
        ]


# =============================================================================
# Commands
# =============================================================================


def archive_build_commands(archive_url: str) -> list[str]:
    """Commands that download, extract and build an application archive."""
    script = " && ".join(
        [
            f"curl -sSL -o {SIDECAR.ARCHIVE_DOWNLOAD_PATH} {shlex.quote(archive_url)}",
            f"mkdir -p {SIDECAR.APP_DIR}",
            f"tar -xzf {SIDECAR.ARCHIVE_DOWNLOAD_PATH} -C {SIDECAR.APP_DIR}",
            f"{SIDECAR.AGENT_COMMAND} build",
        ]
    )
    return [SIDECAR.SHELL, SIDECAR.SHELL_FLAG, script]


def deploy_commands() -> list[str]:
    """Commands that deploy an already built image through the agent."""
    return [SIDECAR.SHELL, SIDECAR.SHELL_FLAG, f"{SIDECAR.AGENT_COMMAND} deploy"]


def with_latest_alias(images: Sequence[str]) -> list[str]:
    """Append ``<repo>:latest`` when the first image is not tagged latest."""
    result = list(images)
    repository, tag = split_image_name(result[0])
    if tag != "latest":
        result.append(f"{repository}:latest")
    return result


def _env_list(env: dict[str, str]) -> list[dict[str, str]]:
    return [{"name": name, "value": value} for name, value in env.items()]


def build_sidecar_pod(
    *,
    name: str,
    namespace: str,
    labels: LabelSet,
    source_image: str,
    sidecar_name: str,
    sidecar_image: str,
    sidecar_env: dict[str, str],
    sidecar_script: str,
    service_account: str,
    pull_secrets: list[dict[str, str]],
    node_selector: dict[str, str],
    target_env: dict[str, str] | None = None,
    run_as_user: int | None = None,
    signal: SentinelSignal | None = None,
) -> dict[str, Any]:
    """Compose the manifest of a two-container sidecar pod.

    The target container is named after the pod and runs ``source_image``
    until the sentinel appears. The sidecar runs ``sidecar_script`` under the
    sentinel guard with stdin open for a single attach.
    """
    signal = signal or SentinelSignal()
    target: dict[str, Any] = {
        "name": name,
        "image": source_image,
        "command": signal.wait_command(),
        "volumeMounts": [signal.volume_mount()],
    }
    if target_env:
        target["env"] = _env_list(target_env)
    if run_as_user is not None:
        target["securityContext"] = {"runAsUser": run_as_user}

    sidecar = {
        "name": sidecar_name,
        "image": sidecar_image,
        "stdin": True,
        "stdinOnce": True,
        "env": _env_list(sidecar_env),
        "command": signal.guarded(sidecar_script),
        "volumeMounts": [
            {"name": SIDECAR.DOCKER_SOCK_VOLUME, "mountPath": SIDECAR.DOCKER_SOCK_PATH},
            signal.volume_mount(),
        ],
    }

    spec: dict[str, Any] = {
        "serviceAccountName": service_account,
        "restartPolicy": "Never",
        "volumes": [
            {
                "name": SIDECAR.DOCKER_SOCK_VOLUME,
                "hostPath": {"path": SIDECAR.DOCKER_SOCK_PATH},
            },
            signal.volume(),
        ],
        "containers": [target, sidecar],
    }
    if pull_secrets:
        spec["imagePullSecrets"] = pull_secrets
    if node_selector:
        spec["nodeSelector"] = node_selector

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels.to_labels(),
            "annotations": labels.to_annotations(),
        },
        "spec": spec,
    }


# =============================================================================
# Pipeline
# =============================================================================


class SidecarPipeline:
    """Runs one sidecar pod from creation to its terminal phase.

    Attributes:
        state: Current ``SidecarState``; ``POD_FAILED`` after any failure
    """

    def __init__(
        self,
        controller: ClusterController,
        config: ProvisionerConfig,
        output: DeployOutput | None = None,
    ) -> None:
        self.controller = controller
        self.config = config
        self.output = output or DeployOutput()
        self.registry = RegistryProvisioner(controller, config)
        self.state = SidecarState.PENDING

    @property
    def namespace(self) -> str:
        return self.config.namespace

    def _advance(self, pod_name: str, state: SidecarState) -> None:
        logger.debug(f"Sidecar pod {self.namespace}/{pod_name}: {state.value}")
        self.state = state

    async def run_build(
        self,
        app: App,
        *,
        pod_name: str,
        commands: Sequence[str],
        source_image: str,
        destination_images: Sequence[str],
        input_file: str,
        input_stream: IO[bytes] | None,
    ) -> None:
        """Run the build sidecar, streaming ``input_stream`` into ``input_file``.

        Raises:
            PreconditionError: If the commands or destinations are malformed
            PodTimeoutError: If the containers do not start or finish in time
            AttachError: If streaming the input fails
            PodFailedError: If the pod fails
        """
        if len(commands) != 3:
            raise PreconditionError(f"unexpected cmds list: {list(commands)!r}")
        if not destination_images:
            raise PreconditionError("no destination images provided")

        sidecar_image = self.config.build_sidecar_image
        service_account = await ensure_service_account(
            self.controller, self.namespace, app
        )
        pull_secrets = await self.registry.pull_secrets_for(source_image, sidecar_image)

        labels = LabelSet.for_app(app, is_build=True)
        labels.set_build_image(destination_images[0])
        user, password, domain = self.registry.registry_auth(destination_images[0])
        run_as_user = self.config.run_as_user
        manifest = build_sidecar_pod(
            name=pod_name,
            namespace=self.namespace,
            labels=labels,
            source_image=source_image,
            sidecar_name=SIDECAR.BUILD_SIDECAR_NAME,
            sidecar_image=sidecar_image,
            sidecar_env={
                "DEPLOYAGENT_RUN_AS_SIDECAR": "true",
                "DEPLOYAGENT_DESTINATION_IMAGES": ",".join(destination_images),
                "DEPLOYAGENT_INPUT_FILE": input_file,
                "DEPLOYAGENT_RUN_AS_USER": "" if run_as_user is None else str(run_as_user),
                "DEPLOYAGENT_REGISTRY_AUTH_USER": user,
                "DEPLOYAGENT_REGISTRY_AUTH_PASS": password,
                "DEPLOYAGENT_REGISTRY_ADDRESS": domain,
            },
            sidecar_script=(
                f"mkdir -p $(dirname {input_file}) && cat >{input_file} && "
                + " ".join(commands[2:])
            ),
            service_account=service_account,
            pull_secrets=pull_secrets,
            node_selector=pool_node_selector(app.pool),
            target_env=dict(app.envs),
            run_as_user=run_as_user,
        )

        await self.controller.create_pod(self.namespace, manifest)
        self._advance(pod_name, SidecarState.POD_CREATED)
        logger.info(f"Created build pod {self.namespace}/{pod_name}")

        watch = watch_events(
            self.controller,
            self.namespace,
            name=pod_name,
            timeout=self.config.watch_timeout,
        )
        drain: asyncio.Task[None] | None = None
        try:
            try:
                await watch.start()
                drain = asyncio.create_task(self._drain_events(watch))
            except ClusterApiError as e:
                logger.warning(f"Build events unavailable for {pod_name}: {e}")

            await wait_for_pod_containers_running(
                self.controller,
                self.namespace,
                pod_name,
                self.config.pod_running_timeout,
                poll_interval=self.config.poll_interval,
            )
            self._advance(pod_name, SidecarState.CONTAINERS_RUNNING)

            if input_stream is not None:
                self._advance(pod_name, SidecarState.STREAMING)
                with self.output.as_binary() as sink:
                    await self._attach(
                        pod_name,
                        SIDECAR.BUILD_SIDECAR_NAME,
                        stdin=input_stream,
                        stdout=sink,
                        stderr=sink,
                    )
                self.output.print(" ---> Cleaning up")

            await wait_for_pod(
                self.controller,
                self.namespace,
                pod_name,
                self.config.pod_ready_timeout,
                poll_interval=self.config.poll_interval,
            )
            self._advance(pod_name, SidecarState.POD_SUCCEEDED)
        except Exception:
            self._advance(pod_name, SidecarState.POD_FAILED)
            raise
        finally:
            await watch.stop()
            if drain is not None:
                await drain

    async def run_inspect(
        self,
        app: App,
        *,
        pod_name: str,
        source_image: str,
        destination_images: Sequence[str],
        stdout: IO[bytes],
        stderr: IO[bytes],
    ) -> None:
        """Run the inspect sidecar, capturing its output.

        The pod is deleted on every exit path once it has been created.

        Raises:
            PreconditionError: If no destination images are given
            MultiError: With every failure of waiting for and attaching to
                the containers
            PodFailedError: If the pod fails
        """
        if not destination_images:
            raise PreconditionError("no destination images provided")

        sidecar_image = self.config.inspect_sidecar_image
        service_account = await ensure_service_account(
            self.controller, self.namespace, app
        )
        pull_secrets = await self.registry.pull_secrets_for(source_image, sidecar_image)

        labels = LabelSet.for_app(app, is_build=True)
        labels.set_build_image(destination_images[0])
        user, password, domain = self.registry.registry_auth(destination_images[0])
        manifest = build_sidecar_pod(
            name=pod_name,
            namespace=self.namespace,
            labels=labels,
            source_image=source_image,
            sidecar_name=SIDECAR.INSPECT_SIDECAR_NAME,
            sidecar_image=sidecar_image,
            sidecar_env={
                "DEPLOYAGENT_RUN_AS_SIDECAR": "true",
                "DEPLOYAGENT_DESTINATION_IMAGES": ",".join(destination_images),
                "DEPLOYAGENT_SOURCE_IMAGE": source_image,
                "DEPLOYAGENT_REGISTRY_AUTH_USER": user,
                "DEPLOYAGENT_REGISTRY_AUTH_PASS": password,
                "DEPLOYAGENT_REGISTRY_ADDRESS": domain,
            },
            sidecar_script=f"cat >/dev/null && {SIDECAR.AGENT_COMMAND}",
            service_account=service_account,
            pull_secrets=pull_secrets,
            node_selector=pool_node_selector(app.pool),
        )

        await self.controller.create_pod(self.namespace, manifest)
        self._advance(pod_name, SidecarState.POD_CREATED)
        try:
            errors = MultiError()
            try:
                await wait_for_pod_containers_running(
                    self.controller,
                    self.namespace,
                    pod_name,
                    self.config.pod_running_timeout,
                    poll_interval=self.config.poll_interval,
                )
                self._advance(pod_name, SidecarState.CONTAINERS_RUNNING)
            except ProvisionError as e:
                errors.add(e)

            self._advance(pod_name, SidecarState.STREAMING)
            try:
                await self._attach(
                    pod_name,
                    SIDECAR.INSPECT_SIDECAR_NAME,
                    stdin=io.BytesIO(b"."),
                    stdout=stdout,
                    stderr=stderr,
                )
            except AttachError as e:
                errors.add(e)
            if errors:
                raise errors

            await wait_for_pod(
                self.controller,
                self.namespace,
                pod_name,
                self.config.pod_ready_timeout,
                poll_interval=self.config.poll_interval,
            )
            self._advance(pod_name, SidecarState.POD_SUCCEEDED)
        except Exception:
            self._advance(pod_name, SidecarState.POD_FAILED)
            raise
        finally:
            await self._cleanup_pod(pod_name)

    async def _attach(self, pod_name: str, container: str, **streams: Any) -> None:
        try:
            await self.controller.attach(self.namespace, pod_name, container, **streams)
        except AttachError as e:
            raise AttachError(
                f"error attaching to {pod_name}/{container}: {e.message}",
                details=e.details,
            ) from e

    async def _drain_events(self, watch: EventWatch) -> None:
        async for event in watch:
            self.output.print(f" ---> {format_event_message(event, True)}")

    async def _cleanup_pod(self, pod_name: str) -> None:
        try:
            await self.controller.delete_pod(self.namespace, pod_name)
        except ClusterApiError as e:
            logger.warning(f"Failed to delete pod {self.namespace}/{pod_name}: {e}")


# =============================================================================
# Variants
# =============================================================================


async def create_build_pod(
    controller: ClusterController,
    config: ProvisionerConfig,
    app: App,
    *,
    source_image: str,
    destination_images: Sequence[str],
    input_stream: IO[bytes] | None,
    output: DeployOutput | None = None,
    pod_name: str = "",
    commands: Sequence[str] | None = None,
) -> None:
    """Build an application archive into ``destination_images``.

    The archive read from ``input_stream`` is written to the build input file
    inside the sidecar. The pod is left in place afterwards.
    """
    if commands is None:
        commands = archive_build_commands(f"file://{SIDECAR.BUILD_INPUT_FILE}")
    pipeline = SidecarPipeline(controller, config, output)
    await pipeline.run_build(
        app,
        pod_name=pod_name or build_pod_name(app),
        commands=commands,
        source_image=source_image,
        destination_images=destination_images,
        input_file=SIDECAR.BUILD_INPUT_FILE,
        input_stream=input_stream,
    )


async def create_deploy_pod(
    controller: ClusterController,
    config: ProvisionerConfig,
    app: App,
    *,
    source_image: str,
    destination_images: Sequence[str],
    input_stream: IO[bytes] | None = None,
    input_file: str = SIDECAR.BUILD_INPUT_FILE,
    output: DeployOutput | None = None,
    pod_name: str = "",
) -> None:
    """Deploy a prebuilt source image through the agent.

    ``<repo>:latest`` is added to the destinations when the first one is not
    tagged latest.
    """
    if not destination_images:
        raise PreconditionError("no destination images provided")
    pipeline = SidecarPipeline(controller, config, output)
    await pipeline.run_build(
        app,
        pod_name=pod_name or deploy_pod_name(app),
        commands=deploy_commands(),
        source_image=source_image,
        destination_images=with_latest_alias(destination_images),
        input_file=input_file,
        input_stream=input_stream,
    )


async def run_inspect_sidecar(
    controller: ClusterController,
    config: ProvisionerConfig,
    app: App,
    *,
    source_image: str,
    destination_images: Sequence[str],
    stdout: IO[bytes],
    stderr: IO[bytes],
    pod_name: str = "",
) -> None:
    pipeline = SidecarPipeline(controller, config)
    await pipeline.run_inspect(
        app,
        pod_name=pod_name or deploy_pod_name(app),
        source_image=source_image,
        destination_images=destination_images,
        stdout=stdout,
        stderr=stderr,
    )


async def image_tag_and_push(
    controller: ClusterController,
    config: ProvisionerConfig,
    app: App,
    source_image: str,
    new_image: str,
) -> InspectResult:
    """Pull ``source_image``, push it as ``new_image`` and inspect it.

    Raises:
        ProvisionError: If the inspect pod fails, with its captured output
        InspectError: If the inspect output cannot be decoded
    """
    stdout = io.BytesIO()
    stderr = io.BytesIO()
    try:
        await run_inspect_sidecar(
            controller,
            config,
            app,
            source_image=source_image,
            destination_images=with_latest_alias([new_image]),
            stdout=stdout,
            stderr=stderr,
        )
    except ProvisionError as e:
        out = stdout.getvalue().decode("utf-8", errors="replace")
        err = stderr.getvalue().decode("utf-8", errors="replace")
        raise ProvisionError(
            f"unable to pull and tag image: {e.message}",
            details=f"stdout: {out!r}\nstderr: {err!r}",
        ) from e
    return InspectResult.decode(stdout.getvalue())
