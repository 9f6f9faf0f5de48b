"""Kr8s-based implementation of ClusterController.

Uses the kr8s library for native async Kubernetes operations. Whole-object
replacement, event listing and the attach stream go through the lower level
``call_api`` / ``open_websocket`` helpers since kr8s objects only expose
patch semantics.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncGenerator, Iterator, Mapping
from typing import IO, Any

import httpx
import httpx_ws
import kr8s
from kr8s.asyncio.objects import (
    Deployment,
    Pod,
    ReplicaSet,
    Secret,
    Service,
    ServiceAccount,
)
from loguru import logger

from kubeploy.errors import (
    AlreadyExistsError,
    AttachError,
    ClusterApiError,
    NotFoundError,
)

from .controller import (
    ClusterController,
    ClusterEvent,
    DeploymentInfo,
    PodInfo,
    ReplicaSetInfo,
    previous_revision_template,
    selector_string,
)

# Channel numbers of the Kubernetes streaming protocol
STDIN_CHANNEL = 0
STDOUT_CHANNEL = 1
STDERR_CHANNEL = 2
ERROR_CHANNEL = 3
RESIZE_CHANNEL = 4
CLOSE_CHANNEL = 255

STREAM_PROTOCOLS = ("v5.channel.k8s.io", "v4.channel.k8s.io")
ATTACH_CHUNK_SIZE = 32 * 1024
TERMINAL_SIZE = {"Width": 1000, "Height": 1000}


def _status_code(error: kr8s.ServerError) -> int | None:
    response = getattr(error, "response", None)
    if response is not None:
        return response.status_code
    status = getattr(error, "status", None)
    if isinstance(status, Mapping):
        return status.get("code")
    return None


@contextlib.contextmanager
def _api_errors(kind: str, name: str, namespace: str) -> Iterator[None]:
    """Translate kr8s/httpx failures into provisioning errors."""
    try:
        yield
    except kr8s.NotFoundError as e:
        raise NotFoundError(
            str(e) or "not found", kind=kind, name=name, namespace=namespace
        ) from e
    except kr8s.ServerError as e:
        code = _status_code(e)
        if code == 404:
            raise NotFoundError(
                str(e), kind=kind, name=name, namespace=namespace
            ) from e
        if code == 409:
            raise AlreadyExistsError(
                str(e), kind=kind, name=name, namespace=namespace
            ) from e
        raise ClusterApiError(str(e), kind=kind, name=name, namespace=namespace) from e
    except httpx.HTTPError as e:
        raise ClusterApiError(str(e), kind=kind, name=name, namespace=namespace) from e


def _name_of(manifest: Mapping[str, Any]) -> str:
    return (manifest.get("metadata") or {}).get("name", "")


class _EventStream:
    """Events decoded from an open watch response.

    Owns the response through ``stack``; ``aclose()`` releases it even when
    iteration never started.
    """

    def __init__(
        self,
        stack: contextlib.AsyncExitStack,
        response: Any,
        namespace: str,
        selector: str,
    ) -> None:
        self._stack = stack
        self._lines = response.aiter_lines()
        self._namespace = namespace
        self._selector = selector
        self._done = False

    def __aiter__(self) -> _EventStream:
        return self

    async def __anext__(self) -> ClusterEvent:
        if self._done:
            raise StopAsyncIteration
        with _api_errors("EventWatch", self._selector, self._namespace):
            async for line in self._lines:
                if not line.strip():
                    continue
                event = json.loads(line)
                if event.get("type") == "ERROR":
                    logger.debug(f"Event watch returned error: {event.get('object')}")
                    break
                return ClusterEvent.from_raw(event.get("object") or {})
        await self.aclose()
        raise StopAsyncIteration

    async def aclose(self) -> None:
        self._done = True
        await self._stack.aclose()


class Kr8sController(ClusterController):
    """Cluster controller using the kr8s library.

    The kr8s API client is NOT cached on the instance because it is bound to
    the event loop that was running when it was created, and ``run_sync()``
    may run each call on a fresh loop.
    """

    def __init__(
        self, kubeconfig: str | None = None, context: str | None = None
    ) -> None:
        """Initialize the kr8s controller.

        Args:
            kubeconfig: Optional kubeconfig path (kr8s discovery otherwise)
            context: Optional kubeconfig context name
        """
        self.kubeconfig = kubeconfig
        self.context = context

    async def _get_api(self) -> Any:  # Returns kr8s._api.Api
        """Get the kr8s API client for the running event loop."""
        return await kr8s.asyncio.api(kubeconfig=self.kubeconfig, context=self.context)

    # =========================================================================
    # Identity & Credentials
    # =========================================================================

    async def create_service_account(
        self, namespace: str, manifest: dict[str, Any]
    ) -> None:
        api = await self._get_api()
        with _api_errors("ServiceAccount", _name_of(manifest), namespace):
            await ServiceAccount(manifest, namespace=namespace, api=api).create()

    async def create_secret(self, namespace: str, manifest: dict[str, Any]) -> None:
        api = await self._get_api()
        with _api_errors("Secret", _name_of(manifest), namespace):
            await Secret(manifest, namespace=namespace, api=api).create()

    async def update_secret(self, namespace: str, manifest: dict[str, Any]) -> None:
        await self._replace("v1", "secrets", "Secret", namespace, manifest)

    # =========================================================================
    # Pod Operations
    # =========================================================================

    async def create_pod(self, namespace: str, manifest: dict[str, Any]) -> None:
        api = await self._get_api()
        name = _name_of(manifest)
        with _api_errors("Pod", name, namespace):
            await Pod(manifest, namespace=namespace, api=api).create()
        logger.debug(f"Created pod {namespace}/{name}")

    async def get_pod(self, namespace: str, name: str) -> PodInfo:
        api = await self._get_api()
        with _api_errors("Pod", name, namespace):
            pod = await Pod.get(name, namespace=namespace, api=api)
        return PodInfo.from_raw(pod.raw)

    async def list_pods(self, namespace: str, label_selector: str) -> list[PodInfo]:
        api = await self._get_api()
        with _api_errors("Pod", label_selector, namespace):
            return [
                PodInfo.from_raw(pod.raw)
                async for pod in Pod.list(
                    namespace=namespace, label_selector=label_selector, api=api
                )
            ]

    async def delete_pod(self, namespace: str, name: str) -> None:
        api = await self._get_api()
        with _api_errors("Pod", name, namespace):
            pod = await Pod.get(name, namespace=namespace, api=api)
            await pod.delete()
        logger.debug(f"Deleted pod {namespace}/{name}")

    async def attach(
        self,
        namespace: str,
        pod: str,
        container: str,
        *,
        stdin: IO[bytes] | None,
        stdout: IO[bytes],
        stderr: IO[bytes] | None = None,
        tty: bool = False,
    ) -> None:
        api = await self._get_api()
        # Attaching stderr is only allowed if tty is false, otherwise the
        # attach call fails.
        params = {
            "container": container,
            "stdin": "true" if stdin is not None else "false",
            "stdout": "true",
            "stderr": "false" if tty else "true",
            "tty": "true" if tty else "false",
        }
        try:
            async with api.open_websocket(
                version="v1",
                url=f"pods/{pod}/attach",
                namespace=namespace,
                params=params,
                subprotocols=STREAM_PROTOCOLS,
            ) as ws:
                await self._stream(ws, stdin, stdout, stderr, tty)
        except AttachError:
            raise
        except (httpx.HTTPError, httpx_ws.HTTPXWSException, kr8s.ServerError) as e:
            raise AttachError(f"attach stream failed: {e}") from e

    async def _stream(
        self,
        ws: httpx_ws.AsyncWebSocketSession,
        stdin: IO[bytes] | None,
        stdout: IO[bytes],
        stderr: IO[bytes] | None,
        tty: bool,
    ) -> None:
        """Multiplex stdin/stdout/stderr over an open channel websocket."""
        if tty:
            await ws.send_bytes(
                bytes([RESIZE_CHANNEL]) + json.dumps(TERMINAL_SIZE).encode()
            )

        async def pump_stdin() -> None:
            if stdin is None:
                return
            while True:
                chunk = await asyncio.to_thread(stdin.read, ATTACH_CHUNK_SIZE)
                if not chunk:
                    break
                await ws.send_bytes(bytes([STDIN_CHANNEL]) + chunk)
            if ws.subprotocol == STREAM_PROTOCOLS[0]:
                await ws.send_bytes(bytes([CLOSE_CHANNEL, STDIN_CHANNEL]))
            else:
                logger.warning(
                    f"Attach stream negotiated {ws.subprotocol}, "
                    "which cannot signal stdin EOF"
                )

        writer = asyncio.create_task(pump_stdin())
        failure: str | None = None
        try:
            while True:
                try:
                    message = await ws.receive_bytes()
                except httpx_ws.WebSocketDisconnect:
                    break
                if not message:
                    continue
                channel, payload = message[0], message[1:]
                if channel == STDOUT_CHANNEL:
                    stdout.write(payload)
                elif channel == STDERR_CHANNEL and stderr is not None:
                    stderr.write(payload)
                elif channel == ERROR_CHANNEL and payload:
                    status = json.loads(payload)
                    if status.get("status") != "Success":
                        failure = status.get("message", "unknown stream failure")
        finally:
            if not writer.done():
                writer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await writer

        if not writer.cancelled() and writer.exception() is not None:
            raise AttachError(f"error writing stdin: {writer.exception()}")
        if failure:
            raise AttachError(failure)

    # =========================================================================
    # Deployment Operations
    # =========================================================================

    async def get_deployment(self, namespace: str, name: str) -> DeploymentInfo:
        api = await self._get_api()
        with _api_errors("Deployment", name, namespace):
            deployment = await Deployment.get(name, namespace=namespace, api=api)
        return DeploymentInfo.from_raw(deployment.raw)

    async def create_deployment(
        self, namespace: str, manifest: dict[str, Any]
    ) -> DeploymentInfo:
        api = await self._get_api()
        with _api_errors("Deployment", _name_of(manifest), namespace):
            deployment = Deployment(manifest, namespace=namespace, api=api)
            await deployment.create()
        return DeploymentInfo.from_raw(deployment.raw)

    async def update_deployment(
        self, namespace: str, manifest: dict[str, Any]
    ) -> DeploymentInfo:
        raw = await self._replace(
            "apps/v1", "deployments", "Deployment", namespace, manifest
        )
        return DeploymentInfo.from_raw(raw)

    async def delete_deployment(
        self, namespace: str, name: str, *, propagation: str = "Foreground"
    ) -> None:
        api = await self._get_api()
        with _api_errors("Deployment", name, namespace):
            deployment = await Deployment.get(name, namespace=namespace, api=api)
            await deployment.delete(propagation_policy=propagation)

    async def rollback_deployment(self, namespace: str, name: str) -> None:
        api = await self._get_api()
        with _api_errors("Deployment", name, namespace):
            deployment = await Deployment.get(name, namespace=namespace, api=api)
        info = DeploymentInfo.from_raw(deployment.raw)
        replicasets = await self.list_replicasets(
            namespace, selector_string(info.selector) or None
        )
        template = previous_revision_template(replicasets, name, info.revision)
        if template is None:
            raise ClusterApiError(
                "no previous revision to roll back to",
                kind="Deployment",
                name=name,
                namespace=namespace,
            )
        with _api_errors("Deployment", name, namespace):
            await deployment.patch(
                [{"op": "replace", "path": "/spec/template", "value": template}],
                type="json",
            )
        logger.info(f"Rolled back deployment {namespace}/{name} from revision {info.revision}")

    async def list_replicasets(
        self, namespace: str, label_selector: str | None = None
    ) -> list[ReplicaSetInfo]:
        api = await self._get_api()
        kwargs: dict[str, Any] = {"namespace": namespace, "api": api}
        if label_selector:
            kwargs["label_selector"] = label_selector
        with _api_errors("ReplicaSet", label_selector or "", namespace):
            return [ReplicaSetInfo.from_raw(rs.raw) async for rs in ReplicaSet.list(**kwargs)]

    # =========================================================================
    # Service Operations
    # =========================================================================

    async def create_service(self, namespace: str, manifest: dict[str, Any]) -> None:
        api = await self._get_api()
        with _api_errors("Service", _name_of(manifest), namespace):
            await Service(manifest, namespace=namespace, api=api).create()

    async def delete_service(
        self, namespace: str, name: str, *, propagation: str = "Foreground"
    ) -> None:
        api = await self._get_api()
        with _api_errors("Service", name, namespace):
            service = await Service.get(name, namespace=namespace, api=api)
            await service.delete(propagation_policy=propagation)

    # =========================================================================
    # Event Operations
    # =========================================================================

    async def get_events_resource_version(self, namespace: str) -> str:
        api = await self._get_api()
        with _api_errors("EventList", "", namespace):
            async with api.call_api(
                "GET", version="v1", url="events", namespace=namespace,
                params={"limit": 1},
            ) as response:
                data = response.json()
        return (data.get("metadata") or {}).get("resourceVersion", "")

    async def list_events(
        self, namespace: str, field_selector: Mapping[str, str]
    ) -> list[ClusterEvent]:
        api = await self._get_api()
        with _api_errors("EventList", "", namespace):
            async with api.call_api(
                "GET", version="v1", url="events", namespace=namespace,
                params={"fieldSelector": selector_string(field_selector)},
            ) as response:
                data = response.json()
        return [ClusterEvent.from_raw(item) for item in data.get("items") or []]

    async def open_event_watch(
        self,
        namespace: str,
        field_selector: Mapping[str, str],
        *,
        resource_version: str = "",
        timeout: float = 3600.0,
    ) -> AsyncGenerator[ClusterEvent, None]:
        selector = selector_string(field_selector)
        params: dict[str, Any] = {
            "watch": "true",
            "fieldSelector": selector,
            "timeoutSeconds": int(timeout),
        }
        if resource_version:
            params["resourceVersion"] = resource_version

        # The request is sent here so a refused connection or a bad status
        # is raised to the caller, not inside the consuming task.
        stack = contextlib.AsyncExitStack()
        try:
            with _api_errors("EventWatch", selector, namespace):
                api = await self._get_api()
                response = await stack.enter_async_context(
                    api.call_api(
                        "GET",
                        version="v1",
                        url="events",
                        namespace=namespace,
                        params=params,
                        stream=True,
                        timeout=httpx.Timeout(timeout, connect=30.0),
                    )
                )
        except BaseException:
            await stack.aclose()
            raise
        return _EventStream(stack, response, namespace, selector)  # type: ignore[return-value]

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _replace(
        self,
        version: str,
        resource: str,
        kind: str,
        namespace: str,
        manifest: dict[str, Any],
    ) -> dict[str, Any]:
        """Replace a whole object with PUT and return the stored object."""
        api = await self._get_api()
        name = _name_of(manifest)
        with _api_errors(kind, name, namespace):
            async with api.call_api(
                "PUT",
                version=version,
                url=f"{resource}/{name}",
                namespace=namespace,
                content=json.dumps(manifest),
            ) as response:
                stored: dict[str, Any] = response.json()
        return stored
