"""Bounded waits on pod state and pod diagnostics."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

from loguru import logger

from kubeploy.errors import ClusterApiError, NotFoundError, PodFailedError, PodTimeoutError
from kubeploy.infra.k8s import ClusterController, PodInfo, selector_string


def _termination_reasons(pod: PodInfo) -> list[str]:
    reasons = []
    for container in pod.containers:
        if container.state != "terminated" or not container.exit_code:
            continue
        reasons.append(
            f"container {container.name!r} exited with {container.exit_code}"
            f" - reason: {container.reason!r} - message: {container.message!r}"
        )
    return reasons


async def pod_event_messages(
    controller: ClusterController, namespace: str, pod_name: str
) -> list[str]:
    """Best-effort ``reason - message`` lines from the events of one pod."""
    try:
        events = await controller.list_events(
            namespace,
            {"involvedObject.kind": "Pod", "involvedObject.name": pod_name},
        )
    except ClusterApiError as e:
        logger.debug(f"Could not list events for pod {pod_name}: {e}")
        return []
    return [f"{evt.reason} - {evt.message}" for evt in events if evt.message]


async def wait_for_pod_containers_running(
    controller: ClusterController,
    namespace: str,
    pod_name: str,
    timeout: float,
    *,
    poll_interval: float = 0.1,
) -> PodInfo:
    """Wait until every container of a pod is running.

    A pod that already finished successfully also satisfies the wait.

    Raises:
        PodFailedError: If the pod failed or a container exited non-zero
        PodTimeoutError: If the containers are not running within ``timeout``
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    while True:
        try:
            pod = await controller.get_pod(namespace, pod_name)
        except NotFoundError:
            pod = None
        if pod is not None:
            if pod.phase == "Succeeded":
                return pod
            reasons = _termination_reasons(pod)
            if pod.phase == "Failed" or reasons:
                raise PodFailedError(
                    f"unexpected termination of pod {pod_name!r}",
                    details="\n".join(reasons) or None,
                )
            if pod.phase != "Pending" and pod.all_containers_running:
                return pod
        elapsed = loop.time() - started
        if elapsed >= timeout:
            raise PodTimeoutError(
                pod_name,
                label="containers to start",
                elapsed=elapsed,
                messages=await pod_event_messages(controller, namespace, pod_name),
            )
        await asyncio.sleep(min(poll_interval, timeout - elapsed))


async def wait_for_pod(
    controller: ClusterController,
    namespace: str,
    pod_name: str,
    timeout: float,
    *,
    poll_interval: float = 0.1,
) -> PodInfo:
    """Wait until a pod reaches the Succeeded phase.

    Raises:
        PodFailedError: If the pod ends up Failed
        PodTimeoutError: If the pod does not finish within ``timeout``
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    while True:
        pod = await controller.get_pod(namespace, pod_name)
        if pod.phase == "Succeeded":
            return pod
        if pod.phase == "Failed":
            reasons = _termination_reasons(pod)
            reasons.extend(await pod_event_messages(controller, namespace, pod_name))
            raise PodFailedError(
                f'invalid pod phase "Failed" for pod {pod_name!r}',
                details="\n".join(reasons) or None,
            )
        elapsed = loop.time() - started
        if elapsed >= timeout:
            raise PodTimeoutError(
                pod_name,
                label="to finish",
                elapsed=elapsed,
                messages=await pod_event_messages(controller, namespace, pod_name),
            )
        await asyncio.sleep(min(poll_interval, timeout - elapsed))


async def not_ready_pod_events(
    controller: ClusterController, namespace: str, selector: Mapping[str, str]
) -> list[str]:
    """Describe why each not-ready pod matching ``selector`` is stuck.

    Returns one ``Pod <name>: <last event>`` line per not-ready pod.
    """
    pods = await controller.list_pods(namespace, selector_string(selector))
    messages = []
    for pod in pods:
        if pod.ready:
            continue
        events = await pod_event_messages(controller, namespace, pod.name)
        detail = events[-1] if events else f"phase {pod.phase}"
        messages.append(f"Pod {pod.name}: {detail}")
    return messages
