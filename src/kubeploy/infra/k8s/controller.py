"""Abstract cluster controller interface.

Defines the contract for the cluster operations the provisioning pipeline
consumes. Reads return parsed dataclasses; writes take plain manifest dicts.
Implementations translate their client errors into ``NotFoundError``,
``AlreadyExistsError`` and ``ClusterApiError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Mapping
from dataclasses import dataclass, field
from typing import IO, Any

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"

# =============================================================================
# Data Types
# =============================================================================


@dataclass
class ContainerInfo:
    """State of one container inside a pod."""

    name: str
    state: str = "unknown"  # "running", "waiting", "terminated", "unknown"
    reason: str = ""
    message: str = ""
    exit_code: int | None = None

    @property
    def running(self) -> bool:
        return self.state == "running"

    @classmethod
    def from_status(cls, status: Mapping[str, Any]) -> ContainerInfo:
        state = status.get("state") or {}
        for key in ("running", "terminated", "waiting"):
            if key in state and state[key] is not None:
                detail = state[key] or {}
                return cls(
                    name=status.get("name", ""),
                    state=key,
                    reason=detail.get("reason", ""),
                    message=detail.get("message", ""),
                    exit_code=detail.get("exitCode"),
                )
        return cls(name=status.get("name", ""))


@dataclass
class PodInfo:
    """Information about a pod."""

    name: str
    phase: str = "Unknown"
    labels: dict[str, str] = field(default_factory=dict)
    containers: list[ContainerInfo] = field(default_factory=list)
    container_names: list[str] = field(default_factory=list)
    ready: bool = False

    @property
    def all_containers_running(self) -> bool:
        """True once every declared container reports a running state."""
        if not self.container_names:
            return False
        running = {c.name for c in self.containers if c.running}
        return all(name in running for name in self.container_names)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> PodInfo:
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}
        ready = any(
            c.get("type") == "Ready" and c.get("status") == "True"
            for c in status.get("conditions") or []
        )
        return cls(
            name=metadata.get("name", ""),
            phase=status.get("phase", "Unknown"),
            labels=dict(metadata.get("labels") or {}),
            containers=[
                ContainerInfo.from_status(cs)
                for cs in status.get("containerStatuses") or []
            ],
            container_names=[c.get("name", "") for c in spec.get("containers") or []],
            ready=ready,
        )


@dataclass
class DeploymentCondition:
    type: str
    status: str = ""
    reason: str = ""
    message: str = ""


@dataclass
class DeploymentInfo:
    """Spec and cluster-owned status of a Deployment."""

    name: str
    generation: int = 0
    observed_generation: int = 0
    spec_replicas: int = 0
    replicas: int = 0
    updated_replicas: int = 0
    unavailable_replicas: int = 0
    conditions: list[DeploymentCondition] = field(default_factory=list)
    selector: dict[str, str] = field(default_factory=dict)
    template_labels: dict[str, str] = field(default_factory=dict)
    template_annotations: dict[str, str] = field(default_factory=dict)
    revision: str = ""

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> DeploymentInfo:
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}
        template_meta = (spec.get("template") or {}).get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            generation=metadata.get("generation", 0) or 0,
            observed_generation=status.get("observedGeneration", 0) or 0,
            spec_replicas=spec.get("replicas", 0) or 0,
            replicas=status.get("replicas", 0) or 0,
            updated_replicas=status.get("updatedReplicas", 0) or 0,
            unavailable_replicas=status.get("unavailableReplicas", 0) or 0,
            conditions=[
                DeploymentCondition(
                    type=c.get("type", ""),
                    status=c.get("status", ""),
                    reason=c.get("reason", ""),
                    message=c.get("message", ""),
                )
                for c in status.get("conditions") or []
            ],
            selector=dict((spec.get("selector") or {}).get("matchLabels") or {}),
            template_labels=dict(template_meta.get("labels") or {}),
            template_annotations=dict(template_meta.get("annotations") or {}),
            revision=(metadata.get("annotations") or {}).get(REVISION_ANNOTATION, ""),
        )


@dataclass
class ReplicaSetInfo:
    """Information about a ReplicaSet owned by a Deployment."""

    name: str
    replicas: int = 0
    revision: str = ""
    owner_deployment: str | None = None
    pod_template_hash: str = ""
    template: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> ReplicaSetInfo:
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        owner_deployment = None
        for owner_ref in metadata.get("ownerReferences") or []:
            if owner_ref.get("kind") == "Deployment":
                owner_deployment = owner_ref.get("name")
                break
        return cls(
            name=metadata.get("name", ""),
            replicas=spec.get("replicas", 0) or 0,
            revision=(metadata.get("annotations") or {}).get(REVISION_ANNOTATION, ""),
            owner_deployment=owner_deployment,
            pod_template_hash=(metadata.get("labels") or {}).get(
                POD_TEMPLATE_HASH_LABEL, ""
            ),
            template=dict(spec.get("template") or {}),
        )


@dataclass
class ClusterEvent:
    """A cluster event about some involved object."""

    name: str
    message: str = ""
    reason: str = ""
    involved_name: str = ""
    field_path: str = ""
    source_component: str = ""
    source_host: str = ""

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> ClusterEvent:
        metadata = raw.get("metadata") or {}
        involved = raw.get("involvedObject") or {}
        source = raw.get("source") or {}
        return cls(
            name=metadata.get("name", ""),
            message=raw.get("message", ""),
            reason=raw.get("reason", ""),
            involved_name=involved.get("name", ""),
            field_path=involved.get("fieldPath", ""),
            source_component=source.get("component", ""),
            source_host=source.get("host", ""),
        )


# =============================================================================
# Helpers
# =============================================================================


def selector_string(selector: Mapping[str, str]) -> str:
    """Render a label/field selector mapping as ``k1=v1,k2=v2``."""
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def previous_revision_template(
    replicasets: list[ReplicaSetInfo],
    deployment_name: str,
    current_revision: str,
) -> dict[str, Any] | None:
    """Find the pod template to restore when undoing a rollout.

    Mirrors ``kubectl rollout undo``: pick the ReplicaSet with the highest
    revision below the current one and strip its pod-template-hash label.

    Returns:
        The pod template, or None if there is no earlier revision
    """
    try:
        current = int(current_revision) if current_revision else None
    except ValueError:
        current = None

    candidates: list[tuple[int, ReplicaSetInfo]] = []
    for rs in replicasets:
        if rs.owner_deployment != deployment_name or not rs.revision:
            continue
        try:
            revision = int(rs.revision)
        except ValueError:
            continue
        if current is not None and revision >= current:
            continue
        candidates.append((revision, rs))

    if not candidates:
        return None

    _, previous = max(candidates, key=lambda item: item[0])
    template = dict(previous.template)
    metadata = dict(template.get("metadata") or {})
    labels = dict(metadata.get("labels") or {})
    labels.pop(POD_TEMPLATE_HASH_LABEL, None)
    metadata["labels"] = labels
    template["metadata"] = metadata
    return template


# =============================================================================
# Abstract Controller
# =============================================================================


class ClusterController(ABC):
    """Abstract base class for cluster operations.

    All methods are async; use ``run_sync()`` to call from synchronous code.
    Every operation is scoped to the ``namespace`` it receives.
    """

    # =========================================================================
    # Identity & Credentials
    # =========================================================================

    @abstractmethod
    async def create_service_account(
        self, namespace: str, manifest: dict[str, Any]
    ) -> None:
        """Create a ServiceAccount.

        Raises:
            AlreadyExistsError: If it already exists
        """
        ...

    @abstractmethod
    async def create_secret(self, namespace: str, manifest: dict[str, Any]) -> None:
        """Create a Secret.

        Raises:
            AlreadyExistsError: If it already exists
        """
        ...

    @abstractmethod
    async def update_secret(self, namespace: str, manifest: dict[str, Any]) -> None:
        """Replace a Secret.

        Raises:
            NotFoundError: If the secret does not exist
        """
        ...

    # =========================================================================
    # Pod Operations
    # =========================================================================

    @abstractmethod
    async def create_pod(self, namespace: str, manifest: dict[str, Any]) -> None:
        """Create a pod from a manifest."""
        ...

    @abstractmethod
    async def get_pod(self, namespace: str, name: str) -> PodInfo:
        """Get a pod.

        Raises:
            NotFoundError: If the pod does not exist
        """
        ...

    @abstractmethod
    async def list_pods(self, namespace: str, label_selector: str) -> list[PodInfo]:
        """List pods matching a label selector."""
        ...

    @abstractmethod
    async def delete_pod(self, namespace: str, name: str) -> None:
        """Delete a pod.

        Raises:
            NotFoundError: If the pod does not exist
        """
        ...

    @abstractmethod
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
        """Attach to a running container and stream stdin/stdout/stderr.

        Reads ``stdin`` to EOF, then keeps copying output until the container
        closes the stream. Stderr is only attached when ``tty`` is False.

        Raises:
            AttachError: If the stream fails
        """
        ...

    # =========================================================================
    # Deployment Operations
    # =========================================================================

    @abstractmethod
    async def get_deployment(self, namespace: str, name: str) -> DeploymentInfo:
        """Get a deployment with its current status.

        Raises:
            NotFoundError: If the deployment does not exist
        """
        ...

    @abstractmethod
    async def create_deployment(
        self, namespace: str, manifest: dict[str, Any]
    ) -> DeploymentInfo:
        """Create a deployment and return the stored object."""
        ...

    @abstractmethod
    async def update_deployment(
        self, namespace: str, manifest: dict[str, Any]
    ) -> DeploymentInfo:
        """Replace a deployment and return the stored object."""
        ...

    @abstractmethod
    async def delete_deployment(
        self, namespace: str, name: str, *, propagation: str = "Foreground"
    ) -> None:
        """Delete a deployment.

        Raises:
            NotFoundError: If the deployment does not exist
        """
        ...

    @abstractmethod
    async def rollback_deployment(self, namespace: str, name: str) -> None:
        """Roll a deployment back to its previous revision.

        Raises:
            ClusterApiError: If there is no previous revision or the update fails
        """
        ...

    @abstractmethod
    async def list_replicasets(
        self, namespace: str, label_selector: str | None = None
    ) -> list[ReplicaSetInfo]:
        """List ReplicaSets, optionally filtered by label selector."""
        ...

    # =========================================================================
    # Service Operations
    # =========================================================================

    @abstractmethod
    async def create_service(self, namespace: str, manifest: dict[str, Any]) -> None:
        """Create a Service.

        Raises:
            AlreadyExistsError: If it already exists
        """
        ...

    @abstractmethod
    async def delete_service(
        self, namespace: str, name: str, *, propagation: str = "Foreground"
    ) -> None:
        """Delete a Service.

        Raises:
            NotFoundError: If the service does not exist
        """
        ...

    # =========================================================================
    # Event Operations
    # =========================================================================

    @abstractmethod
    async def get_events_resource_version(self, namespace: str) -> str:
        """Return the current resource version of the event list.

        Used as a resume token so a later watch misses nothing that happens
        after this call.
        """
        ...

    @abstractmethod
    async def list_events(
        self, namespace: str, field_selector: Mapping[str, str]
    ) -> list[ClusterEvent]:
        """List events matching a field selector."""
        ...

    @abstractmethod
    async def open_event_watch(
        self,
        namespace: str,
        field_selector: Mapping[str, str],
        *,
        resource_version: str = "",
        timeout: float = 3600.0,
    ) -> AsyncGenerator[ClusterEvent, None]:
        """Open a new watch connection over events.

        The watch request is sent before this returns, as its own streaming
        request with ``timeout`` as its idle timeout. It shares the
        authenticated client used for other calls.

        Returns:
            An async iterator yielding events until the server closes the
            stream or the caller calls ``aclose()``

        Raises:
            ClusterApiError: If the request is refused or cannot be sent
        """
        ...
