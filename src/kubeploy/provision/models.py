"""Workload, label and image metadata types used across the pipeline."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from kubeploy.errors import PreconditionError

from .constants import LABEL_PREFIX, SELECTOR_LABELS


@dataclass
class HealthCheck:
    """HTTP health check declared by an application image."""

    path: str = ""
    scheme: str = ""
    method: str = ""
    allowed_failures: int = 0


@dataclass
class ProcessSpec:
    """A process declared by an application (e.g. ``web``, ``worker``)."""

    name: str
    command: str


@dataclass
class ImageMetadata:
    """Metadata extracted from an application image.

    Attributes:
        processes: Declared processes, in declaration order
        exposed_port: Port exposed by the image, as ``"<port>/<proto>"``
        healthcheck: Optional HTTP health check for the web process
    """

    processes: list[ProcessSpec] = field(default_factory=list)
    exposed_port: str = ""
    healthcheck: HealthCheck | None = None

    @property
    def web_process_name(self) -> str:
        """The process that receives traffic: ``web``, or the only process."""
        names = [p.name for p in self.processes]
        if "web" in names:
            return "web"
        if len(names) == 1:
            return names[0]
        return ""

    def command_for(self, process: str) -> str:
        for spec in self.processes:
            if spec.name == process:
                return spec.command
        raise PreconditionError(
            f"process {process!r} is not declared by the image",
            details=f"Declared processes: {', '.join(p.name for p in self.processes) or 'none'}",
        )

    def target_port(self, default: int) -> int:
        """Port the application listens on, falling back to ``default``."""
        parts = self.exposed_port.split("/", 1)
        if len(parts) == 2 and parts[0].isdigit():
            return int(parts[0])
        return default


@dataclass
class App:
    """An application whose processes are deployed as workloads."""

    name: str
    pool: str = ""
    memory: int = 0
    envs: dict[str, str] = field(default_factory=dict)


@dataclass
class LabelSet:
    """Labels and annotations applied to the objects of one workload.

    Only ``SELECTOR_LABELS`` take part in selectors, so flags such as the
    headless-service marker never change which pods a service selects.
    """

    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def for_app(cls, app: App, process: str = "", *, is_build: bool = False) -> LabelSet:
        labels = {
            f"{LABEL_PREFIX}app-name": app.name,
            f"{LABEL_PREFIX}app-pool": app.pool,
            f"{LABEL_PREFIX}is-build": str(is_build).lower(),
            f"{LABEL_PREFIX}provisioner": "kubeploy",
        }
        if process:
            labels[f"{LABEL_PREFIX}app-process"] = process
        return cls(labels=labels)

    def copy(self) -> LabelSet:
        return LabelSet(labels=dict(self.labels), annotations=dict(self.annotations))

    def to_labels(self) -> dict[str, str]:
        return dict(self.labels)

    def to_annotations(self) -> dict[str, str]:
        return dict(self.annotations)

    def to_selector(self) -> dict[str, str]:
        return {
            f"{LABEL_PREFIX}{key}": self.labels[f"{LABEL_PREFIX}{key}"]
            for key in SELECTOR_LABELS
            if f"{LABEL_PREFIX}{key}" in self.labels
        }

    def set_is_headless_service(self) -> None:
        self.labels[f"{LABEL_PREFIX}is-headless-service"] = "true"

    def set_build_image(self, image: str) -> None:
        self.annotations[f"{LABEL_PREFIX}build-image"] = image


# =============================================================================
# Naming
# =============================================================================


def _dns_name(value: str) -> str:
    return re.sub(r"[^a-z0-9.-]", "-", value.lower()).strip("-")


def deployment_name(app: App, process: str) -> str:
    return _dns_name(f"{app.name}-{process}")


def headless_service_name(app: App, process: str) -> str:
    return f"{deployment_name(app, process)}-units"


def service_account_name(app: App) -> str:
    return _dns_name(f"app-{app.name}")


def build_pod_name(app: App, version: str = "") -> str:
    if version:
        return _dns_name(f"{app.name}-v{version}-build")
    return _dns_name(f"{app.name}-build")


def deploy_pod_name(app: App, version: str = "") -> str:
    if version:
        return _dns_name(f"{app.name}-v{version}-deploy")
    return _dns_name(f"{app.name}-deploy")


def registry_secret_name(registry: str) -> str:
    return _dns_name(f"registry-{registry}")


def pool_node_selector(pool: str) -> dict[str, str]:
    """Node selector pinning pods to the nodes of a pool."""
    if not pool:
        return {}
    return {f"{LABEL_PREFIX}pool": pool}


# =============================================================================
# Image references
# =============================================================================


def split_image_name(image: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` into ``(repo, tag)``, defaulting the tag to latest."""
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1 :]
    return image, "latest"


def image_domain(image: str) -> str:
    """Registry domain of an image reference: everything before the first slash."""
    return image.split("/", 1)[0]
