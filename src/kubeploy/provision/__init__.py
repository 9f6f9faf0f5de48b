"""Provisioning pipeline: sidecar builds, rollouts and service exposure.

Example:
    from kubeploy.provision import ServiceManager
    from kubeploy.infra.k8s import get_cluster_controller

    manager = ServiceManager(get_cluster_controller(), config, metadata)
    await manager.deploy_service(app, "web", labels, 3, "registry/app:v2")
"""

from kubeploy.errors import (
    AlreadyExistsError,
    AttachError,
    ClusterApiError,
    ConfigurationError,
    DeployTimeoutError,
    InspectError,
    MultiError,
    NotFoundError,
    PodFailedError,
    PodTimeoutError,
    PreconditionError,
    ProgressDeadlineError,
    ProvisionError,
    UnitStartupError,
)
from .manager import ServiceManager
from .models import App, HealthCheck, ImageMetadata, LabelSet, ProcessSpec
from .provisioner import Provisioner

__all__ = [
    # Entry points
    "Provisioner",
    "ServiceManager",
    # Models
    "App",
    "HealthCheck",
    "ImageMetadata",
    "LabelSet",
    "ProcessSpec",
    # Errors
    "AlreadyExistsError",
    "AttachError",
    "ClusterApiError",
    "ConfigurationError",
    "DeployTimeoutError",
    "InspectError",
    "MultiError",
    "NotFoundError",
    "PodFailedError",
    "PodTimeoutError",
    "PreconditionError",
    "ProgressDeadlineError",
    "ProvisionError",
    "UnitStartupError",
]
