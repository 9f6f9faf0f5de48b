"""Cluster infrastructure abstraction layer.

This module provides a clean abstraction over the cluster operations the
provisioning pipeline needs, backed by the kr8s library.

Example:
    from kubeploy.infra.k8s import get_cluster_controller, run_sync

    controller = get_cluster_controller()
    pods = run_sync(controller.list_pods("default", "app=myapp"))
"""

from .controller import (
    ClusterController,
    ClusterEvent,
    ContainerInfo,
    DeploymentCondition,
    DeploymentInfo,
    PodInfo,
    ReplicaSetInfo,
    selector_string,
)
from .events import EventWatch, format_event_message, is_deployment_event, watch_events
from .helpers import get_cluster_controller, get_namespace
from .utils import run_sync

__all__ = [
    # Controller classes
    "ClusterController",
    # Data classes
    "ClusterEvent",
    "ContainerInfo",
    "DeploymentCondition",
    "DeploymentInfo",
    "PodInfo",
    "ReplicaSetInfo",
    # Event watching
    "EventWatch",
    "format_event_message",
    "is_deployment_event",
    "watch_events",
    # Utilities
    "get_cluster_controller",
    "get_namespace",
    "run_sync",
    "selector_string",
]
