from __future__ import annotations

import os

from cachetools.func import lru_cache  # type: ignore

from kubeploy.infra.k8s.controller import ClusterController

DEFAULT_NAMESPACE = "default"


@lru_cache(maxsize=1)
def get_cluster_controller() -> ClusterController:
    """Get an instance of the ClusterController.

    Honors $KUBECONFIG and $KUBEPLOY_CONTEXT when set.

    Returns:
        An instance of ClusterController
    """
    from kubeploy.infra.k8s.kr8s_controller import Kr8sController

    return Kr8sController(
        kubeconfig=os.environ.get("KUBECONFIG"),
        context=os.environ.get("KUBEPLOY_CONTEXT"),
    )


def get_namespace() -> str:
    """Get the target namespace from the environment or default."""
    return os.environ.get("KUBEPLOY_NAMESPACE", DEFAULT_NAMESPACE)
