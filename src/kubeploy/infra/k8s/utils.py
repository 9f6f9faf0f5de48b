"""Utility functions for the cluster infrastructure layer.

Provides helper functions for running async code in sync contexts.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a blocking sync context.

    This is useful for calling async ClusterController and provisioning
    methods from synchronous CLI commands.

    Args:
        coro: The coroutine to execute

    Returns:
        The result of the coroutine

    Example:
        from kubeploy.infra.k8s import get_cluster_controller, run_sync

        controller = get_cluster_controller()
        dep = run_sync(controller.get_deployment("default", "myapp-web"))
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop, create a new one
        return asyncio.run(coro)

    # We're inside an async context: run on a fresh loop in a worker thread
    # so the caller's loop is not blocked re-entrantly.
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(asyncio.run, coro)
        return future.result()
