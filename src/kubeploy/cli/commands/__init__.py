"""CLI command modules.

Commands:
- deploy / remove / labels: Manage the deployment of one process
- inspect / build: Run the sidecar pipelines
"""

from .images import build, inspect
from .services import deploy, labels, remove

__all__ = [
    "build",
    "deploy",
    "inspect",
    "labels",
    "remove",
]
