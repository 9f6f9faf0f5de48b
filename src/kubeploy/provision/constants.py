"""Provisioning constants.

This module centralizes the label conventions, container names, paths and
progress strings used by the sidecar pipeline and the rollout monitor.
"""

from __future__ import annotations

from dataclasses import dataclass

LABEL_PREFIX = "kubeploy.io/"

# Label keys (without prefix) that make up a workload selector
SELECTOR_LABELS: tuple[str, ...] = ("app-name", "app-process", "is-build")


@dataclass(frozen=True)
class SidecarConstants:
    """Names and paths shared by the two containers of a sidecar pod.

    All attributes are class-level and immutable.
    """

    # Host container engine socket
    DOCKER_SOCK_PATH: str = "/var/run/docker.sock"
    DOCKER_SOCK_VOLUME: str = "dockersock"

    # Readiness signal channel
    SIGNAL_VOLUME: str = "intercontainer"
    SIGNAL_MOUNT_PATH: str = "/tmp/intercontainer"
    SIGNAL_FILE_NAME: str = "done"
    SIGNAL_POLL_SECONDS: int = 5

    # Container names
    BUILD_SIDECAR_NAME: str = "committer-cont"
    INSPECT_SIDECAR_NAME: str = "inspect-cont"

    # Build input
    BUILD_INPUT_FILE: str = "/home/application/archive.tar.gz"
    ARCHIVE_DOWNLOAD_PATH: str = "/tmp/archive.tar.gz"
    APP_DIR: str = "/home/application/current"

    # Commands
    AGENT_COMMAND: str = "/bin/deploy-agent"
    SHELL: str = "/bin/sh"
    SHELL_FLAG: str = "-lc"


@dataclass(frozen=True)
class RolloutConstants:
    """Deployment rollout policy.

    All attributes are class-level and immutable.
    """

    MAX_SURGE: str = "100%"
    MAX_UNAVAILABLE: int = 0
    REVISION_HISTORY_LIMIT: int = 10
    PROGRESS_DEADLINE_REASON: str = "ProgressDeadlineExceeded"
    PROBE_PERIOD_SECONDS: int = 10
    PROBE_TIMEOUT_SECONDS: int = 5


SIDECAR = SidecarConstants()
ROLLOUT = RolloutConstants()
