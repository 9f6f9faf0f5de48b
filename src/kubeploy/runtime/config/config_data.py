"""Provisioner configuration model."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from kubeploy.errors import ConfigurationError

DEFAULT_HEALTHCHECK_MAX_WAIT = 120


class ProvisionerConfig(BaseModel):
    """Settings consumed by the provisioning pipeline.

    Timeouts are expressed in seconds. A single instance is built at startup
    and handed to every component.
    """

    model_config = ConfigDict(extra="forbid")

    namespace: str = "default"

    # Private registry
    registry: str = ""
    registry_username: str = ""
    registry_password: str = ""

    # Sidecar tooling images
    build_sidecar_image: str = "tsuru/deploy-agent:0.2.8"
    inspect_sidecar_image: str = "tsuru/deploy-agent:0.2.8"

    # Timeouts
    pod_running_timeout: float = Field(default=600.0, gt=0)
    pod_ready_timeout: float = Field(default=60.0, gt=0)
    deployment_progress_timeout: float = Field(default=600.0, gt=0)
    healthcheck_max_wait: float | None = None
    watch_timeout: float = Field(default=3600.0, gt=0)
    poll_interval: float = Field(default=0.1, gt=0)

    # Resources
    overcommit_factor: float | None = None
    pool_overcommit: dict[str, float] = Field(default_factory=dict)

    run_as_user: int | None = None
    web_default_port: int = 8888

    @property
    def healthcheck_wait(self) -> float:
        """Maximum health-check grace period, defaulting to 120s when unset."""
        if not self.healthcheck_max_wait:
            return float(DEFAULT_HEALTHCHECK_MAX_WAIT)
        return float(self.healthcheck_max_wait)

    @property
    def has_registry_auth(self) -> bool:
        return bool(self.registry_username or self.registry_password)

    def overcommit_for_pool(self, pool: str) -> float:
        """Return the memory overcommit factor for a pool.

        Raises:
            ConfigurationError: If the factor is unset or not positive
        """
        factor = self.pool_overcommit.get(pool, self.overcommit_factor)
        if factor is None or factor <= 0:
            raise ConfigurationError(
                "misconfigured cluster overcommit factor",
                details=(
                    f"Pool {pool!r} resolved to overcommit factor {factor!r}.\n"
                    "Set 'overcommit_factor' (or a 'pool_overcommit' entry) "
                    "to a positive number."
                ),
            )
        return factor
