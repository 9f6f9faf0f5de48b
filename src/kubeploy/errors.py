"""Provisioning error types.

Every error carries a short ``message`` and optional ``details`` with recovery
or diagnostic information, so the CLI can print the message and render the
details in a panel.
"""

from __future__ import annotations

from collections.abc import Iterable


class ProvisionError(Exception):
    """Raised when a provisioning operation fails."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


class PreconditionError(ProvisionError):
    """A caller supplied arguments that can never succeed."""


class ConfigurationError(ProvisionError):
    """The provisioner configuration is invalid for the requested operation."""


class ClusterApiError(ProvisionError):
    """A cluster API call failed."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = "",
        name: str = "",
        namespace: str = "",
        details: str | None = None,
    ):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        if kind:
            target = f"{kind} {namespace}/{name}" if namespace else f"{kind} {name}"
            message = f"{target}: {message}"
        super().__init__(message, details)


class NotFoundError(ClusterApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ClusterApiError):
    """The object being created already exists."""


class AttachError(ProvisionError):
    """The interactive stream to a container failed."""


class InspectError(ProvisionError):
    """The inspect sidecar produced output that could not be decoded."""


class PodFailedError(ProvisionError):
    """A build or inspect pod finished in the Failed phase."""


class ProgressDeadlineError(ProvisionError):
    """A deployment reported ProgressDeadlineExceeded."""


class TimeoutProvisionError(ProvisionError):
    """A bounded wait expired.

    Attributes:
        label: Which phase timed out (e.g. "healthcheck", "full rollout")
        elapsed: Seconds spent waiting
        messages: Best-effort diagnostics collected when the wait expired
    """

    def __init__(
        self,
        message: str,
        *,
        label: str,
        elapsed: float,
        messages: list[str] | None = None,
    ):
        self.label = label
        self.elapsed = elapsed
        self.messages = messages or []
        super().__init__(message, "\n".join(self.messages) or None)


class PodTimeoutError(TimeoutProvisionError):
    """A pod did not reach the expected state in time."""

    def __init__(
        self,
        pod_name: str,
        *,
        label: str,
        elapsed: float,
        messages: list[str] | None = None,
    ):
        self.pod_name = pod_name
        message = f"timeout after {elapsed:.1f}s waiting for pod {pod_name!r} {label}"
        super().__init__(message, label=label, elapsed=elapsed, messages=messages)


class DeployTimeoutError(TimeoutProvisionError):
    """A deployment rollout did not converge in time."""

    def __init__(
        self,
        *,
        label: str,
        elapsed: float,
        messages: list[str] | None = None,
    ):
        suffix = ""
        if messages:
            suffix = ": " + ", ".join(messages)
        message = f"timeout waiting {label} after {elapsed:.1f}s waiting for units{suffix}"
        super().__init__(message, label=label, elapsed=elapsed, messages=messages)


class MultiError(ProvisionError):
    """Aggregates every failure of a multi-step operation."""

    def __init__(self, errors: Iterable[BaseException] = ()):
        self.errors: list[BaseException] = list(errors)
        super().__init__(self._render())

    def add(self, error: BaseException) -> None:
        self.errors.append(error)
        self.message = self._render()
        self.args = (self.message,)

    def __len__(self) -> int:
        return len(self.errors)

    def raise_if_errors(self) -> None:
        """Raise the single error, or this aggregate if there are several."""
        if not self.errors:
            return
        if len(self.errors) == 1:
            raise self.errors[0]
        raise self

    def _render(self) -> str:
        if not self.errors:
            return "no errors"
        if len(self.errors) == 1:
            return str(self.errors[0])
        lines = [f"multiple errors reported ({len(self.errors)}):"]
        lines.extend(f"{i}: {err}" for i, err in enumerate(self.errors))
        return "\n".join(lines)


class UnitStartupError(ProvisionError):
    """A rollout failed and the deployment was rolled back.

    The original failure always comes first; a failure during the rollback
    itself is kept alongside it.
    """

    def __init__(
        self, original: BaseException, rollback_error: BaseException | None = None
    ):
        self.original = original
        self.rollback_error = rollback_error
        message = f"error initializing unit: {original}"
        details = None
        if rollback_error is not None:
            details = f"error during rollback: {rollback_error}"
        super().__init__(message, details)
