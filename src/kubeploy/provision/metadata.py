"""Image metadata resolution.

Deployments need to know which processes an image declares, the port it
exposes and its health check. The inspect sidecar extracts this from the image
itself; ``ImageMetadataStore`` is where that result is kept and looked up.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from kubeploy.errors import InspectError, PreconditionError

from .models import HealthCheck, ImageMetadata, ProcessSpec

_TYPE_NAMES = {dict: "an object", str: "a string"}


def _shape_error(field_name: str, expected: str, text: str) -> InspectError:
    return InspectError(
        f"invalid image inspect response: {field_name} must be {expected}",
        details=f"Raw output:\n{text}",
    )


def _check_type(value: Any, expected: type, field_name: str, text: str) -> Any:
    if not isinstance(value, expected):
        raise _shape_error(field_name, _TYPE_NAMES[expected], text)
    return value


def _image_config(image: dict[str, Any]) -> Any:
    return image.get("Config") or image.get("config") or {}


@dataclass
class InspectResult:
    """Decoded output of the inspect sidecar.

    Attributes:
        image: Container engine image inspection document
        metadata: Free-form application metadata document (health check etc.)
        procfile: Process-to-command mapping in Procfile format
    """

    image: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    procfile: str = ""

    @classmethod
    def decode(cls, raw: bytes) -> InspectResult:
        """Decode the sidecar's JSON payload.

        Key names are matched case-insensitively. The metadata document may be
        named ``tsuruYaml`` or ``metadata``.

        Raises:
            InspectError: If the payload is not JSON or a field has the
                wrong type
        """
        text = raw.decode("utf-8", errors="replace")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InspectError(
                f"invalid image inspect response: {text!r}",
                details=f"JSON decode error: {e}\n\nRaw output:\n{text}",
            ) from e
        _check_type(data, dict, "response", text)
        lowered = {str(k).lower(): v for k, v in data.items()}
        metadata = lowered.get("tsuruyaml")
        if metadata is None:
            metadata = lowered.get("metadata")
        result = cls(
            image=_check_type(lowered.get("image") or {}, dict, "image", text),
            metadata=_check_type(metadata or {}, dict, "metadata", text),
            procfile=_check_type(lowered.get("procfile") or "", str, "procfile", text),
        )
        config = _check_type(_image_config(result.image), dict, "image.Config", text)
        _check_type(config.get("ExposedPorts") or {}, dict, "image.Config.ExposedPorts", text)
        hc = _check_type(result.metadata.get("healthcheck") or {}, dict, "healthcheck", text)
        for key in ("path", "scheme", "method"):
            _check_type(hc.get(key) or "", str, f"healthcheck.{key}", text)
        failures = hc.get("allowed_failures") or 0
        if isinstance(failures, bool) or not isinstance(failures, int):
            raise _shape_error("healthcheck.allowed_failures", "an integer", text)
        return result

    def processes(self) -> list[ProcessSpec]:
        result = []
        for line in self.procfile.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or ":" not in line:
                continue
            name, command = line.split(":", 1)
            result.append(ProcessSpec(name=name.strip(), command=command.strip()))
        return result

    def exposed_port(self) -> str:
        ports = _image_config(self.image).get("ExposedPorts") or {}
        return sorted(ports)[0] if ports else ""

    def healthcheck(self) -> HealthCheck | None:
        hc = self.metadata.get("healthcheck")
        if not hc:
            return None
        return HealthCheck(
            path=hc.get("path") or "",
            scheme=hc.get("scheme") or "",
            method=hc.get("method") or "",
            allowed_failures=hc.get("allowed_failures") or 0,
        )

    def to_metadata(self) -> ImageMetadata:
        return ImageMetadata(
            processes=self.processes(),
            exposed_port=self.exposed_port(),
            healthcheck=self.healthcheck(),
        )


class ImageMetadataStore(ABC):
    """Lookup of metadata for deployable images."""

    @abstractmethod
    async def get(self, image: str) -> ImageMetadata:
        """Return the metadata registered for ``image``.

        Raises:
            PreconditionError: If nothing is registered for the image
        """
        ...

    @abstractmethod
    async def save(self, image: str, metadata: ImageMetadata) -> None:
        """Register metadata for ``image``."""
        ...


class InMemoryImageMetadataStore(ImageMetadataStore):
    """Process-local metadata store."""

    def __init__(self, initial: dict[str, ImageMetadata] | None = None) -> None:
        self._items: dict[str, ImageMetadata] = dict(initial or {})

    async def get(self, image: str) -> ImageMetadata:
        try:
            return self._items[image]
        except KeyError:
            raise PreconditionError(
                f"no metadata registered for image {image!r}",
                details="Deploy the image through the inspect pipeline first.",
            ) from None

    async def save(self, image: str, metadata: ImageMetadata) -> None:
        self._items[image] = metadata
