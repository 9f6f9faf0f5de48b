"""Tests for workload models, label sets and naming."""

import pytest

from kubeploy.errors import PreconditionError
from kubeploy.provision.constants import LABEL_PREFIX
from kubeploy.provision.models import (
    App,
    ImageMetadata,
    LabelSet,
    ProcessSpec,
    build_pod_name,
    deploy_pod_name,
    deployment_name,
    headless_service_name,
    image_domain,
    pool_node_selector,
    registry_secret_name,
    service_account_name,
    split_image_name,
)


class TestImageMetadata:
    """Tests for ImageMetadata helpers."""

    def test_web_process_is_preferred(self) -> None:
        """The web process receives traffic when declared."""
        metadata = ImageMetadata(
            processes=[ProcessSpec("worker", "celery"), ProcessSpec("web", "gunicorn")]
        )
        assert metadata.web_process_name == "web"

    def test_single_process_is_web(self) -> None:
        """A lone process receives traffic whatever its name."""
        metadata = ImageMetadata(processes=[ProcessSpec("api", "uvicorn app")])
        assert metadata.web_process_name == "api"

    def test_no_web_process_among_several(self) -> None:
        """Several processes without one named web means no web process."""
        metadata = ImageMetadata(
            processes=[ProcessSpec("a", "x"), ProcessSpec("b", "y")]
        )
        assert metadata.web_process_name == ""

    def test_target_port_from_exposed_port(self) -> None:
        """The exposed port number is used when present."""
        assert ImageMetadata(exposed_port="8000/tcp").target_port(8888) == 8000

    @pytest.mark.parametrize("exposed", ["", "8000", "abc/tcp"])
    def test_target_port_falls_back_to_default(self, exposed: str) -> None:
        """Malformed or missing exposed ports fall back to the default."""
        assert ImageMetadata(exposed_port=exposed).target_port(8888) == 8888

    def test_command_for_unknown_process(self) -> None:
        """Asking for an undeclared process is a precondition error."""
        metadata = ImageMetadata(processes=[ProcessSpec("web", "gunicorn")])
        with pytest.raises(PreconditionError, match="worker"):
            metadata.command_for("worker")


class TestLabelSet:
    """Tests for LabelSet."""

    def test_for_app_labels(self) -> None:
        """App labels carry name, pool, process and build flag."""
        labels = LabelSet.for_app(App(name="myapp", pool="gold"), "web")
        assert labels.labels[f"{LABEL_PREFIX}app-name"] == "myapp"
        assert labels.labels[f"{LABEL_PREFIX}app-pool"] == "gold"
        assert labels.labels[f"{LABEL_PREFIX}app-process"] == "web"
        assert labels.labels[f"{LABEL_PREFIX}is-build"] == "false"

    def test_selector_ignores_headless_flag(self) -> None:
        """Marking a label set headless does not change its selector."""
        labels = LabelSet.for_app(App(name="myapp"), "web")
        before = labels.to_selector()
        labels.set_is_headless_service()
        assert labels.to_selector() == before
        assert labels.to_labels()[f"{LABEL_PREFIX}is-headless-service"] == "true"

    def test_copy_is_independent(self) -> None:
        """Mutating a copy leaves the original untouched."""
        labels = LabelSet.for_app(App(name="myapp"), "web")
        copied = labels.copy()
        copied.set_is_headless_service()
        copied.set_build_image("img")
        assert f"{LABEL_PREFIX}is-headless-service" not in labels.labels
        assert labels.annotations == {}


class TestNaming:
    """Tests for object naming conventions."""

    def test_service_names_never_collide(self) -> None:
        """The headless service gets a distinct suffix."""
        app = App(name="myapp")
        assert deployment_name(app, "web") == "myapp-web"
        assert headless_service_name(app, "web") == "myapp-web-units"

    def test_names_are_dns_safe(self) -> None:
        """Underscores and capitals are normalized."""
        assert deployment_name(App(name="MyApp"), "long_worker") == "myapp-long-worker"

    def test_pod_and_account_names(self) -> None:
        """Pod and service account names follow the app name."""
        app = App(name="myapp")
        assert service_account_name(app) == "app-myapp"
        assert build_pod_name(app) == "myapp-build"
        assert build_pod_name(app, "3") == "myapp-v3-build"
        assert deploy_pod_name(app) == "myapp-deploy"

    def test_registry_secret_name(self) -> None:
        """Registry hostnames with ports become valid secret names."""
        assert registry_secret_name("registry.local:5000") == "registry-registry.local-5000"

    def test_pool_node_selector(self) -> None:
        """Pods are pinned to their pool, and unpinned without one."""
        assert pool_node_selector("gold") == {f"{LABEL_PREFIX}pool": "gold"}
        assert pool_node_selector("") == {}


class TestImageReferences:
    """Tests for image reference parsing."""

    @pytest.mark.parametrize(
        ("image", "expected"),
        [
            ("myapp", ("myapp", "latest")),
            ("myapp:v1", ("myapp", "v1")),
            ("registry.local:5000/myapp", ("registry.local:5000/myapp", "latest")),
            ("registry.local:5000/team/myapp:v2", ("registry.local:5000/team/myapp", "v2")),
        ],
    )
    def test_split_image_name(self, image: str, expected: tuple[str, str]) -> None:
        """A registry port is never mistaken for a tag."""
        assert split_image_name(image) == expected

    def test_image_domain(self) -> None:
        """The domain is everything before the first slash."""
        assert image_domain("registry.local:5000/team/myapp:v2") == "registry.local:5000"
        assert image_domain("myapp:v1") == "myapp:v1"
