"""Tests for the sidecar build and inspect pipeline."""

import io
import json

import pytest

from kubeploy.errors import (
    AttachError,
    MultiError,
    PodFailedError,
    PodTimeoutError,
    PreconditionError,
    ProvisionError,
)
from kubeploy.infra.k8s import ClusterEvent
from kubeploy.provision.constants import SIDECAR
from kubeploy.provision.models import App, LabelSet
from kubeploy.provision.output import DeployOutput
from kubeploy.provision.sidecar import (
    SentinelSignal,
    SidecarPipeline,
    SidecarState,
    archive_build_commands,
    build_sidecar_pod,
    create_build_pod,
    create_deploy_pod,
    image_tag_and_push,
    with_latest_alias,
)
from kubeploy.runtime.config import ProvisionerConfig
from tests.fixtures import FakeClusterController


def _env(container: dict) -> dict[str, str]:
    return {item["name"]: item["value"] for item in container.get("env", [])}


class TestSidecarManifest:
    """Tests for the two-container pod manifest."""

    def _manifest(self, **overrides) -> dict:
        app = App(name="myapp")
        params = {
            "name": "myapp-build",
            "namespace": "default",
            "labels": LabelSet.for_app(app, is_build=True),
            "source_image": "acme/python:3.12",
            "sidecar_name": SIDECAR.BUILD_SIDECAR_NAME,
            "sidecar_image": "tsuru/deploy-agent:0.2.8",
            "sidecar_env": {"DEPLOYAGENT_RUN_AS_SIDECAR": "true"},
            "sidecar_script": "/bin/deploy-agent build",
            "service_account": "app-myapp",
            "pull_secrets": [],
            "node_selector": {},
        }
        params.update(overrides)
        return build_sidecar_pod(**params)

    def test_exactly_two_containers(self) -> None:
        """The pod runs the target and the sidecar and nothing else."""
        containers = self._manifest()["spec"]["containers"]
        assert [c["name"] for c in containers] == ["myapp-build", "committer-cont"]

    def test_sentinel_mounted_at_same_path(self) -> None:
        """Both containers see the signal volume at the same path."""
        containers = self._manifest()["spec"]["containers"]
        mounts = [
            {m["mountPath"] for m in c["volumeMounts"] if m["name"] == SIDECAR.SIGNAL_VOLUME}
            for c in containers
        ]
        assert mounts == [{SIDECAR.SIGNAL_MOUNT_PATH}, {SIDECAR.SIGNAL_MOUNT_PATH}]

    def test_target_waits_and_sidecar_signals(self) -> None:
        """The target blocks on the sentinel and the sidecar writes it on exit."""
        target, sidecar = self._manifest()["spec"]["containers"]
        assert SentinelSignal().path in target["command"][-1]
        assert "while [ ! -f" in target["command"][-1]
        script = sidecar["command"][-1]
        assert "trap end EXIT" in script
        assert f"touch {SentinelSignal().path}" in script
        assert script.endswith("/bin/deploy-agent build")
        assert sidecar["stdin"] is True
        assert sidecar["stdinOnce"] is True

    def test_pod_never_restarts_and_mounts_engine_socket(self) -> None:
        """The pod runs once with the node's container engine socket."""
        spec = self._manifest()["spec"]
        assert spec["restartPolicy"] == "Never"
        host_paths = [v["hostPath"]["path"] for v in spec["volumes"] if "hostPath" in v]
        assert host_paths == [SIDECAR.DOCKER_SOCK_PATH]

    def test_optional_fields_omitted_when_empty(self) -> None:
        """Pull secrets and node selector only appear when given."""
        spec = self._manifest()["spec"]
        assert "imagePullSecrets" not in spec
        assert "nodeSelector" not in spec

        spec = self._manifest(
            pull_secrets=[{"name": "registry-x"}],
            node_selector={"kubeploy.io/pool": "gold"},
            run_as_user=1000,
        )["spec"]
        assert spec["imagePullSecrets"] == [{"name": "registry-x"}]
        assert spec["nodeSelector"] == {"kubeploy.io/pool": "gold"}
        assert spec["containers"][0]["securityContext"] == {"runAsUser": 1000}


class TestSentinelSignal:
    """Tests for SentinelSignal."""

    def test_file_lives_in_mounted_directory(self) -> None:
        """The signal file sits in the directory the volume is mounted at."""
        signal = SentinelSignal("/tmp/sync", "ready", volume_name="sync")
        assert signal.path == "/tmp/sync/ready"
        assert signal.volume_mount() == {"name": "sync", "mountPath": "/tmp/sync"}
        assert signal.volume() == {"name": "sync", "emptyDir": {}}


class TestCommands:
    """Tests for command helpers."""

    def test_archive_build_commands(self) -> None:
        """Archive builds download, extract and run the agent."""
        commands = archive_build_commands("file:///home/application/archive.tar.gz")
        assert commands[:2] == [SIDECAR.SHELL, SIDECAR.SHELL_FLAG]
        assert "tar -xzf" in commands[2]
        assert commands[2].endswith("/bin/deploy-agent build")

    def test_latest_alias_added(self) -> None:
        """A non-latest tag gets a latest alias."""
        assert with_latest_alias(["registry.local/myapp:v3"]) == [
            "registry.local/myapp:v3",
            "registry.local/myapp:latest",
        ]

    def test_latest_alias_not_duplicated(self) -> None:
        """An image already tagged latest is left alone."""
        assert with_latest_alias(["registry.local/myapp"]) == ["registry.local/myapp"]


class TestBuildPipeline:
    """Tests for running build sidecars."""

    @pytest.fixture
    def app(self) -> App:
        return App(name="myapp", envs={"FOO": "bar"})

    @pytest.mark.asyncio
    async def test_build_streams_archive_and_leaves_pod(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """The archive reaches the sidecar and build output reaches the writer."""
        fake_cluster.attach_output["myapp-build"] = b"Step 1/3 : FROM base\n"
        writer = io.StringIO()

        await create_build_pod(
            fake_cluster,
            provisioner_config,
            app,
            source_image="acme/python:3.12",
            destination_images=["registry.local/myapp:v1"],
            input_stream=io.BytesIO(b"archive-bytes"),
            output=DeployOutput(writer),
        )

        assert fake_cluster.attached == [
            {
                "pod": "myapp-build",
                "container": "committer-cont",
                "stdin": b"archive-bytes",
                "stderr": True,
                "tty": False,
            }
        ]
        assert "Step 1/3 : FROM base" in writer.getvalue()
        assert " ---> Cleaning up" in writer.getvalue()
        assert "myapp-build" in fake_cluster.pods
        assert fake_cluster.called("delete_pod") == []

    @pytest.mark.asyncio
    async def test_build_pod_manifest(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """The sidecar receives its destinations and input file."""
        await create_build_pod(
            fake_cluster,
            provisioner_config,
            app,
            source_image="acme/python:3.12",
            destination_images=["registry.local/myapp:v1"],
            input_stream=None,
        )

        pod = fake_cluster.pods["myapp-build"]
        target, sidecar = pod["spec"]["containers"]
        env = _env(sidecar)
        assert env["DEPLOYAGENT_DESTINATION_IMAGES"] == "registry.local/myapp:v1"
        assert env["DEPLOYAGENT_INPUT_FILE"] == SIDECAR.BUILD_INPUT_FILE
        assert f"cat >{SIDECAR.BUILD_INPUT_FILE}" in sidecar["command"][-1]
        assert _env(target) == {"FOO": "bar"}
        assert pod["spec"]["serviceAccountName"] == "app-myapp"
        assert pod["metadata"]["labels"]["kubeploy.io/is-build"] == "true"
        assert pod["metadata"]["annotations"]["kubeploy.io/build-image"] == (
            "registry.local/myapp:v1"
        )
        assert fake_cluster.attached == []

    @pytest.mark.asyncio
    async def test_wrong_command_count_creates_nothing(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """A two-element command list is rejected before any cluster call."""
        with pytest.raises(PreconditionError, match="unexpected cmds list"):
            await create_build_pod(
                fake_cluster,
                provisioner_config,
                app,
                source_image="acme/python:3.12",
                destination_images=["registry.local/myapp:v1"],
                input_stream=None,
                commands=["/bin/sh", "-lc"],
            )
        assert fake_cluster.calls == []

    @pytest.mark.asyncio
    async def test_empty_destinations_rejected(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """Building without a destination image is a precondition error."""
        with pytest.raises(PreconditionError):
            await create_build_pod(
                fake_cluster,
                provisioner_config,
                app,
                source_image="acme/python:3.12",
                destination_images=[],
                input_stream=None,
            )
        assert fake_cluster.called("create_pod") == []

    @pytest.mark.asyncio
    async def test_registry_secret_written_before_pod(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """The pull secret is updated, then created, before the pod exists."""
        config = provisioner_config.model_copy(
            update={
                "registry": "registry.local:5000",
                "registry_username": "builder",
                "registry_password": "s3cret",
            }
        )

        await create_build_pod(
            fake_cluster,
            config,
            app,
            source_image="registry.local:5000/platform/python:3.12",
            destination_images=["registry.local:5000/myapp:v1"],
            input_stream=None,
        )

        methods = [call[0] for call in fake_cluster.calls]
        assert methods.index("update_secret") < methods.index("create_secret")
        assert methods.index("create_secret") < methods.index("create_pod")
        pod = fake_cluster.pods["myapp-build"]
        assert pod["spec"]["imagePullSecrets"] == [
            {"name": "registry-registry.local-5000"}
        ]
        env = _env(pod["spec"]["containers"][1])
        assert env["DEPLOYAGENT_REGISTRY_AUTH_USER"] == "builder"
        assert env["DEPLOYAGENT_REGISTRY_ADDRESS"] == "registry.local:5000"

    @pytest.mark.asyncio
    async def test_pod_events_are_narrated(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """Events about the build pod are echoed while it runs."""
        fake_cluster.pod_phases["myapp-build"] = ["Pending", "Pending", "Running", "Succeeded"]
        fake_cluster.watch_events = [
            ClusterEvent(
                name="myapp-build.17a",
                message="Pulling image",
                involved_name="myapp-build",
                field_path="spec.containers{committer-cont}",
                source_component="kubelet",
                source_host="node-1",
            )
        ]
        writer = io.StringIO()

        await create_build_pod(
            fake_cluster,
            provisioner_config,
            app,
            source_image="acme/python:3.12",
            destination_images=["registry.local/myapp:v1"],
            input_stream=None,
            output=DeployOutput(writer),
        )

        assert (
            " ---> myapp-build - spec.containers{committer-cont} - Pulling image "
            "[kubelet, node-1]"
        ) in writer.getvalue()
        assert fake_cluster.watches[0]["field_selector"] == {
            "involvedObject.kind": "Pod",
            "involvedObject.name": "myapp-build",
        }
        assert fake_cluster.closed_watches == 1

    @pytest.mark.asyncio
    async def test_attach_failure_names_container(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """A broken attach names the pod and container and stops the watch."""
        fake_cluster.pod_phases["myapp-build"] = ["Pending", "Running"]
        fake_cluster.failures["attach"] = AttachError("stream closed", details="EOF")
        writer = io.StringIO()

        with pytest.raises(AttachError) as exc_info:
            await create_build_pod(
                fake_cluster,
                provisioner_config,
                app,
                source_image="acme/python:3.12",
                destination_images=["registry.local/myapp:v1"],
                input_stream=io.BytesIO(b"archive-bytes"),
                output=DeployOutput(writer),
            )

        assert exc_info.value.message == (
            "error attaching to myapp-build/committer-cont: stream closed"
        )
        assert exc_info.value.details == "EOF"
        assert fake_cluster.closed_watches == 1
        assert " ---> Cleaning up" not in writer.getvalue()
        assert "myapp-build" in fake_cluster.pods

    @pytest.mark.asyncio
    async def test_split_utf8_build_output(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """Build output keeps characters split across attach frames."""
        data = "café ✓\n".encode()

        async def attach_in_frames(namespace, pod, container, *, stdin, stdout, **kwargs):
            stdout.write(data[:4])
            stdout.write(data[4:])

        fake_cluster.attach = attach_in_frames  # type: ignore[method-assign]
        writer = io.StringIO()

        await create_build_pod(
            fake_cluster,
            provisioner_config,
            app,
            source_image="acme/python:3.12",
            destination_images=["registry.local/myapp:v1"],
            input_stream=io.BytesIO(b"archive-bytes"),
            output=DeployOutput(writer),
        )

        assert "café ✓\n" in writer.getvalue()
        assert "�" not in writer.getvalue()

    @pytest.mark.asyncio
    async def test_containers_not_running_in_time(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """A pod stuck pending times out with its events attached."""
        config = provisioner_config.model_copy(update={"pod_running_timeout": 0.05})
        fake_cluster.pod_phases["myapp-build"] = ["Pending"]
        fake_cluster.events = [
            ClusterEvent(
                name="myapp-build.1",
                reason="FailedScheduling",
                message="0/3 nodes are available",
                involved_name="myapp-build",
            )
        ]
        pipeline = SidecarPipeline(fake_cluster, config)

        with pytest.raises(PodTimeoutError) as exc_info:
            await pipeline.run_build(
                app,
                pod_name="myapp-build",
                commands=archive_build_commands("file:///archive"),
                source_image="acme/python:3.12",
                destination_images=["registry.local/myapp:v1"],
                input_file=SIDECAR.BUILD_INPUT_FILE,
                input_stream=io.BytesIO(b"data"),
            )

        assert exc_info.value.messages == ["FailedScheduling - 0/3 nodes are available"]
        assert pipeline.state is SidecarState.POD_FAILED
        assert fake_cluster.attached == []

    @pytest.mark.asyncio
    async def test_failed_pod(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """A pod ending in Failed reports the invalid phase."""
        fake_cluster.pod_phases["myapp-build"] = ["Running", "Failed"]
        pipeline = SidecarPipeline(fake_cluster, provisioner_config)

        with pytest.raises(PodFailedError, match='invalid pod phase "Failed"') as exc_info:
            await pipeline.run_build(
                app,
                pod_name="myapp-build",
                commands=archive_build_commands("file:///archive"),
                source_image="acme/python:3.12",
                destination_images=["registry.local/myapp:v1"],
                input_file=SIDECAR.BUILD_INPUT_FILE,
                input_stream=None,
            )

        assert "exited with 1" in (exc_info.value.details or "")
        assert pipeline.state is SidecarState.POD_FAILED

    @pytest.mark.asyncio
    async def test_deploy_pod_adds_latest_alias(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
        app: App,
    ) -> None:
        """Deploy pods push the latest alias and run the agent deploy command."""
        await create_deploy_pod(
            fake_cluster,
            provisioner_config,
            app,
            source_image="acme/web:1.2",
            destination_images=["registry.local/myapp:v2"],
        )

        sidecar = fake_cluster.pods["myapp-deploy"]["spec"]["containers"][1]
        assert _env(sidecar)["DEPLOYAGENT_DESTINATION_IMAGES"] == (
            "registry.local/myapp:v2,registry.local/myapp:latest"
        )
        assert sidecar["command"][-1].endswith("/bin/deploy-agent deploy")


class TestInspectPipeline:
    """Tests for the inspect sidecar."""

    @pytest.mark.asyncio
    async def test_image_tag_and_push(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
    ) -> None:
        """The inspect output is decoded and the pod removed."""
        fake_cluster.attach_output["myapp-deploy"] = json.dumps(
            {
                "image": {"Config": {"ExposedPorts": {"8000/tcp": {}}}},
                "procfile": "web: gunicorn app",
            }
        ).encode()

        result = await image_tag_and_push(
            fake_cluster,
            provisioner_config,
            App(name="myapp"),
            "acme/web:1.2",
            "registry.local/myapp:v3",
        )

        assert result.exposed_port() == "8000/tcp"
        assert [p.name for p in result.processes()] == ["web"]
        assert "myapp-deploy" not in fake_cluster.pods
        assert fake_cluster.attached[0]["container"] == "inspect-cont"
        assert fake_cluster.attached[0]["stdin"] == b"."

    @pytest.mark.asyncio
    async def test_inspect_env(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
    ) -> None:
        """The inspect sidecar knows its source and destinations."""
        pipeline = SidecarPipeline(fake_cluster, provisioner_config)

        await pipeline.run_inspect(
            App(name="myapp"),
            pod_name="inspect",
            source_image="acme/web:1.2",
            destination_images=["registry.local/myapp:v3", "registry.local/myapp:latest"],
            stdout=io.BytesIO(),
            stderr=io.BytesIO(),
        )

        sidecar = fake_cluster.created_pods["inspect"]["spec"]["containers"][1]
        env = _env(sidecar)
        assert env["DEPLOYAGENT_SOURCE_IMAGE"] == "acme/web:1.2"
        assert env["DEPLOYAGENT_DESTINATION_IMAGES"] == (
            "registry.local/myapp:v3,registry.local/myapp:latest"
        )
        assert sidecar["command"][-1].endswith("cat >/dev/null && /bin/deploy-agent")
        assert pipeline.state is SidecarState.POD_SUCCEEDED

    @pytest.mark.asyncio
    async def test_inspect_aggregates_wait_and_attach_errors(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
    ) -> None:
        """Startup and attach failures are both reported and the pod deleted."""
        config = provisioner_config.model_copy(update={"pod_running_timeout": 0.05})
        fake_cluster.pod_phases["myapp-deploy"] = ["Pending"]
        fake_cluster.failures["attach"] = AttachError("stream closed")
        pipeline = SidecarPipeline(fake_cluster, config)

        with pytest.raises(MultiError) as exc_info:
            await pipeline.run_inspect(
                App(name="myapp"),
                pod_name="myapp-deploy",
                source_image="acme/web:1.2",
                destination_images=["registry.local/myapp:v3"],
                stdout=io.BytesIO(),
                stderr=io.BytesIO(),
            )

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert isinstance(errors[0], PodTimeoutError)
        assert isinstance(errors[1], AttachError)
        assert "error attaching to myapp-deploy/inspect-cont" in str(errors[1])
        assert "myapp-deploy" not in fake_cluster.pods
        assert pipeline.state is SidecarState.POD_FAILED

    @pytest.mark.asyncio
    async def test_tag_and_push_failure_keeps_output(
        self,
        fake_cluster: FakeClusterController,
        provisioner_config: ProvisionerConfig,
    ) -> None:
        """A failed inspect is reported with what the sidecar printed."""
        fake_cluster.pod_phases["myapp-deploy"] = ["Running", "Failed"]
        fake_cluster.attach_output["myapp-deploy"] = b"pull access denied"

        with pytest.raises(ProvisionError, match="unable to pull and tag image") as exc_info:
            await image_tag_and_push(
                fake_cluster,
                provisioner_config,
                App(name="myapp"),
                "acme/private:1",
                "registry.local/myapp:v3",
            )

        assert "pull access denied" in (exc_info.value.details or "")
        assert isinstance(exc_info.value.__cause__, PodFailedError)
        assert "myapp-deploy" not in fake_cluster.pods
