"""Process deployment commands.

This module provides commands for deploying, removing and describing the
Kubernetes objects of one application process.
"""

import sys
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from kubeploy.infra.k8s import get_cluster_controller, run_sync
from kubeploy.provision import (
    App,
    HealthCheck,
    ImageMetadata,
    ProcessSpec,
    ServiceManager,
)
from kubeploy.provision.metadata import InMemoryImageMetadataStore

from .shared import console, get_config, handle_error, print_header, with_error_handling

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", help="Provisioner configuration file (default: kubeploy.yaml)"),
]
NamespaceOption = Annotated[
    str | None,
    typer.Option("--namespace", "-n", help="Kubernetes namespace"),
]


def _parse_envs(values: list[str]) -> dict[str, str]:
    envs: dict[str, str] = {}
    for value in values:
        name, sep, content = value.partition("=")
        if not sep or not name:
            handle_error(f"Invalid environment variable: {value}", "Use NAME=VALUE.")
        envs[name] = content
    return envs


@with_error_handling
def deploy(
    app_name: Annotated[str, typer.Argument(help="Application name")],
    process: Annotated[str, typer.Argument(help="Process name (e.g., web)")],
    image: Annotated[str, typer.Option("--image", "-i", help="Image to deploy")],
    command: Annotated[
        str,
        typer.Option("--command", "-c", help="Command the process runs"),
    ],
    replicas: Annotated[int, typer.Option("--replicas", "-r", min=0)] = 1,
    pool: Annotated[str, typer.Option("--pool", help="Node pool")] = "",
    memory: Annotated[
        int,
        typer.Option("--memory", help="Memory limit in bytes (0 = unlimited)", min=0),
    ] = 0,
    port: Annotated[
        int | None,
        typer.Option("--port", help="Port the process listens on"),
    ] = None,
    healthcheck_path: Annotated[
        str | None,
        typer.Option("--healthcheck-path", help="HTTP path probed for readiness"),
    ] = None,
    env: Annotated[
        list[str] | None,
        typer.Option("--env", "-e", help="Environment variable NAME=VALUE"),
    ] = None,
    config_path: ConfigOption = None,
    namespace: NamespaceOption = None,
) -> None:
    """Roll out an image for one process of an application.

    Follows the rollout until every new unit is ready, rolls back on failure
    and exposes the process through a NodePort and a headless service.

    Examples:
        kubeploy deploy myapp web -i registry.local/myapp:v2 -c "python app.py" -r 3
        kubeploy deploy myapp web -i registry.local/myapp:v2 -c "gunicorn app" --port 8000 --healthcheck-path /health
    """
    config = get_config(config_path, namespace)
    print_header(f"Deploying {app_name}/{process}")

    metadata = ImageMetadata(
        processes=[ProcessSpec(name=process, command=command)],
        exposed_port=f"{port}/tcp" if port else "",
        healthcheck=HealthCheck(path=healthcheck_path) if healthcheck_path else None,
    )
    store = InMemoryImageMetadataStore({image: metadata})
    app = App(name=app_name, pool=pool, memory=memory, envs=_parse_envs(env or []))
    manager = ServiceManager(get_cluster_controller(), config, store, writer=sys.stdout)

    run_sync(manager.deploy_service(app, process, None, replicas, image))
    console.print(f"\n[green]✓ {app_name}/{process} deployed with {replicas} units[/green]")


@with_error_handling
def remove(
    app_name: Annotated[str, typer.Argument(help="Application name")],
    process: Annotated[str, typer.Argument(help="Process name (e.g., web)")],
    config_path: ConfigOption = None,
    namespace: NamespaceOption = None,
) -> None:
    """Delete the deployment and both services of a process.

    Examples:
        kubeploy remove myapp web
        kubeploy remove myapp worker -n staging
    """
    config = get_config(config_path, namespace)
    manager = ServiceManager(get_cluster_controller(), config, InMemoryImageMetadataStore())
    run_sync(manager.remove_service(App(name=app_name), process))
    console.print(f"[green]✓ Removed {app_name}/{process} from {config.namespace}[/green]")


@with_error_handling
def labels(
    app_name: Annotated[str, typer.Argument(help="Application name")],
    process: Annotated[str, typer.Argument(help="Process name (e.g., web)")],
    config_path: ConfigOption = None,
    namespace: NamespaceOption = None,
) -> None:
    """Show the pod labels and annotations of a deployed process.

    Examples:
        kubeploy labels myapp web
    """
    config = get_config(config_path, namespace)
    manager = ServiceManager(get_cluster_controller(), config, InMemoryImageMetadataStore())
    current = run_sync(manager.current_labels(App(name=app_name), process))
    if current is None:
        console.print(f"[yellow]⚠ {app_name}/{process} is not deployed[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"{app_name}/{process}")
    table.add_column("Kind", style="cyan")
    table.add_column("Key")
    table.add_column("Value", style="green")
    for key, value in sorted(current.labels.items()):
        table.add_row("label", key, value)
    for key, value in sorted(current.annotations.items()):
        table.add_row("annotation", key, value)
    console.print(table)
