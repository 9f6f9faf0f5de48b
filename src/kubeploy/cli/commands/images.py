"""Image commands: build archives and inspect prebuilt images."""

import dataclasses
import json
import sys
from pathlib import Path
from typing import Annotated

import typer

from kubeploy.infra.k8s import get_cluster_controller, run_sync
from kubeploy.provision import App, Provisioner
from kubeploy.provision.sidecar import image_tag_and_push

from .services import ConfigOption, NamespaceOption
from .shared import console, get_config, handle_error, print_header, with_error_handling


@with_error_handling
def inspect(
    app_name: Annotated[str, typer.Argument(help="Application name")],
    source_image: Annotated[str, typer.Argument(help="Prebuilt image to pull")],
    new_image: Annotated[str, typer.Argument(help="Image reference to push as")],
    pool: Annotated[str, typer.Option("--pool", help="Node pool")] = "",
    config_path: ConfigOption = None,
    namespace: NamespaceOption = None,
) -> None:
    """Retag an image and print the metadata it declares.

    Runs the inspect sidecar, which pulls SOURCE_IMAGE, pushes it as
    NEW_IMAGE (plus :latest) and reports its processes, exposed port and
    health check.

    Examples:
        kubeploy inspect myapp docker.io/acme/web:1.2 registry.local/myapp:v3
    """
    config = get_config(config_path, namespace)
    app = App(name=app_name, pool=pool)
    result = run_sync(
        image_tag_and_push(get_cluster_controller(), config, app, source_image, new_image)
    )
    console.print_json(json.dumps(dataclasses.asdict(result.to_metadata())))


@with_error_handling
def build(
    app_name: Annotated[str, typer.Argument(help="Application name")],
    archive: Annotated[
        Path,
        typer.Argument(help="Application archive (.tar.gz)", exists=True, dir_okay=False),
    ],
    image: Annotated[str, typer.Option("--image", "-i", help="Image to build")],
    source_image: Annotated[
        str,
        typer.Option("--source-image", "-s", help="Platform image to build on"),
    ],
    pool: Annotated[str, typer.Option("--pool", help="Node pool")] = "",
    config_path: ConfigOption = None,
    namespace: NamespaceOption = None,
) -> None:
    """Build an application archive into an image.

    The archive is streamed into a build pod, which is left in place so its
    logs can be read afterwards.

    Examples:
        kubeploy build myapp ./app.tar.gz -i registry.local/myapp:v4 -s acme/python:3.12
    """
    config = get_config(config_path, namespace)
    print_header(f"Building {app_name}")
    if not archive.is_file():
        handle_error(f"Archive not found: {archive}")

    provisioner = Provisioner(get_cluster_controller(), config, writer=sys.stdout)
    with archive.open("rb") as stream:
        built = run_sync(
            provisioner.build(
                App(name=app_name, pool=pool),
                stream,
                source_image=source_image,
                destination_image=image,
            )
        )
    console.print(f"\n[green]✓ Built {built}[/green]")
