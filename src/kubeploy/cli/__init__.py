"""Main CLI application module.

This module provides the main entry point for the kubeploy CLI.

Commands:
- deploy: Roll out an image for one process of an application
- remove: Delete the deployment and services of a process
- labels: Show the labels of a deployed process
- inspect: Retag an image and print the metadata it declares
- build: Build an application archive into an image
"""

import typer

from .commands import build, deploy, inspect, labels, remove

# Create the main CLI application
app = typer.Typer(
    help="🚀 kubeploy - Build and deploy applications on Kubernetes",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command()(deploy)
app.command()(remove)
app.command()(labels)
app.command()(inspect)
app.command()(build)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
