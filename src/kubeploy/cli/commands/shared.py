"""Shared utilities for CLI commands.

This module provides the console, error reporting and configuration loading
used by every command.
"""

from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from kubeploy.errors import ProvisionError
from kubeploy.infra.k8s import get_namespace
from kubeploy.runtime.config import ProvisionerConfig, load_config
from kubeploy.runtime.config.config_loader import CONFIG_PATH

# Shared console instance for consistent output
console = Console()


def handle_error(
    message: str, details: str | None = None, exit_code: int = 1
) -> NoReturn:
    """Handle an error by printing a message and exiting.

    Args:
        message: Error message to display
        details: Optional additional details
        exit_code: Exit code to use
    """
    console.print(f"\n[bold red]❌ {escape(message)}[/bold red]\n")
    if details:
        console.print(Panel(escape(details), title="Details", border_style="red"))
    raise typer.Exit(exit_code)


def print_header(title: str, style: str = "blue") -> None:
    """Print a styled header panel.

    Args:
        title: Header title text
        style: Border style color
    """
    console.print(
        Panel.fit(
            f"[bold {style}]{title}[/bold {style}]",
            border_style=style,
        )
    )


def get_config(config_path: Path | None, namespace: str | None) -> ProvisionerConfig:
    """Load the provisioner configuration for a command.

    Falls back to defaults when no file is given and ``kubeploy.yaml`` is
    absent. An explicit ``namespace`` overrides the configured one.
    """
    path = config_path or CONFIG_PATH
    if config_path is not None or path.exists():
        try:
            config = load_config(path)
        except (ValueError, FileNotFoundError) as e:
            handle_error("Invalid configuration", str(e))
    else:
        config = ProvisionerConfig(namespace=get_namespace())
    if namespace:
        config = config.model_copy(update={"namespace": namespace})
    return config


def with_error_handling(func: Callable[..., None]) -> Callable[..., None]:
    """Decorator to wrap command functions with standard error handling.

    Catches provisioning errors and formats them consistently.

    Args:
        func: The command function to wrap

    Returns:
        Wrapped function with error handling
    """

    @wraps(func)
    def wrapper(*args: object, **kwargs: object) -> None:
        try:
            func(*args, **kwargs)
        except ProvisionError as e:
            handle_error(e.message, e.details)
        except KeyboardInterrupt:
            console.print("\n[dim]Operation cancelled by user.[/dim]")
            raise typer.Exit(130) from None

    return wrapper
