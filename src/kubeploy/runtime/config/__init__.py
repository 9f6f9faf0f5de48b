"""Provisioner configuration loading."""

from .config_data import ProvisionerConfig
from .config_loader import load_config

__all__ = ["ProvisionerConfig", "load_config"]
