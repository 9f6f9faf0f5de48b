"""Shared test fixtures."""

from .cluster import FakeClusterController, fake_cluster, provisioner_config

__all__ = ["FakeClusterController", "fake_cluster", "provisioner_config"]
