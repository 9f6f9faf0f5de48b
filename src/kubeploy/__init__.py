"""kubeploy - build and deploy application workloads onto Kubernetes."""

__version__ = "0.1.0"
