"""Kubernetes operator that keeps UpCloud servers in line with UpCloudVM resources."""

__version__ = "0.1.0"
