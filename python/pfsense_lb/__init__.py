"""Provision Kubernetes LoadBalancer IPs as pfSense port forwards."""

__version__ = "0.1.0"
