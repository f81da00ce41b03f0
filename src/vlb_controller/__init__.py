"""Vultr load balancer controller for Kubernetes LoadBalancer services."""

__version__ = "0.1.0"
