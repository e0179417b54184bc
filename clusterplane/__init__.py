"""Clusterplane — multi-tenant control plane for provisioning compute clusters."""

__version__ = "0.1.0"
