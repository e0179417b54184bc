"""Cluster records."""
