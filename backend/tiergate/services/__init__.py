"""Routing-core services."""
