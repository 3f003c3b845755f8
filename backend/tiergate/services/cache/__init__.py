"""Semantic response cache."""
