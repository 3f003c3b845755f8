"""Tier selection and escalation."""
