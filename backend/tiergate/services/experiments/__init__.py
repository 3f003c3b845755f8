"""Parameter experiments (A/B testing)."""
