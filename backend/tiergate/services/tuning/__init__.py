"""Live tuning parameters and the auto-tuning loop."""
