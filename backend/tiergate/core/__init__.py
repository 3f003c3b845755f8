"""
Core modules: logging, settings, metrics, errors and the resilience
primitives (circuit breaker, retry executor, shared key-value store).
"""
