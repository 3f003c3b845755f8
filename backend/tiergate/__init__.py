"""
Tiered AI routing core.

Routes requests across provider tiers with confidence-based escalation,
guarded by per-provider circuit breakers and bounded retries, fronted by a
semantic cache, and tuned live by experiments and an anomaly-driven tuner.
"""

__version__ = "1.0.0"
