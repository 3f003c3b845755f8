"""
Significance testing for experiments.

A pooled two-proportion z-test is enough here; no multiple-comparison
correction and no sequential-testing adjustments.
"""
import math
from typing import Tuple


def normal_cdf(x: float) -> float:
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


def two_proportion_z_test(
    successes_a: int,
    n_a: int,
    successes_b: int,
    n_b: int,
) -> Tuple[float, float]:
    """
    Compare two success rates.

    Returns:
        (z, p) where z is positive when B beats A and p is two-tailed.
        A degenerate pooled proportion (all successes or all failures)
        gives (0.0, 1.0).
    """
    if n_a <= 0 or n_b <= 0:
        raise ValueError("sample sizes must be positive")

    p_a = successes_a / n_a
    p_b = successes_b / n_b
    pooled = (successes_a + successes_b) / (n_a + n_b)
    standard_error = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n_a + 1.0 / n_b))
    if standard_error == 0.0:
        return 0.0, 1.0

    z = (p_b - p_a) / standard_error
    p_value = 2.0 * (1.0 - normal_cdf(abs(z)))
    return z, p_value
