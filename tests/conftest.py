"""
    Helpers shared by the tests:
    an mse loss gradient to drive the backward passes and
    a central finite difference gradient for the checks.
"""

import jax
import numpy as np
import pytest

jax.config.update("jax_enable_x64", True)


def mse_gradient(y_real: np.ndarray, y_predicted: np.ndarray) -> np.ndarray:
    n = y_real.size
    rn = 1.0 / float(n)
    return (y_predicted - y_real) * 2.0 * rn


def calc_total_diff(dy_autograd: np.ndarray, dy_expected: np.ndarray) -> float:
    return float(np.sqrt(np.square(np.asarray(dy_autograd) - np.asarray(dy_expected)).sum()))


def numerical_gradient(f, x: np.ndarray, tg: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """Gradient of sum(f(x) * tg) by central differences."""
    x = np.array(x, dtype=np.float64)
    g = np.zeros_like(x)
    it = np.nditer(x, flags=["multi_index"])
    for _ in it:
        i = it.multi_index
        saved = x[i]
        x[i] = saved + eps
        plus = np.sum(f(x) * tg)
        x[i] = saved - eps
        minus = np.sum(f(x) * tg)
        x[i] = saved
        g[i] = (plus - minus) / (2.0 * eps)
    return g


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
