import jax
import jax.numpy as jnp
import jax.scipy.special as jsc
import numpy as np
import pytest

from conftest import calc_total_diff, numerical_gradient
from functions import BinaryFunction, BinaryFunctionType, UnaryFunction, UnaryFunctionType

# functions defined on the whole real line
SMOOTH = [
    UnaryFunctionType.COS, UnaryFunctionType.COSH, UnaryFunctionType.EXP, UnaryFunctionType.SIN,
    UnaryFunctionType.SINH, UnaryFunctionType.TANH, UnaryFunctionType.LINEAR, UnaryFunctionType.SIGMOID,
    UnaryFunctionType.SWISH, UnaryFunctionType.BIPOLARSIGMOID, UnaryFunctionType.TANHSIG,
    UnaryFunctionType.SOFTPLUS, UnaryFunctionType.SOFTSIGN, UnaryFunctionType.GELU,
    UnaryFunctionType.GAUSSIAN, UnaryFunctionType.RELU_COS, UnaryFunctionType.RELU_SIN,
    UnaryFunctionType.ELU, UnaryFunctionType.SELU, UnaryFunctionType.RELU,
    UnaryFunctionType.HARDSIGMOID, UnaryFunctionType.HARDTANH, UnaryFunctionType.SINACT,
    UnaryFunctionType.ABS,
]

POSITIVE = [
    UnaryFunctionType.LOG, UnaryFunctionType.LOG10, UnaryFunctionType.SQRT,
    UnaryFunctionType.CBRT, UnaryFunctionType.MULINV,
]


def _away_from_kinks(x):
    # keep samples off the points where the piecewise functions are not differentiable
    x = np.where(np.abs(x) < 0.05, 0.3, x)
    for kink in (2.0, 4.0, 0.5 * np.pi):
        x = np.where(np.abs(np.abs(x) - kink) < 0.05, kink + 0.3, x)
    return x


@pytest.mark.parametrize("function_type", SMOOTH)
def test_unary_gradient_matches_finite_difference(function_type, rng):
    x = _away_from_kinks(rng.uniform(-3.0, 3.0, size=(4, 3)))
    tg = rng.normal(size=(4, 3))
    function = UnaryFunction(function_type)

    g = function.gradient(x, function.apply(x), tg)
    expected = numerical_gradient(function.apply, x, tg)
    assert np.allclose(g, expected, atol=1e-5)


@pytest.mark.parametrize("function_type", POSITIVE)
def test_unary_gradient_positive_domain(function_type, rng):
    x = rng.uniform(0.5, 3.0, size=(3, 3))
    tg = rng.normal(size=(3, 3))
    function = UnaryFunction(function_type)

    g = function.gradient(x, function.apply(x), tg)
    assert np.allclose(g, numerical_gradient(function.apply, x, tg), atol=1e-5)


def test_logit_and_tan(rng):
    x = rng.uniform(0.1, 0.9, size=(2, 2))
    tg = np.ones((2, 2))
    for function_type in (UnaryFunctionType.LOGIT, UnaryFunctionType.TAN):
        function = UnaryFunction(function_type)
        g = function.gradient(x, function.apply(x), tg)
        assert np.allclose(g, numerical_gradient(function.apply, x, tg), atol=1e-5)


def test_gelu_gradient_against_jax(rng):
    x = rng.normal(size=(5, 2))
    y_real = rng.normal(size=(5, 2))
    function = UnaryFunction(UnaryFunctionType.GELU)

    # mse of gelu, gradient through the table derivative
    y = function.apply(x)
    tg = (y - y_real) * 2.0 / y.size
    dx = function.gradient(x, y, tg)

    def jax_graph(x):
        y = 0.5 * x * (1.0 + jsc.erf(x / jnp.sqrt(2.0)))
        y_diff = y - y_real
        return jnp.mean(jnp.square(y_diff))

    x_jax_grad = jax.grad(jax_graph)(x)
    assert calc_total_diff(dx, x_jax_grad) < 1e-8


def test_leaky_relu_alpha():
    function = UnaryFunction(UnaryFunctionType.RELU, alpha=0.1)
    x = np.array([[-2.0, 3.0]])
    assert np.allclose(function.apply(x), [[-0.2, 3.0]])
    assert np.allclose(function.derivative(x, function.apply(x)), [[0.1, 1.0]])


def test_softmax_columns_sum_to_one(rng):
    function = UnaryFunction(UnaryFunctionType.SOFTMAX)
    x = rng.normal(size=(4, 3))
    y = function.apply(x)
    assert np.allclose(y.sum(axis=0), np.ones(3))

    tg = rng.normal(size=(4, 3))
    g = function.gradient(x, y, tg)
    assert np.allclose(g, numerical_gradient(function.apply, x, tg), atol=1e-6)


def test_softmax_has_no_elementwise_derivative():
    function = UnaryFunction(UnaryFunctionType.SOFTMAX)
    with pytest.raises(ValueError):
        function.derivative(np.zeros((2, 1)), np.zeros((2, 1)))


@pytest.mark.parametrize("function_type", list(BinaryFunctionType))
def test_binary_derivatives(function_type, rng):
    x1 = rng.uniform(0.5, 2.0, size=(3, 2))
    x2 = rng.uniform(0.5, 2.0, size=(3, 2)) + 0.05
    tg = rng.normal(size=(3, 2))
    function = BinaryFunction(function_type)

    d1, d2 = function.derivatives(x1, x2, function.apply(x1, x2))
    assert np.allclose(tg * d1, numerical_gradient(lambda x: function.apply(x, x2), x1, tg), atol=1e-5)
    assert np.allclose(tg * d2, numerical_gradient(lambda x: function.apply(x1, x), x2, tg), atol=1e-5)
