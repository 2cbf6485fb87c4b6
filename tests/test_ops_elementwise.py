import jax
import jax.numpy as jnp
import numpy as np
import pytest

import ops
from conftest import calc_total_diff, mse_gradient, numerical_gradient
from errors import InvalidParameterError
from functions import BinaryFunction, BinaryFunctionType, UnaryFunction, UnaryFunctionType

BINARY = [ops.Add, ops.Subtract, ops.Multiply, ops.Divide]


@pytest.mark.parametrize("op_class", BINARY)
def test_binary_gradient_check(op_class, rng):
    op = op_class()
    x1 = rng.normal(size=(3, 4))
    x2 = rng.uniform(0.5, 2.0, size=(3, 4))
    tg = rng.normal(size=(3, 4))

    g1, g2 = op.backward(tg, x1, x2, op.forward(x1, x2))
    assert np.allclose(g1, numerical_gradient(lambda x: op.forward(x, x2), x1, tg), atol=1e-6)
    assert np.allclose(g2, numerical_gradient(lambda x: op.forward(x1, x), x2, tg), atol=1e-6)


@pytest.mark.parametrize("op_class, function", [
    (ops.Add, np.add), (ops.Subtract, np.subtract), (ops.Multiply, np.multiply), (ops.Divide, np.divide),
])
def test_scalar_broadcast(op_class, function, rng):
    op = op_class()
    matrix = rng.uniform(1.0, 2.0, size=(3, 4))
    scalar = np.array([[2.5]])

    assert op.output_shape((3, 4), (1, 1)) == (3, 4)
    assert op.output_shape((1, 1), (3, 4)) == (3, 4)
    assert np.allclose(op.forward(matrix, scalar), function(matrix, np.full((3, 4), 2.5)))
    assert np.allclose(op.forward(scalar, matrix), function(np.full((3, 4), 2.5), matrix))


def test_scalar_gradient_is_summed(rng):
    op = ops.Multiply()
    matrix = rng.normal(size=(3, 4))
    scalar = np.array([[2.0]])
    tg = rng.normal(size=(3, 4))

    g_matrix, g_scalar = op.backward(tg, matrix, scalar)
    assert g_scalar.shape == (1, 1)
    assert np.allclose(g_scalar, np.sum(tg * matrix))
    assert np.allclose(g_matrix, tg * 2.0)


def test_needs_skips_gradient(rng):
    x1 = rng.normal(size=(2, 2))
    x2 = rng.normal(size=(2, 2))
    g1, g2 = ops.Multiply().backward(np.ones((2, 2)), x1, x2, needs=(True, False))
    assert g1 is not None
    assert g2 is None


def test_dot_against_jax(rng):
    x = rng.normal(size=(4, 3))
    w = rng.normal(size=(3, 5))
    y_real = rng.normal(size=(4, 5))
    op = ops.Dot()

    y = op.forward(x, w)
    assert op.output_shape(x.shape, w.shape) == (4, 5)
    dx, dw = op.backward(mse_gradient(y_real, y), x, w, y)

    def jax_graph(x, w):
        y_diff = jnp.matmul(x, w) - y_real
        return jnp.mean(jnp.square(y_diff))

    x_jax_grad, w_jax_grad = jax.grad(jax_graph, argnums=(0, 1))(x, w)
    assert calc_total_diff(dx, x_jax_grad) < 1e-8
    assert calc_total_diff(dw, w_jax_grad) < 1e-8


def test_unary_function_op(rng):
    op = ops.UnaryFunctionOp(UnaryFunction(UnaryFunctionType.TANH))
    x = rng.normal(size=(3, 3))
    tg = rng.normal(size=(3, 3))

    g, none = op.backward(tg, x, y=op.forward(x))
    assert none is None
    assert np.allclose(g, numerical_gradient(op.forward, x, tg), atol=1e-6)
    assert op.describe("x", None, "y") == "TANH(x) = y"


def test_binary_function_op_broadcast(rng):
    op = ops.BinaryFunctionOp(BinaryFunction(BinaryFunctionType.POW))
    x = rng.uniform(0.5, 2.0, size=(2, 3))
    exponent = np.array([[2.0]])

    y = op.forward(x, exponent)
    assert np.allclose(y, x * x)
    g1, g2 = op.backward(np.ones((2, 3)), x, exponent, y)
    assert np.allclose(g1, 2.0 * x)
    assert g2.shape == (1, 1)
    assert np.allclose(g2, np.sum(x * x * np.log(x)))


def test_dot_rejects_mismatched_shapes():
    with pytest.raises(ValueError):
        ops.Dot().output_shape((2, 3), (2, 3))


def test_op_is_callable(rng):
    x1 = rng.normal(size=(2, 2))
    x2 = rng.normal(size=(2, 2))
    assert np.array_equal(ops.Add()(x1, x2), x1 + x2)


@pytest.mark.parametrize("op_class", BINARY)
def test_binary_rejects_mismatched_shapes(op_class):
    with pytest.raises(InvalidParameterError):
        op_class().output_shape((3, 1), (1, 3))
