import numpy as np
import pytest

import ops
from conftest import numerical_gradient
from errors import InvalidParameterError


def test_flatten_unflatten(rng):
    x = rng.normal(size=(2, 3, 4))
    flatten = ops.Flatten()
    column = flatten.forward(x)
    assert flatten.output_shape(x.shape) == (24, 1)
    assert column.shape == (24, 1)

    unflatten = ops.Unflatten((2, 3, 4))
    assert np.array_equal(unflatten.forward(column), x)

    tg = rng.normal(size=(24, 1))
    g, _ = flatten.backward(tg, x)
    assert np.array_equal(unflatten.forward(tg), g)


def test_unflatten_rejects_size_mismatch():
    with pytest.raises(InvalidParameterError):
        ops.Unflatten((2, 2)).output_shape((5, 1))


@pytest.mark.parametrize("vertically, shape1, shape2", [
    (True, (2, 3), (4, 3)),
    (False, (2, 3), (2, 5)),
    (True, (2, 1, 3), (2, 2, 3)),
])
def test_join_unjoin_inverse(vertically, shape1, shape2, rng):
    a = rng.normal(size=shape1)
    b = rng.normal(size=shape2)
    join = ops.Join(vertically)
    joined = join.forward(a, b)
    assert joined.shape == join.output_shape(shape1, shape2)

    if vertically:
        first = ops.Unjoin(shape1)
        second = ops.Unjoin(shape2, row=shape1[-2])
    else:
        first = ops.Unjoin(shape1)
        second = ops.Unjoin(shape2, column=shape1[-1])
    assert np.array_equal(first.forward(joined), a)
    assert np.array_equal(second.forward(joined), b)


def test_join_gradient_splits(rng):
    a = rng.normal(size=(2, 3))
    b = rng.normal(size=(2, 2))
    tg = rng.normal(size=(2, 5))
    ga, gb = ops.Join(vertically=False).backward(tg, a, b)
    assert np.array_equal(ga, tg[:, :3])
    assert np.array_equal(gb, tg[:, 3:])


def test_join_rejects_mismatch():
    with pytest.raises(InvalidParameterError):
        ops.Join(vertically=True).output_shape((2, 3), (2, 4))


def test_unjoin_gradient_scatters(rng):
    x = rng.normal(size=(4, 4))
    op = ops.Unjoin((2, 2), row=1, column=2)
    assert np.array_equal(op.forward(x), x[1:3, 2:4])

    tg = rng.normal(size=(2, 2))
    g, _ = op.backward(tg, x)
    assert np.allclose(g, numerical_gradient(op.forward, x, tg))


def test_unjoin_out_of_bounds():
    with pytest.raises(InvalidParameterError):
        ops.Unjoin((2, 2), row=3).output_shape((4, 4))


def test_gradient_clipping():
    op = ops.GradientClipping(1.0)
    x = np.ones((2, 2))
    assert np.array_equal(op.forward(x), x)

    large = np.full((2, 2), 3.0)
    g, _ = op.backward(large, x)
    assert np.isclose(np.linalg.norm(g), 1.0)
    assert np.allclose(g / np.linalg.norm(g), large / np.linalg.norm(large))

    small = np.full((2, 2), 0.1)
    g, _ = op.backward(small, x)
    assert np.array_equal(g, small)

    with pytest.raises(InvalidParameterError):
        ops.GradientClipping(0.0)


def test_dropout_active_and_inactive(rng):
    op = ops.Dropout(0.5, rng=np.random.default_rng(3))
    x = np.ones((50, 40))

    y = op.forward(x, active=True)
    assert set(np.unique(y)) <= {0.0, 2.0}
    assert 0.3 < np.mean(y == 0.0) < 0.7
    assert np.array_equal(op.forward(x, active=False), x)

    tg = rng.normal(size=x.shape)
    g, _ = op.backward(tg, x)
    assert np.array_equal(g, tg)


def test_dropout_monte_carlo_ignores_active():
    op = ops.Dropout(1.0, monte_carlo=True)
    assert np.array_equal(op.forward(np.ones((2, 2)), active=False), np.zeros((2, 2)))


@pytest.mark.parametrize("probability", [-0.1, 1.5])
def test_dropout_probability_range(probability):
    with pytest.raises(InvalidParameterError):
        ops.Dropout(probability)
