import numpy as np
import pytest
import torch
from torch.nn import functional as F

import ops
from conftest import numerical_gradient
from errors import CacheMissingError


def test_max_pool_routes_gradient():
    op = ops.MaxPool(2, stride=2)
    x = np.array([[1.0, 5.0], [3.0, 2.0]])

    y = op.forward(x, index=0)
    assert np.array_equal(y, [[5.0]])
    g, _ = op.backward(np.array([[1.0]]), x, index=0)
    assert np.array_equal(g, [[0.0, 1.0], [0.0, 0.0]])


def test_max_pool_against_torch(rng):
    op = ops.MaxPool(2, stride=2)
    x = rng.normal(size=(3, 6, 8))
    y = op.forward(x, index=0)

    x_torch = torch.tensor(x[np.newaxis], requires_grad=True)
    y_torch = F.max_pool2d(x_torch, 2, stride=2)
    tg = rng.normal(size=y.shape)
    (y_torch * torch.tensor(tg[np.newaxis])).sum().backward()

    g, _ = op.backward(tg, x, index=0)
    assert np.allclose(y, y_torch.detach().numpy()[0])
    assert np.allclose(g, x_torch.grad.numpy()[0])


def test_overlapping_windows_cumulate(rng):
    op = ops.MaxPool(2, stride=1)
    x = np.array([[0.0, 0.0, 0.0], [0.0, 9.0, 0.0], [0.0, 0.0, 0.0]])
    y = op.forward(x, index=0)
    assert np.array_equal(y, np.full((2, 2), 9.0))

    g, _ = op.backward(np.ones((2, 2)), x, index=0)
    assert g[1, 1] == 4.0
    assert g.sum() == 4.0


def test_max_pool_dilation(rng):
    op = ops.MaxPool(2, stride=1, dilation=2)
    x = rng.normal(size=(5, 5))
    y = op.forward(x, index=0)
    assert y.shape == (3, 3)
    assert np.isclose(y[0, 0], max(x[0, 0], x[0, 2], x[2, 0], x[2, 2]))

    tg = rng.normal(size=y.shape)
    g, _ = op.backward(tg, x, index=0)
    assert np.allclose(g, numerical_gradient(lambda v: ops.MaxPool(2, 1, 2).forward(v), x, tg), atol=1e-6)


def test_average_pool(rng):
    op = ops.AveragePool(2, stride=2)
    x = rng.normal(size=(2, 4, 4))
    y = op.forward(x)
    assert np.allclose(y, x.reshape(2, 2, 2, 2, 2).mean(axis=(2, 4)))

    g, _ = op.backward(np.ones(y.shape), x)
    assert np.allclose(g, np.full(x.shape, 0.25))


def test_average_pool_gradient_check(rng):
    op = ops.AveragePool((2, 3), stride=1, dilation=2)
    x = rng.normal(size=(6, 7))
    tg = rng.normal(size=op.output_shape(x.shape))
    g, _ = op.backward(tg, x)
    assert np.allclose(g, numerical_gradient(op.forward, x, tg), atol=1e-6)


def test_random_pool_routes_to_selected_input(rng):
    op = ops.RandomPool(2, stride=2, rng=np.random.default_rng(7))
    x = rng.normal(size=(4, 4))
    y = op.forward(x, index=1)

    g, _ = op.backward(np.ones(y.shape), x, index=1)
    # one input per window receives the gradient and holds the pooled value
    assert g.sum() == 4.0
    assert np.allclose(np.sort(x[g == 1.0]), np.sort(y.ravel()))


def test_cyclic_pool_walks_window():
    op = ops.CyclicPool(2, stride=2)
    x = np.arange(16.0).reshape(4, 4)
    y = op.forward(x, index=0)
    # turn 0: (0, 0), turn 1: (1, 0), turn 2: (0, 1), turn 3: (1, 1)
    assert np.array_equal(y, [[0.0, 6.0], [9.0, 15.0]])

    y = op.forward(x, index=1)
    assert np.array_equal(y, [[0.0, 6.0], [9.0, 15.0]])

    op.reset()
    y = op.forward(x[:2, :2], index=0)
    assert np.array_equal(y, [[0.0]])


def test_missing_positions():
    op = ops.MaxPool(2)
    with pytest.raises(CacheMissingError):
        op.backward(np.ones((1, 1)), np.ones((2, 2)), index=3)

    op.forward(np.ones((2, 2)), index=3)
    op.backward(np.ones((1, 1)), np.ones((2, 2)), index=3)
    with pytest.raises(CacheMissingError):
        op.backward(np.ones((1, 1)), np.ones((2, 2)), index=3)
