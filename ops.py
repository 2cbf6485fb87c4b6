"""
    This module implements the operation kernels
    of the procedure graph.
    Each kernel has a forward function and, where differentiable,
    a backward function computing the gradients of its arguments.

    Kernels work on raw numpy arrays and know nothing about nodes
    or expressions. Parameters (stride, window, threshold...) are
    fixed at construction, the shapes of the results are known
    before any value is computed (see output_shape).

    tg: total gradient of y (the output of the operator)

    Layout: (rows, columns) or (depth, rows, columns),
    convolution filters are (filters, depth, rows, columns).
"""

from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
from numpy.lib.stride_tricks import sliding_window_view
from torch.nn import functional as F
from torch.nn import grad as nn_grad

from errors import CacheMissingError, InvalidParameterError
from functions import BinaryFunction, UnaryFunction

Shape = Tuple[int, ...]
Gradients = Tuple[Optional[np.ndarray], Optional[np.ndarray]]


class OpKind(Enum):
    ADD = "ADD"
    SUBTRACT = "SUBTRACT"
    MULTIPLY = "MULTIPLY"
    DIVIDE = "DIVIDE"
    DOT = "DOT"
    UNARY_FUNCTION = "UNARY_FUNCTION"
    BINARY_FUNCTION = "BINARY_FUNCTION"
    SUM = "SUM"
    MEAN = "MEAN"
    VARIANCE = "VARIANCE"
    STANDARD_DEVIATION = "STANDARD_DEVIATION"
    NORM = "NORM"
    CONVOLVE = "CONVOLVE"
    CROSSCORRELATE = "CROSSCORRELATE"
    WINOGRAD_CONVOLUTION = "WINOGRAD_CONVOLUTION"
    MAX_POOL = "MAX_POOL"
    AVERAGE_POOL = "AVERAGE_POOL"
    RANDOM_POOL = "RANDOM_POOL"
    CYCLIC_POOL = "CYCLIC_POOL"
    FLATTEN = "FLATTEN"
    UNFLATTEN = "UNFLATTEN"
    JOIN = "JOIN"
    UNJOIN = "UNJOIN"
    GRADIENT_CLIPPING = "GRADIENT_CLIPPING"
    DROPOUT = "DROPOUT"


class Direction(Enum):
    """
        Axis collapsed by a reduction.
        ROWS collapses the rows (one value per column),
        COLUMNS collapses the columns (one value per row).
    """
    ALL = "ALL"
    ROWS = "ROWS"
    COLUMNS = "COLUMNS"
    DEPTH = "DEPTH"


def _as_3d(x: np.ndarray) -> np.ndarray:
    return x[np.newaxis] if x.ndim == 2 else x


def _as_3d_shape(shape: Shape) -> Shape:
    return (1, *shape) if len(shape) == 2 else tuple(shape)


def _unbroadcast(g: np.ndarray, shape: Shape) -> np.ndarray:
    # sums the gradient back to the shape of a broadcast argument
    if g.shape == tuple(shape):
        return g
    while g.ndim > len(shape):
        g = g.sum(axis=0)
    axes = tuple(i for i, size in enumerate(shape) if size == 1 and g.shape[i] != 1)
    if axes:
        g = g.sum(axis=axes, keepdims=True)
    return g.reshape(shape)


def _pair(value) -> Tuple[int, int]:
    if isinstance(value, int):
        return value, value
    rows, columns = value
    return int(rows), int(columns)


def _window_output_size(size: int, window: int, stride: int, dilation: int) -> int:
    return (size - dilation * (window - 1) - 1) // stride + 1


class Op:
    """
        Base class of all kernels.

        forward(x1, x2) -> y
        backward(tg, x1, x2, y) -> (g1, g2)

        index is the sample index the call belongs to, kernels
        caching data between forward and backward key it by index.
        needs tells which argument gradients are actually wanted
        (an argument with stop gradient is skipped).
    """
    kind: OpKind = None
    arity = 1
    expression_template = "{name}({a1}) = {r}"
    gradient_templates: Tuple[str, ...] = ("{name}_GRADIENT(d{r})",)

    def __init__(self):
        self._cache: Dict[Optional[int], object] = dict()

    def __call__(self, x1: np.ndarray, x2: Optional[np.ndarray] = None, index: Optional[int] = None) -> np.ndarray:
        return self.forward(x1, x2, index)

    @property
    def name(self) -> str:
        return self.kind.value

    def signature(self) -> str:
        return self.name

    def output_shape(self, shape1: Shape, shape2: Optional[Shape] = None) -> Shape:
        return tuple(shape1)

    def forward(self, x1: np.ndarray, x2: Optional[np.ndarray] = None,
                index: Optional[int] = None, active: bool = True) -> np.ndarray:
        raise NotImplementedError("Op forward requires implementation")

    def backward(self, tg: np.ndarray, x1: np.ndarray, x2: Optional[np.ndarray] = None,
                 y: Optional[np.ndarray] = None, index: Optional[int] = None,
                 needs: Tuple[bool, bool] = (True, True)) -> Gradients:
        raise NotImplementedError("Op backward requires implementation")

    def reset(self):
        self._cache.clear()

    def begin_batch(self):
        # entries left by a truncated or skipped backward step
        # belong to the previous batch
        self._cache.clear()

    def _pop_cache(self, index: Optional[int]):
        if index not in self._cache:
            raise CacheMissingError(f"{self.name}: no cached forward data for sample index {index}.")
        return self._cache.pop(index)

    def describe(self, a1: str, a2: Optional[str], r: str) -> str:
        return self.expression_template.format(name=self.signature(), a1=a1, a2=a2, r=r)

    def describe_gradients(self, a1: str, a2: Optional[str], r: str) -> Tuple[str, ...]:
        return tuple(t.format(name=self.name, a1=a1, a2=a2, r=r) for t in self.gradient_templates)


# elementwise

class BinaryOp(Op):
    """
        Elementwise operation of two arguments of the same shape.
        A scalar (1, 1) argument is broadcast over the other one,
        its gradient is summed back to (1, 1).
    """
    arity = 2
    expression_template = "{a1} {name} {a2} = {r}"

    def output_shape(self, shape1: Shape, shape2: Optional[Shape] = None) -> Shape:
        shape1, shape2 = tuple(shape1), tuple(shape2)
        if shape1 == shape2 or shape2 == (1, 1):
            return shape1
        if shape1 == (1, 1):
            return shape2
        raise InvalidParameterError(f"{self.name}: shapes {shape1} and {shape2} differ and neither is scalar.")


class Add(BinaryOp):
    kind = OpKind.ADD
    expression_template = "{a1} + {a2} = {r}"
    gradient_templates = ("d{r}", "d{r}")

    def forward(self, x1, x2=None, index=None, active=True):
        return x1 + x2

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        g1 = _unbroadcast(tg, x1.shape) if needs[0] else None
        g2 = _unbroadcast(tg, x2.shape) if needs[1] else None
        return g1, g2


class Subtract(BinaryOp):
    kind = OpKind.SUBTRACT
    expression_template = "{a1} - {a2} = {r}"
    gradient_templates = ("d{r}", "-d{r}")

    def forward(self, x1, x2=None, index=None, active=True):
        return x1 - x2

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        g1 = _unbroadcast(tg, x1.shape) if needs[0] else None
        g2 = _unbroadcast(-tg, x2.shape) if needs[1] else None
        return g1, g2


class Multiply(BinaryOp):
    kind = OpKind.MULTIPLY
    expression_template = "{a1} * {a2} = {r}"
    gradient_templates = ("d{r} * {a2}", "d{r} * {a1}")

    def forward(self, x1, x2=None, index=None, active=True):
        return x1 * x2

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        g1 = _unbroadcast(tg * x2, x1.shape) if needs[0] else None
        g2 = _unbroadcast(tg * x1, x2.shape) if needs[1] else None
        return g1, g2


class Divide(BinaryOp):
    kind = OpKind.DIVIDE
    expression_template = "{a1} / {a2} = {r}"
    gradient_templates = ("d{r} / {a2}", "-d{r} * {a1} / {a2}^2")

    def forward(self, x1, x2=None, index=None, active=True):
        return x1 / x2

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        g1 = _unbroadcast(tg / x2, x1.shape) if needs[0] else None
        g2 = _unbroadcast(-tg * x1 / (x2 * x2), x2.shape) if needs[1] else None
        return g1, g2


class Dot(Op):
    kind = OpKind.DOT
    arity = 2
    expression_template = "{a1} x {a2} = {r}"
    gradient_templates = ("d{r} x {a2}.T", "{a1}.T x d{r}")

    def output_shape(self, shape1, shape2=None):
        if shape1[-1] != shape2[-2]:
            raise InvalidParameterError(f"{self.name}: cannot multiply {shape1} by {shape2}.")
        return shape1[-2], shape2[-1]

    def forward(self, x1, x2=None, index=None, active=True):
        return np.matmul(x1, x2)

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        g1 = np.matmul(tg, np.transpose(x2)) if needs[0] else None  # DA = DY @ B.T
        g2 = np.matmul(np.transpose(x1), tg) if needs[1] else None  # DB = A.T @ DY
        return g1, g2


class UnaryFunctionOp(Op):
    kind = OpKind.UNARY_FUNCTION
    expression_template = "{name}({a1}) = {r}"
    gradient_templates = ("d{r} * {name}_GRADIENT({r})",)

    def __init__(self, function: UnaryFunction):
        super().__init__()
        self.function = function

    def signature(self):
        return str(self.function)

    def describe_gradients(self, a1, a2, r):
        return (f"d{r} * {self.function}_GRADIENT({r})",)

    def forward(self, x1, x2=None, index=None, active=True):
        return self.function.apply(x1)

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        if y is None:
            y = self.function.apply(x1)
        return self.function.gradient(x1, y, tg), None


class BinaryFunctionOp(BinaryOp):
    kind = OpKind.BINARY_FUNCTION
    expression_template = "{name}({a1}, {a2}) = {r}"

    def __init__(self, function: BinaryFunction):
        super().__init__()
        self.function = function

    def signature(self):
        return str(self.function)

    def describe_gradients(self, a1, a2, r):
        return (f"d{r} * {self.function}_GRADIENT({a1}, {a2})",
                f"d{r} * {self.function}_GRADIENT({a2}, {a1})")

    def forward(self, x1, x2=None, index=None, active=True):
        return self.function.apply(x1, x2)

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        if y is None:
            y = self.function.apply(x1, x2)
        d1, d2 = self.function.derivatives(x1, x2, y)
        g1 = _unbroadcast(tg * d1, x1.shape) if needs[0] else None
        g2 = _unbroadcast(tg * d2, x2.shape) if needs[1] else None
        return g1, g2


# reductions

class Reduction(Op):
    """
        Reduction over a direction of one tensor, or elementwise
        over all sample tensors of a batch (across_samples).

        Both forms share the same code: the batch is stacked
        along a new first axis which is then reduced.
        Dimensions are kept, a full reduction of a (rows, columns)
        tensor gives a (1, 1) tensor.
    """
    gradient_templates = ("d{r} * {name}_GRADIENT({a1})",)

    def __init__(self, direction: Direction = Direction.ALL, across_samples: bool = False):
        super().__init__()
        self.direction = direction
        self.across_samples = across_samples

    def signature(self):
        return self.name if self.direction == Direction.ALL else f"{self.name}_{self.direction.value}"

    def axes(self, ndim: int) -> Tuple[int, ...]:
        if self.direction == Direction.ALL:
            return tuple(range(ndim))
        if self.direction == Direction.ROWS:
            return (ndim - 2,)
        if self.direction == Direction.COLUMNS:
            return (ndim - 1,)
        return (0,) if ndim > 2 else ()

    def output_shape(self, shape1, shape2=None):
        if self.across_samples:
            return tuple(shape1)
        axes = self.axes(len(shape1))
        return tuple(1 if i in axes else size for i, size in enumerate(shape1))

    def forward(self, x1, x2=None, index=None, active=True):
        return self._reduce(x1, self.axes(x1.ndim), index)

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        return self._gradient(tg, x1, y, self.axes(x1.ndim), index), None

    def forward_samples(self, xs: Sequence[np.ndarray]) -> np.ndarray:
        return self._reduce(np.stack(xs), (0,), None)[0]

    def backward_samples(self, tg: np.ndarray, xs: Sequence[np.ndarray], y: Optional[np.ndarray] = None) -> List[np.ndarray]:
        stacked = np.stack(xs)
        g = self._gradient(tg[np.newaxis], stacked, None if y is None else y[np.newaxis], (0,), None)
        return list(g)

    def _reduce(self, x: np.ndarray, axes: Tuple[int, ...], index: Optional[int]) -> np.ndarray:
        raise NotImplementedError("Reduction requires implementation")

    def _gradient(self, tg: np.ndarray, x: np.ndarray, y: Optional[np.ndarray],
                  axes: Tuple[int, ...], index: Optional[int]) -> np.ndarray:
        raise NotImplementedError("Reduction gradient requires implementation")

    @staticmethod
    def _count(x: np.ndarray, axes: Tuple[int, ...]) -> int:
        return int(np.prod([x.shape[a] for a in axes])) if axes else 1


class Sum(Reduction):
    kind = OpKind.SUM
    gradient_templates = ("d{r}",)

    def _reduce(self, x, axes, index):
        return np.sum(x, axis=axes, keepdims=True)

    def _gradient(self, tg, x, y, axes, index):
        return np.broadcast_to(tg, x.shape).copy()


class Mean(Reduction):
    kind = OpKind.MEAN
    gradient_templates = ("d{r} / SIZE({a1})",)

    def _reduce(self, x, axes, index):
        return np.mean(x, axis=axes, keepdims=True)

    def _gradient(self, tg, x, y, axes, index):
        alpha = 1.0 / float(self._count(x, axes))
        return np.broadcast_to(tg, x.shape) * alpha


class Variance(Reduction):
    """
        Population variance, the mean computed in forward is
        cached per sample index for the backward step (until begin_batch).
    """
    kind = OpKind.VARIANCE
    gradient_templates = ("d{r} * ({a1} - MEAN({a1})) * 2 / SIZE({a1})",)

    def _reduce(self, x, axes, index):
        mean = np.mean(x, axis=axes, keepdims=True)
        self._cache[index] = mean
        return np.mean((x - mean) ** 2, axis=axes, keepdims=True)

    def _gradient(self, tg, x, y, axes, index):
        mean = self._pop_cache(index)
        n = float(self._count(x, axes))
        return tg * 2.0 * (x - mean) / n


class StandardDeviation(Reduction):
    kind = OpKind.STANDARD_DEVIATION
    gradient_templates = ("d{r} * ({a1} - MEAN({a1})) / (SIZE({a1}) * {r})",)

    def _reduce(self, x, axes, index):
        mean = np.mean(x, axis=axes, keepdims=True)
        self._cache[index] = mean
        return np.sqrt(np.mean((x - mean) ** 2, axis=axes, keepdims=True))

    def _gradient(self, tg, x, y, axes, index):
        mean = self._pop_cache(index)
        n = float(self._count(x, axes))
        if y is None:
            y = np.sqrt(np.mean((x - mean) ** 2, axis=axes, keepdims=True))
        safe = np.where(y > 0.0, y, 1.0)
        return np.where(y > 0.0, tg * (x - mean) / (n * safe), 0.0)


class Norm(Reduction):
    kind = OpKind.NORM

    def __init__(self, p: int = 2, direction: Direction = Direction.ALL, across_samples: bool = False):
        if p < 2:
            raise InvalidParameterError(f"NORM: p must be at least 2, got {p}.")
        super().__init__(direction, across_samples)
        self.p = p

    def signature(self):
        return f"{super().signature()}({self.p})"

    def describe_gradients(self, a1, a2, r):
        return (f"d{r} * (ABS({a1}) / {r})^{self.p - 1} * SGN({a1})",)

    def _reduce(self, x, axes, index):
        return np.power(np.sum(np.power(np.abs(x), self.p), axis=axes, keepdims=True), 1.0 / self.p)

    def _gradient(self, tg, x, y, axes, index):
        if y is None:
            y = self._reduce(x, axes, index)
        safe = np.where(y > 0.0, y, 1.0)
        derivative = np.power(np.abs(x) / safe, self.p - 1) * np.sign(x)
        return np.where(y > 0.0, tg * derivative, 0.0)


# convolution

def _filter_4d(w: np.ndarray) -> np.ndarray:
    if w.ndim == 2:
        return w[np.newaxis, np.newaxis]
    if w.ndim == 3:
        return w[:, np.newaxis]
    return w


def _filter_4d_shape(shape: Shape) -> Shape:
    if len(shape) == 2:
        return (1, 1, *shape)
    if len(shape) == 3:
        return shape[0], 1, shape[1], shape[2]
    return tuple(shape)


class Crosscorrelate(Op):
    """
        Sliding window multiply-accumulate of the input (argument 1)
        with the filter (argument 2), computed with torch.

        Filters: (rows, columns) for a single channel input,
        (filters, depth, rows, columns) in general or
        (depth, rows, columns) in depth separable mode where every
        input channel has its own filter.
    """
    kind = OpKind.CROSSCORRELATE
    arity = 2
    expression_template = "{name}({a1}, {a2}) = {r}"
    gradient_templates = ("{name}_INPUT_GRADIENT(d{r}, {a2})", "{name}_FILTER_GRADIENT(d{r}, {a1})")
    flip = False

    def __init__(self, stride: int = 1, dilation: int = 1, depth_separable: bool = False):
        super().__init__()
        if stride < 1 or dilation < 1:
            raise InvalidParameterError(f"{self.name}: stride and dilation must be positive.")
        self.stride = stride
        self.dilation = dilation
        self.depth_separable = depth_separable

    def _groups(self, depth: int) -> int:
        return depth if self.depth_separable else 1

    def output_shape(self, shape1, shape2=None):
        depth, rows, columns = _as_3d_shape(shape1)
        filters, _, filter_rows, filter_columns = _filter_4d_shape(shape2)
        out_rows = _window_output_size(rows, filter_rows, self.stride, self.dilation)
        out_columns = _window_output_size(columns, filter_columns, self.stride, self.dilation)
        if out_rows <= 0 or out_columns <= 0:
            raise InvalidParameterError(f"{self.name}: filter {shape2} does not fit input {shape1}.")
        if len(shape1) == 2 and filters == 1:
            return out_rows, out_columns
        return filters, out_rows, out_columns

    def _effective_filter(self, w: np.ndarray) -> np.ndarray:
        w4 = _filter_4d(w)
        if self.flip:
            w4 = w4[:, :, ::-1, ::-1]
        return np.ascontiguousarray(w4)

    def forward(self, x1, x2=None, index=None, active=True):
        x = torch.from_numpy(np.ascontiguousarray(_as_3d(x1))[np.newaxis])
        w = torch.from_numpy(self._effective_filter(x2))
        y = F.conv2d(x, w, stride=self.stride, dilation=self.dilation, groups=self._groups(x.shape[1]))
        y_data = y[0].numpy()
        return y_data[0] if x1.ndim == 2 and y_data.shape[0] == 1 else y_data

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        x3 = np.ascontiguousarray(_as_3d(x1))
        w4 = self._effective_filter(x2)
        groups = self._groups(x3.shape[0])
        g = torch.from_numpy(np.ascontiguousarray(_as_3d(tg))[np.newaxis])
        w = torch.from_numpy(w4)

        g1 = None
        if needs[0]:
            # transposed convolution, output padding recovers the input
            # positions which were not covered by the last window
            _, _, filter_rows, filter_columns = w4.shape
            dy_h = (g.shape[2] - 1) * self.stride + self.dilation * (filter_rows - 1) + 1
            dy_w = (g.shape[3] - 1) * self.stride + self.dilation * (filter_columns - 1) + 1
            oh = x3.shape[1] - dy_h
            ow = x3.shape[2] - dy_w
            dx = F.conv_transpose2d(g, w, stride=self.stride, dilation=self.dilation,
                                    groups=groups, output_padding=(oh, ow))
            g1 = dx[0].numpy().reshape(x1.shape)

        g2 = None
        if needs[1]:
            x = torch.from_numpy(x3[np.newaxis])
            dw = nn_grad.conv2d_weight(x, w4.shape, g, stride=self.stride,
                                       dilation=self.dilation, groups=groups).numpy()
            if self.flip:
                dw = dw[:, :, ::-1, ::-1]
            g2 = np.ascontiguousarray(dw).reshape(x2.shape)
        return g1, g2


class Convolve(Crosscorrelate):
    """Crosscorrelation with the filter rotated by 180 degrees."""
    kind = OpKind.CONVOLVE
    flip = True


def winograd_matrices() -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
        Transforms of Winograd F(2x2, 3x3):
        y = AT [(G g GT) * (BT d B)] A
        for a 4x4 input tile d and a 3x3 filter g.
    """
    at = np.array([[1.0, 1.0, 1.0, 0.0],
                   [0.0, 1.0, -1.0, -1.0]])
    bt = np.array([[1.0, 0.0, -1.0, 0.0],
                   [0.0, 1.0, 1.0, 0.0],
                   [0.0, -1.0, 1.0, 0.0],
                   [0.0, 1.0, 0.0, -1.0]])
    g = np.array([[1.0, 0.0, 0.0],
                  [0.5, 0.5, 0.5],
                  [0.5, -0.5, 0.5],
                  [0.0, 0.0, 1.0]])
    return at, bt, g


class WinogradConvolution(Op):
    """
        Crosscorrelation of an input with a 3x3 filter
        (stride 1, no dilation) computed with the Winograd transforms.

        The filter is transformed on every call, or once per batch
        when it is shared by all sample indices (shared_filter),
        the procedure starts every forward batch with begin_batch.

        Only the forward pass is accelerated, the gradients
        are the ones of the plain crosscorrelation.
    """
    kind = OpKind.WINOGRAD_CONVOLUTION
    arity = 2
    expression_template = "{name}({a1}, {a2}) = {r}"
    gradient_templates = ("{name}_INPUT_GRADIENT(d{r}, {a2})", "{name}_FILTER_GRADIENT(d{r}, {a1})")

    def __init__(self, shared_filter: bool = False):
        super().__init__()
        self.shared_filter = shared_filter
        self.at, self.bt, self.g = winograd_matrices()
        self._crosscorrelate = Crosscorrelate(stride=1, dilation=1)

    def output_shape(self, shape1, shape2=None):
        if tuple(shape2[-2:]) != (3, 3):
            raise InvalidParameterError(f"{self.name}: filter must be 3x3, got {shape2}.")
        return self._crosscorrelate.output_shape(shape1, shape2)

    def transform_filter(self, w: np.ndarray) -> np.ndarray:
        return np.einsum("ij,fdjk,lk->fdil", self.g, _filter_4d(w), self.g)

    def _transformed_filter(self, w: np.ndarray) -> np.ndarray:
        if not self.shared_filter:
            return self.transform_filter(w)
        if None not in self._cache:
            self._cache[None] = self.transform_filter(w)
        return self._cache[None]

    def forward(self, x1, x2=None, index=None, active=True):
        x3 = _as_3d(x1)
        u = self._transformed_filter(x2)
        depth, rows, columns = x3.shape
        out_rows, out_columns = rows - 2, columns - 2
        tile_rows, tile_columns = -(-out_rows // 2), -(-out_columns // 2)
        padded = np.zeros((depth, 2 * tile_rows + 2, 2 * tile_columns + 2), dtype=x3.dtype)
        padded[:, :rows, :columns] = x3
        tiles = sliding_window_view(padded, (4, 4), axis=(1, 2))[:, ::2, ::2]
        v = np.einsum("ij,dabjk,lk->dabil", self.bt, tiles, self.bt)
        m = np.einsum("fdil,dabil->fabil", u, v)
        y_tiles = np.einsum("ij,fabjk,lk->fabil", self.at, m, self.at)
        filters = y_tiles.shape[0]
        y = y_tiles.transpose(0, 1, 3, 2, 4).reshape(filters, 2 * tile_rows, 2 * tile_columns)
        y = y[:, :out_rows, :out_columns]
        return y[0] if x1.ndim == 2 and filters == 1 else y

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        return self._crosscorrelate.backward(tg, x1, x2, y, index, needs)


# pooling

class Pool(Op):
    gradient_templates = ("{name}_GRADIENT(d{r})",)

    def __init__(self, filter_size=2, stride: Optional[int] = None, dilation: int = 1):
        super().__init__()
        self.filter_rows, self.filter_columns = _pair(filter_size)
        self.stride = stride if stride is not None else self.filter_rows
        self.dilation = dilation
        if self.filter_rows < 1 or self.filter_columns < 1 or self.stride < 1 or self.dilation < 1:
            raise InvalidParameterError(f"{self.name}: window, stride and dilation must be positive.")

    @property
    def window_size(self) -> int:
        return self.filter_rows * self.filter_columns

    def output_shape(self, shape1, shape2=None):
        rows = _window_output_size(shape1[-2], self.filter_rows, self.stride, self.dilation)
        columns = _window_output_size(shape1[-1], self.filter_columns, self.stride, self.dilation)
        if rows <= 0 or columns <= 0:
            raise InvalidParameterError(f"{self.name}: window does not fit input {shape1}.")
        return (*shape1[:-2], rows, columns)

    def _windows(self, x3: np.ndarray) -> np.ndarray:
        # (depth, out rows, out columns, filter rows, filter columns)
        span_rows = self.dilation * (self.filter_rows - 1) + 1
        span_columns = self.dilation * (self.filter_columns - 1) + 1
        _, rows, columns = self.output_shape(x3.shape)
        windows = sliding_window_view(x3, (span_rows, span_columns), axis=(1, 2))
        windows = windows[:, ::self.stride, ::self.stride, ::self.dilation, ::self.dilation]
        return windows[:, :rows, :columns]


class AveragePool(Pool):
    kind = OpKind.AVERAGE_POOL

    def forward(self, x1, x2=None, index=None, active=True):
        y = self._windows(_as_3d(x1)).mean(axis=(3, 4))
        return y.reshape(self.output_shape(x1.shape))

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        g = np.zeros(_as_3d(x1).shape, dtype=tg.dtype)
        tg3 = _as_3d(tg) / float(self.window_size)
        _, rows, columns = tg3.shape
        for i in range(self.filter_rows):
            r0 = i * self.dilation
            for j in range(self.filter_columns):
                c0 = j * self.dilation
                g[:, r0:r0 + self.stride * (rows - 1) + 1:self.stride,
                  c0:c0 + self.stride * (columns - 1) + 1:self.stride] += tg3
        return g.reshape(x1.shape), None


class PositionalPool(Pool):
    """
        Pooling which selects one input per window.
        The selected window position of every output is cached
        per sample index and consumed by the backward step,
        which routes the gradient back to that input only.
        Positions never consumed (truncated backward, stop gradient)
        are dropped by begin_batch.
    """
    gradient_templates = ("{name}_GRADIENT(d{r}, POSITIONS({a1}))",)

    def _select(self, windows: np.ndarray) -> np.ndarray:
        raise NotImplementedError("Pool selection requires implementation")

    def forward(self, x1, x2=None, index=None, active=True):
        windows = self._windows(_as_3d(x1))
        flat = windows.reshape(*windows.shape[:3], self.window_size)
        positions = self._select(flat)
        self._cache[index] = positions
        y = np.take_along_axis(flat, positions[..., np.newaxis], axis=3)[..., 0]
        return y.reshape(self.output_shape(x1.shape))

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        positions = self._pop_cache(index)
        depth, rows, columns = positions.shape
        d, oy, ox = np.meshgrid(np.arange(depth), np.arange(rows), np.arange(columns), indexing="ij")
        input_rows = oy * self.stride + (positions // self.filter_columns) * self.dilation
        input_columns = ox * self.stride + (positions % self.filter_columns) * self.dilation
        g = np.zeros(_as_3d(x1).shape, dtype=tg.dtype)
        np.add.at(g, (d, input_rows, input_columns), _as_3d(tg))
        return g.reshape(x1.shape), None


class MaxPool(PositionalPool):
    kind = OpKind.MAX_POOL
    gradient_templates = ("{name}_GRADIENT(d{r}, ARGMAX({a1}))",)

    def _select(self, windows):
        # first maximum wins, as np.argmax
        return np.argmax(windows, axis=3)


class RandomPool(PositionalPool):
    kind = OpKind.RANDOM_POOL

    def __init__(self, filter_size=2, stride: Optional[int] = None, dilation: int = 1,
                 rng: Optional[np.random.Generator] = None):
        super().__init__(filter_size, stride, dilation)
        self.rng = rng if rng is not None else np.random.default_rng()

    def _select(self, windows):
        return self.rng.integers(0, self.window_size, size=windows.shape[:3])


class CyclicPool(PositionalPool):
    """
        Picks the window positions in turn: every output takes the
        next position of the window, walking down the rows first and
        then the columns. The turn continues over calls until reset.
    """
    kind = OpKind.CYCLIC_POOL

    def __init__(self, filter_size=2, stride: Optional[int] = None, dilation: int = 1):
        super().__init__(filter_size, stride, dilation)
        self._turn = 0

    def reset(self):
        super().reset()
        self._turn = 0

    def _select(self, windows):
        count = int(np.prod(windows.shape[:3]))
        turns = (self._turn + np.arange(count)) % self.window_size
        self._turn = int((self._turn + count) % self.window_size)
        filter_rows = turns % self.filter_rows
        filter_columns = turns // self.filter_rows
        return (filter_rows * self.filter_columns + filter_columns).reshape(windows.shape[:3])


# structural

class Flatten(Op):
    kind = OpKind.FLATTEN
    gradient_templates = ("UNFLATTEN(d{r})",)

    def output_shape(self, shape1, shape2=None):
        return int(np.prod(shape1)), 1

    def forward(self, x1, x2=None, index=None, active=True):
        return np.reshape(x1, (x1.size, 1))

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        # reshape only reorders the elements
        return np.reshape(tg, x1.shape), None


class Unflatten(Op):
    kind = OpKind.UNFLATTEN
    gradient_templates = ("FLATTEN(d{r})",)

    def __init__(self, shape: Shape):
        super().__init__()
        self.shape = tuple(shape)

    def output_shape(self, shape1, shape2=None):
        if int(np.prod(shape1)) != int(np.prod(self.shape)):
            raise InvalidParameterError(f"{self.name}: cannot reshape {shape1} to {self.shape}.")
        return self.shape

    def forward(self, x1, x2=None, index=None, active=True):
        return np.reshape(x1, self.shape)

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        return np.reshape(tg, x1.shape), None


class Join(Op):
    """Concatenates two tensors along the rows (vertically) or the columns."""
    kind = OpKind.JOIN
    arity = 2
    expression_template = "{name}({a1} & {a2}) = {r}"
    gradient_templates = ("UNJOIN_FIRST(d{r})", "UNJOIN_SECOND(d{r})")

    def __init__(self, vertically: bool = True):
        super().__init__()
        self.vertically = vertically

    @property
    def axis(self) -> int:
        return -2 if self.vertically else -1

    def signature(self):
        return f"{self.name}_{'VERTICALLY' if self.vertically else 'HORIZONTALLY'}"

    def output_shape(self, shape1, shape2=None):
        shape1, shape2 = list(shape1), list(shape2)
        axis = len(shape1) + self.axis
        rest1 = shape1[:axis] + shape1[axis + 1:]
        rest2 = shape2[:axis] + shape2[axis + 1:]
        if rest1 != rest2:
            raise InvalidParameterError(f"{self.name}: cannot join {tuple(shape1)} and {tuple(shape2)}.")
        shape1[axis] += shape2[axis]
        return tuple(shape1)

    def forward(self, x1, x2=None, index=None, active=True):
        return np.concatenate((x1, x2), axis=self.axis)

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        g1, g2 = np.split(tg, [x1.shape[self.axis]], axis=self.axis)
        return (g1 if needs[0] else None), (g2 if needs[1] else None)


class Unjoin(Op):
    """
        Extracts the block of the given shape starting at
        (row, column) and, for 3-D tensors, depth.
    """
    kind = OpKind.UNJOIN
    gradient_templates = ("UNJOIN_GRADIENT(d{r})",)

    def __init__(self, shape: Shape, row: int = 0, column: int = 0, depth: int = 0):
        super().__init__()
        self.shape = tuple(shape)
        self.row = row
        self.column = column
        self.depth = depth

    def signature(self):
        return f"{self.name}[{self.row},{self.column},{self.depth}]"

    def _block(self, ndim: int) -> Tuple[slice, ...]:
        rows, columns = self.shape[-2:]
        block = (slice(self.row, self.row + rows), slice(self.column, self.column + columns))
        if ndim == 3:
            depth = self.shape[0]
            block = (slice(self.depth, self.depth + depth),) + block
        return block

    def output_shape(self, shape1, shape2=None):
        if len(self.shape) != len(shape1):
            raise InvalidParameterError(f"{self.name}: block {self.shape} and input {tuple(shape1)} differ in rank.")
        offsets = (self.row, self.column) if len(shape1) == 2 else (self.depth, self.row, self.column)
        for offset, size, limit in zip(offsets, self.shape, shape1):
            if offset < 0 or offset + size > limit:
                raise InvalidParameterError(f"{self.name}: block {self.shape} at {offsets} exceeds {tuple(shape1)}.")
        return self.shape

    def forward(self, x1, x2=None, index=None, active=True):
        return x1[self._block(x1.ndim)].copy()

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        g = np.zeros(x1.shape, dtype=tg.dtype)
        g[self._block(x1.ndim)] = tg
        return g, None


# regularization

class GradientClipping(Op):
    """Identity forward, the gradient is rescaled to an L2 norm of at most threshold."""
    kind = OpKind.GRADIENT_CLIPPING
    expression_template = "{a1} = {r}"

    def __init__(self, threshold: float):
        super().__init__()
        if threshold <= 0:
            raise InvalidParameterError(f"GRADIENT_CLIPPING: threshold must be positive, got {threshold}.")
        self.threshold = threshold

    def describe_gradients(self, a1, a2, r):
        return (f"{self.name}({self.threshold}, d{r})",)

    def forward(self, x1, x2=None, index=None, active=True):
        return x1.copy()

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        norm = float(np.sqrt(np.sum(tg * tg)))
        if norm > self.threshold:
            return tg * (self.threshold / norm), None
        return tg, None


class Dropout(Op):
    """
        Inverted dropout: while active (or always in Monte Carlo mode)
        elements are zeroed with the given probability and the rest are
        scaled by 1 / (1 - probability). Inactive forward is the identity.
        The gradient passes through unchanged.
    """
    kind = OpKind.DROPOUT
    gradient_templates = ("d{r}",)

    def __init__(self, probability: float, monte_carlo: bool = False,
                 rng: Optional[np.random.Generator] = None):
        super().__init__()
        if probability < 0 or probability > 1:
            raise InvalidParameterError(f"DROPOUT: probability must be between 0 and 1, got {probability}.")
        self.probability = probability
        self.monte_carlo = monte_carlo
        self.rng = rng if rng is not None else np.random.default_rng()

    def signature(self):
        return f"{self.name}({self.probability})"

    def forward(self, x1, x2=None, index=None, active=True):
        if not (active or self.monte_carlo):
            return x1.copy()
        if self.probability >= 1.0:
            return np.zeros_like(x1)
        keep = self.rng.random(x1.shape) >= self.probability
        return np.where(keep, x1 / (1.0 - self.probability), 0.0)

    def backward(self, tg, x1, x2=None, y=None, index=None, needs=(True, True)):
        return tg, None
