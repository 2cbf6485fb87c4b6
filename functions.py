"""
    Table driven elementwise functions used by the
    unary and binary function operations.

    Every entry has the function and its derivative.
    The derivative receives the argument x and the already
    computed function value y, so entries may use whichever
    is cheaper (e.g. exp: dy/dx = y).
"""

from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import numpy as np
from scipy import special as sc


class UnaryFunctionType(Enum):
    ABS = "ABS"
    COS = "COS"
    COSH = "COSH"
    EXP = "EXP"
    LOG = "LOG"
    LOG10 = "LOG10"
    SGN = "SGN"
    SIN = "SIN"
    SINH = "SINH"
    SQRT = "SQRT"
    CBRT = "CBRT"
    MULINV = "MULINV"
    TAN = "TAN"
    TANH = "TANH"
    LINEAR = "LINEAR"
    SIGMOID = "SIGMOID"
    SWISH = "SWISH"
    HARDSIGMOID = "HARDSIGMOID"
    BIPOLARSIGMOID = "BIPOLARSIGMOID"
    TANHSIG = "TANHSIG"
    HARDTANH = "HARDTANH"
    SOFTPLUS = "SOFTPLUS"
    SOFTSIGN = "SOFTSIGN"
    RELU = "RELU"
    RELU_COS = "RELU_COS"
    RELU_SIN = "RELU_SIN"
    ELU = "ELU"
    SELU = "SELU"
    GELU = "GELU"
    SOFTMAX = "SOFTMAX"
    GAUSSIAN = "GAUSSIAN"
    SINACT = "SINACT"
    LOGIT = "LOGIT"


class BinaryFunctionType(Enum):
    POW = "POW"
    MAX = "MAX"
    MIN = "MIN"


SELU_LAMBDA = 1.0507009873554805
SELU_ALPHA = 1.6732632423543772

_UnaryEntry = Tuple[Callable[[np.ndarray, float], np.ndarray],
                    Callable[[np.ndarray, np.ndarray, float], np.ndarray]]


def _gelu(x: np.ndarray) -> np.ndarray:
    return 0.5 * x * (1.0 + sc.erf(x / np.sqrt(2.0)))


def _gelu_derivative(x: np.ndarray) -> np.ndarray:
    # erf is defined by an integral,
    # its derivative is the integrand
    t1 = 0.5 * (1.0 + sc.erf(x / np.sqrt(2.0)))
    t2 = 0.5 * x * (np.sqrt(2.0 / np.pi) * np.exp(-(x * x) / 2.0))
    return t1 + t2


def _half_pi_clip(x: np.ndarray) -> np.ndarray:
    return np.abs(x) <= 0.5 * np.pi


# alpha: leak of RELU, scale of ELU (default differs per function)
_UNARY_TABLE: Dict[UnaryFunctionType, _UnaryEntry] = {
    UnaryFunctionType.ABS: (lambda x, a: np.abs(x), lambda x, y, a: np.sign(x)),
    UnaryFunctionType.COS: (lambda x, a: np.cos(x), lambda x, y, a: -np.sin(x)),
    UnaryFunctionType.COSH: (lambda x, a: np.cosh(x), lambda x, y, a: np.sinh(x)),
    UnaryFunctionType.EXP: (lambda x, a: np.exp(x), lambda x, y, a: y),
    UnaryFunctionType.LOG: (lambda x, a: np.log(x), lambda x, y, a: 1.0 / x),
    UnaryFunctionType.LOG10: (lambda x, a: np.log10(x), lambda x, y, a: 1.0 / (np.log(10.0) * x)),
    UnaryFunctionType.SGN: (lambda x, a: np.sign(x), lambda x, y, a: np.zeros_like(x)),
    UnaryFunctionType.SIN: (lambda x, a: np.sin(x), lambda x, y, a: np.cos(x)),
    UnaryFunctionType.SINH: (lambda x, a: np.sinh(x), lambda x, y, a: np.cosh(x)),
    UnaryFunctionType.SQRT: (lambda x, a: np.sqrt(x), lambda x, y, a: 0.5 / y),
    UnaryFunctionType.CBRT: (lambda x, a: np.cbrt(x), lambda x, y, a: 1.0 / (3.0 * y * y)),
    UnaryFunctionType.MULINV: (lambda x, a: 1.0 / x, lambda x, y, a: -y * y),
    UnaryFunctionType.TAN: (lambda x, a: np.tan(x), lambda x, y, a: 1.0 + y * y),
    UnaryFunctionType.TANH: (lambda x, a: np.tanh(x), lambda x, y, a: 1.0 - y * y),
    UnaryFunctionType.LINEAR: (lambda x, a: x.copy(), lambda x, y, a: np.ones_like(x)),
    UnaryFunctionType.SIGMOID: (lambda x, a: sc.expit(x), lambda x, y, a: y * (1.0 - y)),
    UnaryFunctionType.SWISH: (lambda x, a: x * sc.expit(x),
                              lambda x, y, a: sc.expit(x) * (1.0 + x * (1.0 - sc.expit(x)))),
    UnaryFunctionType.HARDSIGMOID: (lambda x, a: np.clip(0.125 * x + 0.5, 0.0, 1.0),
                                    lambda x, y, a: np.where(np.abs(x) > 4.0, 0.0, 0.125)),
    UnaryFunctionType.BIPOLARSIGMOID: (lambda x, a: 2.0 * sc.expit(x) - 1.0, lambda x, y, a: 0.5 * (1.0 - y * y)),
    UnaryFunctionType.TANHSIG: (lambda x, a: 2.0 * sc.expit(2.0 * x) - 1.0, lambda x, y, a: 1.0 - y * y),
    UnaryFunctionType.HARDTANH: (lambda x, a: np.clip(0.5 * x, -1.0, 1.0),
                                 lambda x, y, a: np.where(np.abs(x) > 2.0, 0.0, 0.5)),
    UnaryFunctionType.SOFTPLUS: (lambda x, a: np.logaddexp(0.0, x), lambda x, y, a: sc.expit(x)),
    UnaryFunctionType.SOFTSIGN: (lambda x, a: x / (np.abs(x) + 1.0), lambda x, y, a: 1.0 / (np.abs(x) + 1.0) ** 2),
    UnaryFunctionType.RELU: (lambda x, a: np.where(x < 0.0, a * x, x), lambda x, y, a: np.where(x < 0.0, a, 1.0)),
    UnaryFunctionType.RELU_COS: (lambda x, a: np.maximum(x, 0.0) + np.cos(x),
                                 lambda x, y, a: np.where(x < 0.0, 0.0, 1.0) - np.sin(x)),
    UnaryFunctionType.RELU_SIN: (lambda x, a: np.maximum(x, 0.0) + np.sin(x),
                                 lambda x, y, a: np.where(x < 0.0, 0.0, 1.0) + np.cos(x)),
    UnaryFunctionType.ELU: (lambda x, a: np.where(x < 0.0, a * np.expm1(np.minimum(x, 0.0)), x),
                            lambda x, y, a: np.where(x < 0.0, a * np.exp(np.minimum(x, 0.0)), 1.0)),
    UnaryFunctionType.SELU: (lambda x, a: SELU_LAMBDA * np.where(x < 0.0, SELU_ALPHA * np.expm1(np.minimum(x, 0.0)), x),
                             lambda x, y, a: SELU_LAMBDA * np.where(x < 0.0, SELU_ALPHA * np.exp(np.minimum(x, 0.0)), 1.0)),
    UnaryFunctionType.GELU: (lambda x, a: _gelu(x), lambda x, y, a: _gelu_derivative(x)),
    UnaryFunctionType.GAUSSIAN: (lambda x, a: np.exp(-0.5 * x * x), lambda x, y, a: -x * y),
    UnaryFunctionType.SINACT: (lambda x, a: np.where(_half_pi_clip(x), np.sin(x), np.sign(x)),
                               lambda x, y, a: np.where(_half_pi_clip(x), np.cos(x), 0.0)),
    UnaryFunctionType.LOGIT: (lambda x, a: np.log(x / (1.0 - x)), lambda x, y, a: 1.0 / (x * (1.0 - x))),
}

_DEFAULT_ALPHA = {
    UnaryFunctionType.RELU: 0.0,
    UnaryFunctionType.ELU: 1.0,
}


class UnaryFunction:
    """
        Elementwise function with derivative.
        Softmax is the only entry which is not elementwise,
        it normalizes each column (axis -2) and uses the full jacobian
        for the gradient.
    """
    def __init__(self, function_type: UnaryFunctionType, alpha: Optional[float] = None):
        self.type = function_type
        self.alpha = alpha if alpha is not None else _DEFAULT_ALPHA.get(function_type, 0.0)

    def __str__(self):
        return self.type.value

    def apply(self, x: np.ndarray) -> np.ndarray:
        if self.type == UnaryFunctionType.SOFTMAX:
            shifted = np.exp(x - np.max(x, axis=-2, keepdims=True))
            return shifted / np.sum(shifted, axis=-2, keepdims=True)
        function, _ = _UNARY_TABLE[self.type]
        return function(x, self.alpha)

    def derivative(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        if self.type == UnaryFunctionType.SOFTMAX:
            raise ValueError("SOFTMAX: derivative is not elementwise, use gradient()")
        _, derivative = _UNARY_TABLE[self.type]
        return derivative(x, y, self.alpha)

    def gradient(self, x: np.ndarray, y: np.ndarray, tg: np.ndarray) -> np.ndarray:
        if self.type == UnaryFunctionType.SOFTMAX:
            # (diag(s) - s s^T) tg for every column s
            return y * (tg - np.sum(y * tg, axis=-2, keepdims=True))
        return tg * self.derivative(x, y)


def _pow_derivative_exponent(x: np.ndarray, e: np.ndarray, y: np.ndarray) -> np.ndarray:
    # d(x^e)/de = x^e * ln(x), defined for positive bases only
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(x > 0.0, y * np.log(np.where(x > 0.0, x, 1.0)), 0.0)


_BINARY_TABLE = {
    BinaryFunctionType.POW: (lambda x1, x2: np.power(x1, x2),
                             lambda x1, x2, y: x2 * np.power(x1, x2 - 1.0),
                             _pow_derivative_exponent),
    BinaryFunctionType.MAX: (lambda x1, x2: np.maximum(x1, x2),
                             lambda x1, x2, y: np.where(x1 >= x2, 1.0, 0.0),
                             lambda x1, x2, y: np.where(x1 >= x2, 0.0, 1.0)),
    BinaryFunctionType.MIN: (lambda x1, x2: np.minimum(x1, x2),
                             lambda x1, x2, y: np.where(x1 <= x2, 1.0, 0.0),
                             lambda x1, x2, y: np.where(x1 <= x2, 0.0, 1.0)),
}


class BinaryFunction:
    def __init__(self, function_type: BinaryFunctionType):
        self.type = function_type

    def __str__(self):
        return self.type.value

    def apply(self, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
        function, _, _ = _BINARY_TABLE[self.type]
        return function(x1, x2)

    def derivatives(self, x1: np.ndarray, x2: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        _, d1, d2 = _BINARY_TABLE[self.type]
        return d1(x1, x2, y), d2(x1, x2, y)
