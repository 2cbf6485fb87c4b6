"""
    Procedure: a reusable chain of expressions.

    The chain is built once with the builder methods
    (every builder allocates the result node and returns it)
    and then replayed for many batches:

        procedure = Procedure()
        a = procedure.input((1, 1), name="a")
        b = procedure.input((1, 1), name="b")
        y = procedure.output(procedure.multiply(a, b))

        procedure.calculate_expression({a: {0: [[3.0]]}, b: {0: [[4.0]]}})
        procedure.calculate_gradient({y: {0: [[1.0]]}})
        a.get_gradient(0)  # [[4.0]]
"""

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

import diagnostics
import ops
from config import ProcedureConfig
from errors import InvalidParameterError
from expression import Expression
from functions import BinaryFunction, BinaryFunctionType, UnaryFunction, UnaryFunctionType
from node import Node

logger = logging.getLogger(__name__)

NodeValues = Dict[Node, Dict[int, np.ndarray]]


class Procedure:
    def __init__(self, config: Optional[ProcedureConfig] = None):
        self.config = config if config is not None else ProcedureConfig()
        self.rng = self.config.rng()
        self.nodes: List[Node] = []
        self.expressions: List[Expression] = []
        self.inputs: List[Node] = []
        self.outputs: List[Node] = []
        self.links: List[Tuple[Node, Node]] = []
        self._indices: List[int] = []
        self._chain_logged = False

    # nodes

    def node(self, shape: Tuple[int, ...], name: Optional[str] = None, scalar: bool = False,
             multi_index: bool = True, constant: bool = False) -> Node:
        node = Node(len(self.nodes), shape, self.config.dtype, name=name, scalar=scalar,
                    multi_index=multi_index, constant=constant)
        self.nodes.append(node)
        return node

    def input(self, shape: Tuple[int, ...], name: Optional[str] = None) -> Node:
        node = self.node(shape, name=name, scalar=tuple(shape) == (1, 1))
        self.inputs.append(node)
        return node

    def constant(self, value, name: Optional[str] = None) -> Node:
        """Single valued node which keeps its value across reset (e.g. weights)."""
        value = np.asarray(value, dtype=self.config.dtype)
        node = self.node(value.shape, name=name, scalar=value.shape == (1, 1), multi_index=False, constant=True)
        node.set_value(0, value)
        return node

    def output(self, node: Node) -> Node:
        self.outputs.append(node)
        return node

    def link(self, from_node: Node, to_node: Node):
        """The value of to_node at index i is the value of from_node at index i - 1."""
        to_node.link_from(from_node)
        self.links.append((from_node, to_node))

    @property
    def has_links(self) -> bool:
        return len(self.links) > 0

    # expressions

    def add_expression(self, op: ops.Op, argument1: Node, argument2: Optional[Node] = None,
                       name: Optional[str] = None, execute_as_single_step: bool = False) -> Node:
        Expression.validate_arguments(op, argument1, argument2)
        shape = op.output_shape(argument1.shape, argument2.shape if argument2 is not None else None)
        result = self.node(shape, name=name, scalar=tuple(shape) == (1, 1), multi_index=not execute_as_single_step)
        expression = Expression(len(self.expressions), op, argument1, argument2, result, execute_as_single_step)
        if self.expressions:
            previous = self.expressions[-1]
            previous.next_expression = expression.id
            expression.previous_expression = previous.id
        self.expressions.append(expression)
        logger.debug("built expression %d: %s", expression.id, expression.expression_text())
        return result

    def add(self, argument1: Node, argument2: Node, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Add(), argument1, argument2, name)

    def subtract(self, argument1: Node, argument2: Node, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Subtract(), argument1, argument2, name)

    def multiply(self, argument1: Node, argument2: Node, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Multiply(), argument1, argument2, name)

    def divide(self, argument1: Node, argument2: Node, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Divide(), argument1, argument2, name)

    def dot(self, argument1: Node, argument2: Node, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Dot(), argument1, argument2, name)

    def unary_function(self, argument: Node, function_type: UnaryFunctionType,
                       alpha: Optional[float] = None, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.UnaryFunctionOp(UnaryFunction(function_type, alpha)), argument, None, name)

    def binary_function(self, argument1: Node, argument2: Node, function_type: BinaryFunctionType,
                        name: Optional[str] = None) -> Node:
        return self.add_expression(ops.BinaryFunctionOp(BinaryFunction(function_type)), argument1, argument2, name)

    def sum(self, argument: Node, direction: ops.Direction = ops.Direction.ALL,
            across_samples: bool = False, name: Optional[str] = None) -> Node:
        return self._reduction(ops.Sum(direction, across_samples), argument, name)

    def mean(self, argument: Node, direction: ops.Direction = ops.Direction.ALL,
             across_samples: bool = False, name: Optional[str] = None) -> Node:
        return self._reduction(ops.Mean(direction, across_samples), argument, name)

    def variance(self, argument: Node, direction: ops.Direction = ops.Direction.ALL,
                 across_samples: bool = False, name: Optional[str] = None) -> Node:
        return self._reduction(ops.Variance(direction, across_samples), argument, name)

    def standard_deviation(self, argument: Node, direction: ops.Direction = ops.Direction.ALL,
                           across_samples: bool = False, name: Optional[str] = None) -> Node:
        return self._reduction(ops.StandardDeviation(direction, across_samples), argument, name)

    def norm(self, argument: Node, p: int = 2, direction: ops.Direction = ops.Direction.ALL,
             across_samples: bool = False, name: Optional[str] = None) -> Node:
        return self._reduction(ops.Norm(p, direction, across_samples), argument, name)

    def _reduction(self, op: ops.Reduction, argument: Node, name: Optional[str]) -> Node:
        return self.add_expression(op, argument, None, name, execute_as_single_step=op.across_samples)

    def convolve(self, argument: Node, filter_node: Node, stride: int = 1, dilation: int = 1,
                 depth_separable: bool = False, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Convolve(stride, dilation, depth_separable), argument, filter_node, name)

    def crosscorrelate(self, argument: Node, filter_node: Node, stride: int = 1, dilation: int = 1,
                       depth_separable: bool = False, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Crosscorrelate(stride, dilation, depth_separable), argument, filter_node, name)

    def winograd_convolution(self, argument: Node, filter_node: Node, name: Optional[str] = None) -> Node:
        op = ops.WinogradConvolution(shared_filter=not filter_node.multi_index)
        return self.add_expression(op, argument, filter_node, name)

    def max_pool(self, argument: Node, filter_size=2, stride: Optional[int] = None, dilation: int = 1,
                 name: Optional[str] = None) -> Node:
        return self.add_expression(ops.MaxPool(filter_size, stride, dilation), argument, None, name)

    def average_pool(self, argument: Node, filter_size=2, stride: Optional[int] = None, dilation: int = 1,
                     name: Optional[str] = None) -> Node:
        return self.add_expression(ops.AveragePool(filter_size, stride, dilation), argument, None, name)

    def random_pool(self, argument: Node, filter_size=2, stride: Optional[int] = None, dilation: int = 1,
                    name: Optional[str] = None) -> Node:
        return self.add_expression(ops.RandomPool(filter_size, stride, dilation, rng=self.rng), argument, None, name)

    def cyclic_pool(self, argument: Node, filter_size=2, stride: Optional[int] = None, dilation: int = 1,
                    name: Optional[str] = None) -> Node:
        return self.add_expression(ops.CyclicPool(filter_size, stride, dilation), argument, None, name)

    def flatten(self, argument: Node, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Flatten(), argument, None, name)

    def unflatten(self, argument: Node, shape: Tuple[int, ...], name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Unflatten(shape), argument, None, name)

    def join(self, argument1: Node, argument2: Node, vertically: bool = True, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Join(vertically), argument1, argument2, name)

    def unjoin(self, argument: Node, shape: Tuple[int, ...], row: int = 0, column: int = 0, depth: int = 0,
               name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Unjoin(shape, row, column, depth), argument, None, name)

    def gradient_clipping(self, argument: Node, threshold: float, name: Optional[str] = None) -> Node:
        return self.add_expression(ops.GradientClipping(threshold), argument, None, name)

    def dropout(self, argument: Node, probability: float, monte_carlo: bool = False,
                name: Optional[str] = None) -> Node:
        return self.add_expression(ops.Dropout(probability, monte_carlo, rng=self.rng), argument, None, name)

    # chain traversal

    def forward_chain(self) -> Iterator[Expression]:
        position = 0 if self.expressions else None
        while position is not None:
            expression = self.expressions[position]
            yield expression
            position = expression.next_expression

    def backward_chain(self) -> Iterator[Expression]:
        position = len(self.expressions) - 1 if self.expressions else None
        while position is not None:
            expression = self.expressions[position]
            yield expression
            position = expression.previous_expression

    def _check_linked_chain(self):
        if any(expression.execute_as_single_step for expression in self.expressions):
            raise InvalidParameterError("PROCEDURE: single step expressions cannot run in a linked procedure.")

    def run_forward(self, indices: Iterable[int]):
        """
            Without node links every expression runs for all sample
            indices before the next one starts. With node links the
            whole chain runs for one sample index before the next one,
            so values can flow from index i - 1 to index i.
        """
        indices = sorted(set(indices))
        self._indices = indices
        if not indices:
            return
        if self.config.log_chain and not self._chain_logged:
            for line in diagnostics.expression_chain_lines(self):
                logger.debug(line)
            self._chain_logged = True
        logger.debug("forward pass over %d sample indices", len(indices))
        for expression in self.expressions:
            expression.begin_batch()

        if self.has_links:
            self._check_linked_chain()
            for index in indices:
                for expression in self.forward_chain():
                    expression.calculate_expression_step(index, indices[0])
        else:
            for expression in self.forward_chain():
                expression.calculate_expression_steps(indices)

    def run_backward(self, indices: Optional[Iterable[int]] = None, steps: int = -1):
        """
            Backward pass over the given sample indices (default: the ones
            of the last forward pass). steps > 0 limits the pass to that
            many indices: the first ones, or with node links the last ones
            since linked samples are processed in decreasing order.
        """
        indices = sorted(set(indices)) if indices is not None else list(self._indices)
        if not indices:
            return
        logger.debug("backward pass over %d sample indices, steps %d", len(indices), steps)

        if self.has_links:
            self._check_linked_chain()
            indices = indices[::-1]
            if steps > 0:
                indices = indices[:steps]
            for index in indices:
                for expression in self.backward_chain():
                    expression.calculate_gradient_step(index, indices[-1])
        else:
            for expression in self.backward_chain():
                expression.calculate_gradient_steps(indices, steps)

    # entry points

    def calculate_expression(self, inputs: NodeValues) -> NodeValues:
        """Sets the input values, runs the forward pass and returns the output values."""
        indices = set()
        for node, values in inputs.items():
            for index, value in values.items():
                node.set_value(index, value)
                indices.add(index)
        self.run_forward(indices)
        return {node: self._batch_view(node.values(), node) for node in self.outputs}

    def calculate_gradient(self, output_gradients: NodeValues, steps: int = -1) -> NodeValues:
        """
            Clears the gradients, sets the gradients of the outputs, runs
            the backward pass over the indices of the last forward pass
            and returns the gradients of the inputs.
        """
        self.reset_gradients()
        for node, gradients in output_gradients.items():
            for index, gradient in gradients.items():
                node.set_gradient(index, gradient)
        self.run_backward(steps=steps)
        return {node: self._batch_view(node.gradients(), node) for node in self.inputs}

    def _batch_view(self, mapping: Dict[int, np.ndarray], node: Node) -> Dict[int, np.ndarray]:
        # only the sample indices of the last forward pass
        if not node.multi_index:
            return mapping
        indices = set(self._indices)
        return {index: value for index, value in mapping.items() if index in indices}

    def get_gradient(self, node: Node) -> np.ndarray:
        return node.gradient_mean()

    def reset(self):
        for node in self.nodes:
            node.reset()
        for expression in self.expressions:
            expression.reset()
        self._indices = []
        logger.debug("procedure reset")

    def reset_gradients(self):
        for node in self.nodes:
            node.reset_gradient()

    def set_active(self, active: bool):
        for expression in self.expressions:
            expression.active = active
