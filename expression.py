import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from errors import ArgumentMissingError, ArgumentUndefinedError, GradientUndefinedError, InvalidParameterError
from node import Node
from ops import BinaryOp, Op, Reduction

logger = logging.getLogger(__name__)


class Expression:
    """
        Binds one or two argument nodes and a result node
        to an operation kernel.

        Per index form: the kernel runs once for every sample index.
        Single step form (execute_as_single_step): the kernel runs once
        per batch over the values of all sample indices and publishes
        one value, the result node is single valued.

        next_expression / previous_expression are positions in the
        expression list of the owning procedure.
    """
    def __init__(self, expression_id: int, op: Op, argument1: Node, argument2: Optional[Node],
                 result: Node, execute_as_single_step: bool = False):
        self.validate_arguments(op, argument1, argument2)
        if execute_as_single_step and not isinstance(op, Reduction):
            raise InvalidParameterError(f"{op.name}: only reductions can execute as a single step.")
        self.id = expression_id
        self.op = op
        self.argument1 = argument1
        self.argument2 = argument2
        self.result = result
        self.execute_as_single_step = execute_as_single_step
        self.active = True
        self.next_expression: Optional[int] = None
        self.previous_expression: Optional[int] = None
        if execute_as_single_step:
            result.set_multi_index(False)

    @staticmethod
    def validate_arguments(op: Op, argument1: Optional[Node], argument2: Optional[Node]):
        if argument1 is None:
            raise ArgumentMissingError(f"{op.name}: first argument is not defined.")
        if op.arity == 2 and argument2 is None:
            raise ArgumentMissingError(f"{op.name}: second argument is not defined.")
        if isinstance(op, BinaryOp) and argument1.shape != argument2.shape:
            if not (argument1.scalar or argument2.scalar):
                raise InvalidParameterError(
                    f"{op.name}: {argument1} {argument1.shape} and {argument2} {argument2.shape} "
                    f"differ in shape and neither is scalar.")

    @property
    def name(self) -> str:
        return self.op.name

    @property
    def arguments(self) -> List[Node]:
        return [node for node in (self.argument1, self.argument2) if node is not None]

    def __repr__(self):
        return f"Expression(id={self.id}, op={self.name}, result={self.result.name})"

    # forward

    def calculate_expression_steps(self, indices: Iterable[int]):
        indices = sorted(indices)
        if not indices:
            return
        for index in indices:
            self.calculate_expression_step(index, indices[0], indices)

    def calculate_expression_step(self, index: int, first_index: int,
                                  indices: Optional[Sequence[int]] = None):
        """indices: sample indices of the batch, read by the single step form."""
        self.update_expression_dependency(index)
        if self.execute_as_single_step:
            if index == first_index:
                self.calculate_expression(indices=indices)
        else:
            self.calculate_expression(index)

    def update_expression_dependency(self, index: int):
        for node in self.arguments:
            node.update_value_dependency(index)

    def calculate_expression(self, index: Optional[int] = None, indices: Optional[Sequence[int]] = None):
        """
            Per index form, or the single step form when index is None.
            The single step form reads the given batch indices
            (all values of the argument when not given).
        """
        if index is None:
            values = list(self._argument_values(self.argument1, indices).values())
            logger.debug("expression %d: %s over %d sample indices", self.id, self.name, len(values))
            self.result.set_value(0, self.op.forward_samples(values))
            return
        x1, x2 = self._values_at(index)
        self.result.set_value(index, self.op.forward(x1, x2, index, self.active))

    # backward

    def calculate_gradient_steps(self, indices: Iterable[int], steps: int = -1):
        """
            Gradient of the given sample indices in increasing order.
            With steps > 0 only the first steps indices are processed,
            the single step form then fires at the last processed index:
            it is computed over the whole batch but only the processed
            indices receive their share.
        """
        indices = sorted(indices)
        processed = indices[:steps] if steps > 0 else indices
        if not processed:
            return
        for index in processed:
            self.calculate_gradient_step(index, processed[-1], indices)

    def calculate_gradient_step(self, index: int, last_index: int,
                                indices: Optional[Sequence[int]] = None):
        self.update_gradient_dependency(index)
        if self.execute_as_single_step:
            if index == last_index:
                self.calculate_gradient(indices=indices, last_index=last_index)
        else:
            self.calculate_gradient(index)

    def update_gradient_dependency(self, index: int):
        self.result.update_gradient_dependency(index)

    def _needs(self) -> Tuple[bool, bool]:
        need1 = not self.argument1.stop_gradient
        need2 = self.argument2 is not None and not self.argument2.stop_gradient
        return need1, need2

    def calculate_gradient(self, index: Optional[int] = None, indices: Optional[Sequence[int]] = None,
                           last_index: Optional[int] = None):
        """
            Per index form, or the single step form when index is None.
            The single step form computes over the batch indices and
            cumulates into the ones up to last_index.
        """
        needs = self._needs()
        if not any(needs):
            return
        tg = self.result.get_gradient(index)
        if tg is None:
            raise GradientUndefinedError(
                f"{self.name}: result {self.result} has no gradient for sample index {index}.")

        if index is None:
            values = self._argument_values(self.argument1, indices)
            logger.debug("expression %d: %s gradient over %d sample indices", self.id, self.name, len(values))
            gradients = self.op.backward_samples(tg, list(values.values()), self.result.get_value())
            for sample_index, gradient in zip(values.keys(), gradients):
                if last_index is None or sample_index <= last_index:
                    self.argument1.cumulate_gradient(sample_index, gradient)
            return

        x1, x2 = self._values_at(index)
        g1, g2 = self.op.backward(tg, x1, x2, self.result.get_value(index), index, needs)
        if needs[0] and g1 is not None:
            self.argument1.cumulate_gradient(index, g1)
        if needs[1] and g2 is not None:
            self.argument2.cumulate_gradient(index, g2)

    # helpers

    def _argument_value(self, node: Node, index: int) -> np.ndarray:
        value = node.get_value(index)
        if value is None:
            raise ArgumentUndefinedError(f"{self.name}: argument {node} has no value for sample index {index}.")
        return value

    def _values_at(self, index: int) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        x1 = self._argument_value(self.argument1, index)
        x2 = self._argument_value(self.argument2, index) if self.argument2 is not None else None
        return x1, x2

    def _argument_values(self, node: Node, indices: Optional[Sequence[int]] = None) -> Dict[int, np.ndarray]:
        if indices is None:
            values = node.values()
        else:
            values = {index: self._argument_value(node, index) for index in sorted(indices)}
        if not values:
            raise ArgumentUndefinedError(f"{self.name}: argument {node} has no values.")
        return values

    def begin_batch(self):
        self.op.begin_batch()

    def reset(self):
        self.op.reset()

    # printing

    def expression_text(self) -> str:
        a2 = self.argument2.name if self.argument2 is not None else None
        return self.op.describe(self.argument1.name, a2, self.result.name)

    def gradient_texts(self) -> List[Tuple[Node, str]]:
        """Argument and the text of its gradient, for the arguments receiving one."""
        a2 = self.argument2.name if self.argument2 is not None else None
        texts = self.op.describe_gradients(self.argument1.name, a2, self.result.name)
        lines = []
        for node, text in zip(self.arguments, texts):
            if node.stop_gradient:
                continue
            if not node.multi_index and self.result.multi_index:
                text = f"SUM({text})"
            lines.append((node, text))
        return lines
