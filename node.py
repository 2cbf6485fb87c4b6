from typing import Dict, List, Optional, Tuple

import numpy as np


class Node:
    """
        A node is a vertex of the procedure graph.
        Expressions are the edges: they read the values of
        their argument nodes and write the value of their result node.

        A node stores one value per sample index (multi index mode)
        or a single value which is valid for all sample indices
        (constants like weights, or the result of an operation
        aggregating over the whole batch).

        The gradients are cumulated in the same layout:
        every expression which uses the node as an argument adds
        its share to the gradient of the given sample index.
        A single valued node collects the gradients of all sample
        indices into one tensor.

        Shapes follow the numpy layout:
        (rows, columns) or (depth, rows, columns).
    """
    def __init__(self, node_id: int, shape: Tuple[int, ...], dtype: np.dtype = np.float64,
                 name: Optional[str] = None, scalar: bool = False,
                 multi_index: bool = True, constant: bool = False):
        self.id = node_id
        self.shape = tuple(shape)
        self.dtype = dtype
        self.name = name if name is not None else f"Node{node_id}"
        self.scalar = scalar
        self.multi_index = multi_index
        self.constant = constant
        self.stop_gradient = False
        # recurrent dependencies (see link_from)
        self.from_node: Optional[Node] = None
        self.to_node: Optional[Node] = None

        self._initial_multi_index = multi_index
        self._values: Dict[int, np.ndarray] = dict()
        self._gradients: Dict[int, np.ndarray] = dict()
        self._value: Optional[np.ndarray] = None
        self._gradient: Optional[np.ndarray] = None
        self._gradient_count = 0

    def __str__(self):
        return self.name

    def __repr__(self):
        return f"Node(id={self.id}, name={self.name}, shape={self.shape})"

    @property
    def rows(self) -> int:
        return self.shape[-2]

    @property
    def columns(self) -> int:
        return self.shape[-1]

    @property
    def depth(self) -> int:
        return int(np.prod(self.shape[:-2])) if len(self.shape) > 2 else 1

    def new_value(self) -> np.ndarray:
        return np.zeros(self.shape, self.dtype)

    def set_multi_index(self, multi_index: bool):
        if multi_index == self.multi_index:
            return
        self.multi_index = multi_index
        self._values.clear()
        self._gradients.clear()
        self._value = None
        self._gradient = None

    def set_stop_gradient(self, stop_gradient: bool = True):
        self.stop_gradient = stop_gradient

    # values

    def set_value(self, index: int, value: np.ndarray):
        value = np.asarray(value, dtype=self.dtype)
        if self.multi_index:
            self._values[index] = value
        else:
            self._value = value

    def get_value(self, index: Optional[int] = None) -> Optional[np.ndarray]:
        if self.multi_index:
            return self._values.get(index)
        return self._value

    def values(self) -> Dict[int, np.ndarray]:
        if self.multi_index:
            return {index: self._values[index] for index in sorted(self._values)}
        return {} if self._value is None else {0: self._value}

    def indices(self) -> List[int]:
        return list(self.values().keys())

    def size(self) -> int:
        return len(self.values())

    # gradients

    def set_gradient(self, index: int, gradient: np.ndarray):
        gradient = np.asarray(gradient, dtype=self.dtype)
        if self.multi_index:
            self._gradients[index] = gradient
        else:
            self._gradient = gradient

    def get_gradient(self, index: Optional[int] = None) -> Optional[np.ndarray]:
        if self.multi_index:
            return self._gradients.get(index)
        return self._gradient

    def gradients(self) -> Dict[int, np.ndarray]:
        if self.multi_index:
            return {index: self._gradients[index] for index in sorted(self._gradients)}
        return {} if self._gradient is None else {0: self._gradient}

    def cumulate_gradient(self, index: int, gradient: np.ndarray):
        if self.stop_gradient:
            return
        gradient = np.asarray(gradient, dtype=self.dtype)
        current = self.get_gradient(index)
        # never add in place: the stored array may be owned by the caller
        self.set_gradient(index, gradient.copy() if current is None else current + gradient)
        self._gradient_count += 1

    def gradient_mean(self) -> np.ndarray:
        """
            Mean of the cumulated gradient.
            For a single valued node this is the sum over all cumulations
            divided by their count, for a multi index node the mean over
            the sample indices.
        """
        if not self.multi_index:
            if self._gradient is None or self._gradient_count == 0:
                return self.new_value()
            return self._gradient / self._gradient_count
        if not self._gradients:
            return self.new_value()
        return np.mean(np.stack(list(self._gradients.values())), axis=0)

    # recurrent dependencies

    def link_from(self, node: "Node"):
        """
            The value of this node at sample index i is taken from
            the value of the given node at index i - 1, and the
            gradient of this node at index i + 1 flows back into
            the given node at index i.
        """
        self.from_node = node
        node.to_node = self

    def update_value_dependency(self, index: int):
        if self.from_node is None:
            return
        previous = self.from_node.get_value(index - 1)
        self.set_value(index, previous if previous is not None else self.new_value())

    def update_gradient_dependency(self, index: int):
        if self.to_node is None:
            return
        # beyond the last sample index the linked gradient is zero
        following = self.to_node.get_gradient(index + 1)
        self.cumulate_gradient(index, following if following is not None else self.new_value())

    def reset(self):
        self.multi_index = self._initial_multi_index
        if not self.constant:
            self._values.clear()
            self._value = None
        self.reset_gradient()

    def reset_gradient(self):
        self._gradients.clear()
        self._gradient = None
        self._gradient_count = 0
