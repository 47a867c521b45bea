"""
network.py
~~~~~~~~~~

A feed-forward neural network living in a single arena.

Construction validates the layer definitions, lays out and allocates the
arena, wires backward and forward connections and self-checks the result.
Training runs one example at a time:

    >>> net = create_network(layer_defs, learning_rate=0.001, seed=1)
    >>> net.feed_input(vector)
    >>> net.feed_forward()
    >>> net.back_propagate(label)
    >>> net.classify()

Nodes of one layer never depend on each other, so both passes evaluate a
whole layer at once with numpy, while layers are processed strictly in order.
"""

import logging
import operator
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Union

import numpy as np

from mnist_dnn.activation import activate, derivative
from mnist_dnn.arena import Arena, LayerLayout, compute_layout, locate_node, node_handle
from mnist_dnn.errors import ConfigurationError, ShapeMismatchError
from mnist_dnn.layers import LayerDefinition, define_layers
from mnist_dnn.records import NO_LINK
from mnist_dnn.wiring import wire_network

logger = logging.getLogger(__name__)

DEFAULT_LEARNING_RATE = 0.001

# Weights and biases start in [0, INIT_WEIGHT_RANGE), every other one negated
INIT_WEIGHT_RANGE = 0.4


class Connection(NamedTuple):
    """One connection slot. Out-of-range slots have neither node nor weight."""

    node: Optional[int]
    weight: Optional[int]


class NodeView(NamedTuple):
    """Snapshot of a node record."""

    handle: int
    layer_id: int
    column_id: int
    level: int
    size: int
    bias: float
    output: float
    error_sum: float
    backward_conn_count: int
    forward_conn_count: int


def _optional(value) -> Optional[int]:
    value = int(value)
    return None if value == NO_LINK else value


def _gather(values: np.ndarray, indices: np.ndarray, linked: np.ndarray) -> np.ndarray:
    """Look up ``values[indices]``, yielding 0 where a slot is not linked."""
    safe = np.where(linked, indices, 0)
    if values.size == 0:
        return np.zeros(indices.shape, dtype=np.float64)
    return np.where(linked, values[safe], 0.0)


class Network:
    """
    A neural network whose nodes, connections and weights share one arena.

    Args:
        layer_defs: Layer definitions, input layer first and output layer last
        learning_rate: Step size of the weight updates
        seed: Seed (or ``numpy.random.Generator``) for the initial weights

    Raises:
        ConfigurationError: If the definitions or the learning rate are invalid
        CapacityError: If forward wiring overruns the pre-computed slots
        LayoutError: If the arena fails its self-check
    """

    def __init__(
        self,
        layer_defs: Sequence[LayerDefinition],
        learning_rate: float = DEFAULT_LEARNING_RATE,
        seed: Union[None, int, np.random.Generator] = None
    ):
        self.layer_defs = define_layers(list(layer_defs))

        if isinstance(learning_rate, bool) or not isinstance(learning_rate, (int, float)):
            raise ConfigurationError(
                f"learning_rate must be a number, got {learning_rate!r}"
            )
        if not learning_rate > 0:
            raise ConfigurationError(
                f"learning_rate must be positive, got {learning_rate}"
            )
        self.learning_rate = float(learning_rate)

        self.layout = compute_layout(self.layer_defs)
        self.arena = Arena(self.layout)
        self.arena.reset()
        wire_network(self.arena)
        self.arena.verify()

        self.init_weights(seed)

        logger.info(
            f"Created network: {self.layer_count} layers, "
            f"{self.layout.node_count} nodes, {self.weight_count} weights, "
            f"{self.size} bytes"
        )

    # ------------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------------

    @property
    def layer_count(self) -> int:
        return len(self.layer_defs)

    @property
    def weight_count(self) -> int:
        return self.layout.weight_count

    @property
    def size(self) -> int:
        """Bytes occupied by the arena."""
        return self.arena.size

    @property
    def weights(self) -> np.ndarray:
        """The network's weight block (a live view)."""
        return self.arena.weights

    @property
    def architecture(self) -> List[Dict[str, Any]]:
        """JSON-ready layer definitions."""
        return [layer_def.to_dict() for layer_def in self.layer_defs]

    # ------------------------------------------------------------------------
    # Initialization and input
    # ------------------------------------------------------------------------

    def init_weights(self, seed: Union[None, int, np.random.Generator] = None) -> None:
        """
        Assign random values to all weights and biases.

        May be called again at any time to restart training.
        """
        if isinstance(seed, np.random.Generator):
            rng = seed
        else:
            rng = np.random.default_rng(seed)

        weights = INIT_WEIGHT_RANGE * rng.random(self.weight_count)
        weights[1::2] *= -1
        self.arena.weights[:] = weights

        biases = INIT_WEIGHT_RANGE * rng.random(self.layout.node_count)
        biases[1::2] *= -1
        for layout, storage in zip(self.layout.layers, self.arena.layers):
            storage.nodes['bias'] = biases[layout.first_node:layout.first_node + layout.node_count]

    def feed_input(self, vector) -> None:
        """
        Copy an input vector into the outputs of the input layer.

        Raises:
            ShapeMismatchError: If the vector's length is not the input
                layer's node count
        """
        values = np.asarray(vector, dtype=np.float64).ravel()
        expected = self.layout.layers[0].node_count
        if values.size != expected:
            raise ShapeMismatchError(
                f"Input vector has {values.size} values, "
                f"input layer has {expected} nodes"
            )
        self.arena.layers[0].nodes['output'] = values

    # ------------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------------

    def feed_forward(self) -> None:
        """Compute the outputs of every non-input layer, in layer order."""
        for layer_id in range(1, self.layer_count):
            self._feed_layer(layer_id)

    def _feed_layer(self, layer_id: int) -> None:
        layout = self.layout.layers[layer_id]
        prev_layout = self.layout.layers[layer_id - 1]
        storage = self.arena.layers[layer_id]
        prev_outputs = self.arena.layers[layer_id - 1].nodes['output']

        bwd = layout.backward_conn_count
        targets = storage.connections['node'][:, :bwd]
        weight_ids = storage.connections['weight'][:, :bwd]
        linked = targets != NO_LINK

        inputs = _gather(prev_outputs, targets - prev_layout.first_node, linked)
        weights = _gather(self.arena.weights, weight_ids, linked)

        sums = storage.nodes['bias'] + (inputs * weights).sum(axis=1)
        storage.nodes['output'] = activate(sums, layout.definition.activation)

    # ------------------------------------------------------------------------
    # Backward pass
    # ------------------------------------------------------------------------

    def back_propagate(self, label: int) -> None:
        """
        Propagate the error for one example back through the network and
        update weights and biases.

        Each layer's weights are updated as soon as its errors are known, so
        the previous layer collects its errors through already updated
        weights.

        Args:
            label: Index of the output node that should fire

        Raises:
            ShapeMismatchError: If the label is not a valid output index
        """
        output_count = self.layout.layers[-1].node_count
        try:
            label = operator.index(label)
        except TypeError:
            raise ShapeMismatchError(f"Label must be an integer, got {label!r}") from None
        if not 0 <= label < output_count:
            raise ShapeMismatchError(
                f"Label {label} out of range for {output_count} output nodes"
            )

        output_id = self.layer_count - 1
        nodes = self.arena.layers[output_id].nodes
        outputs = nodes['output']
        targets = (np.arange(output_count) == label).astype(np.float64)
        activation = self.layer_defs[output_id].activation
        nodes['error_sum'] = (targets - outputs) * derivative(outputs, activation)
        self._update_weights(output_id)

        for layer_id in range(self.layer_count - 2, 0, -1):
            self._propagate_layer(layer_id)
            self._update_weights(layer_id)

    def _propagate_layer(self, layer_id: int) -> None:
        """Collect a hidden layer's errors through its forward connections."""
        layout = self.layout.layers[layer_id]
        next_layout = self.layout.layers[layer_id + 1]
        storage = self.arena.layers[layer_id]
        next_errors = self.arena.layers[layer_id + 1].nodes['error_sum']

        bwd = layout.backward_conn_count
        targets = storage.connections['node'][:, bwd:]
        weight_ids = storage.connections['weight'][:, bwd:]
        linked = targets != NO_LINK

        errors = _gather(next_errors, targets - next_layout.first_node, linked)
        weights = _gather(self.arena.weights, weight_ids, linked)

        outputs = storage.nodes['output']
        storage.nodes['error_sum'] = (
            derivative(outputs, layout.definition.activation)
            * (errors * weights).sum(axis=1)
        )

    def _update_weights(self, layer_id: int) -> None:
        layout = self.layout.layers[layer_id]
        prev_layout = self.layout.layers[layer_id - 1]
        storage = self.arena.layers[layer_id]
        prev_outputs = self.arena.layers[layer_id - 1].nodes['output']
        errors = storage.nodes['error_sum']

        bwd = layout.backward_conn_count
        targets = storage.connections['node'][:, :bwd]
        weight_ids = storage.connections['weight'][:, :bwd]
        linked = targets != NO_LINK

        inputs = _gather(prev_outputs, targets - prev_layout.first_node, linked)
        deltas = self.learning_rate * inputs * errors[:, np.newaxis]

        # Convolutional weights are shared, so increments must accumulate
        np.add.at(self.arena.weights, weight_ids[linked], deltas[linked])
        storage.nodes['bias'] += self.learning_rate * errors

    def classify(self) -> int:
        """Index of the output node with the largest output (lowest on ties)."""
        outputs = self.arena.layers[-1].nodes['output']
        return int(np.argmax(outputs))

    # ------------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------------

    def layer(self, layer_id: int) -> LayerLayout:
        return self.layout.layers[layer_id]

    def node(self, layer_id: int, column_id: int, level: int = 0) -> NodeView:
        layout = self.layout.layers[layer_id]
        handle = node_handle(layout, column_id, level)
        record = self.arena.layers[layer_id].nodes[handle - layout.first_node]
        return NodeView(
            handle=handle,
            layer_id=layer_id,
            column_id=column_id,
            level=level,
            size=int(record['size']),
            bias=float(record['bias']),
            output=float(record['output']),
            error_sum=float(record['error_sum']),
            backward_conn_count=int(record['backward_conn_count']),
            forward_conn_count=int(record['forward_conn_count']),
        )

    def _connection_slots(self, handle: int):
        layer_id, _, _ = locate_node(self.layout.layers, handle)
        layout = self.layout.layers[layer_id]
        storage = self.arena.layers[layer_id]
        local = handle - layout.first_node
        return layout, storage.nodes[local], storage.connections[local]

    def backward_connections(self, handle: int) -> List[Connection]:
        """Backward connections of a node, out-of-range slots included."""
        _, record, slots = self._connection_slots(handle)
        count = int(record['backward_conn_count'])
        return [
            Connection(_optional(slot['node']), _optional(slot['weight']))
            for slot in slots[:count]
        ]

    def forward_connections(self, handle: int) -> List[Connection]:
        """Forward connections of a node that were actually wired."""
        layout, record, slots = self._connection_slots(handle)
        bwd = layout.backward_conn_count
        count = int(record['forward_conn_count'])
        return [
            Connection(_optional(slot['node']), _optional(slot['weight']))
            for slot in slots[bwd:bwd + count]
        ]

    def weight_value(self, index: int) -> float:
        if not 0 <= index < self.weight_count:
            raise IndexError(f"Weight index {index} out of range")
        return float(self.arena.weights[index])

    def layer_weights(self, layer_id: int) -> np.ndarray:
        """The slice of the weight block owned by one layer (a live view)."""
        layout = self.layout.layers[layer_id]
        return self.arena.weights[layout.weight_offset:layout.weight_offset + layout.weight_count]

    def outputs(self, layer_id: int = -1) -> np.ndarray:
        """Copy of the output values of a layer, the output layer by default."""
        return self.arena.layers[layer_id].nodes['output'].copy()

    # ------------------------------------------------------------------------
    # Pickling
    # ------------------------------------------------------------------------

    def __getstate__(self) -> Dict[str, Any]:
        return {
            'layer_defs': self.architecture,
            'learning_rate': self.learning_rate,
            'arena': self.arena.buffer.tobytes(),
        }

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.layer_defs = define_layers(
            [LayerDefinition.from_dict(d) for d in state['layer_defs']]
        )
        self.learning_rate = state['learning_rate']
        self.layout = compute_layout(self.layer_defs)
        buffer = np.frombuffer(bytearray(state['arena']), dtype=np.uint8)
        self.arena = Arena(self.layout, buffer)
        self.arena.verify()

    def __repr__(self) -> str:
        kinds = ', '.join(d.layer_type.value for d in self.layer_defs)
        return f"Network([{kinds}], weights={self.weight_count})"


def create_network(
    layer_defs: Sequence[LayerDefinition],
    learning_rate: float = DEFAULT_LEARNING_RATE,
    seed: Union[None, int, np.random.Generator] = None
) -> Network:
    """Build a fully wired and initialized network from layer definitions."""
    return Network(layer_defs, learning_rate=learning_rate, seed=seed)
