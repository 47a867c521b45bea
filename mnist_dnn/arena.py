"""
arena.py
~~~~~~~~

Layout and addressing of the single memory block that holds a network.

The arena is one ``numpy.uint8`` buffer sized exactly from the layer
definitions. Layers follow each other in id order, each one occupying a
segment made of its node records followed by its connection records. The
weight block of the whole network trails the last layer::

    [layer 0: nodes | connections][layer 1: nodes | connections]...[weights]

Nodes are addressed by a global integer handle (the node's position when
counting all nodes of all layers in column-major, level-in-column order).
Because layer sizes differ, a layer's position is found by walking the sizes
of the layers before it; inside a layer all columns and nodes are uniform.
"""

import bisect
import logging
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from mnist_dnn import layers
from mnist_dnn.errors import LayoutError
from mnist_dnn.layers import LayerDefinition
from mnist_dnn.records import CONNECTION_DTYPE, NO_LINK, NODE_DTYPE, WEIGHT_DTYPE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LayerLayout:
    """Position and shape of one layer inside the arena."""

    id: int
    definition: LayerDefinition
    offset: int
    size: int
    column_count: int
    nodes_per_column: int
    node_size: int
    column_size: int
    backward_conn_count: int
    forward_conn_count: int
    first_node: int
    weight_offset: int
    weight_count: int

    @property
    def node_count(self) -> int:
        return self.column_count * self.nodes_per_column

    @property
    def max_conn_count(self) -> int:
        return self.backward_conn_count + self.forward_conn_count

    @property
    def node_table_size(self) -> int:
        return self.node_count * NODE_DTYPE.itemsize

    @property
    def connection_table_offset(self) -> int:
        return self.offset + self.node_table_size

    @property
    def connection_table_size(self) -> int:
        return self.node_count * self.max_conn_count * CONNECTION_DTYPE.itemsize

    def contains(self, handle: int) -> bool:
        return self.first_node <= handle < self.first_node + self.node_count


@dataclass(frozen=True)
class ArenaLayout:
    """Layout of a whole network: its layers plus the trailing weight block."""

    layers: Tuple[LayerLayout, ...]
    weight_block_offset: int
    weight_count: int
    size: int

    @property
    def node_count(self) -> int:
        return sum(layer.node_count for layer in self.layers)


def compute_layout(layer_defs: Sequence[LayerDefinition]) -> ArenaLayout:
    """
    Compute where every layer and the weight block live in the arena.

    Args:
        layer_defs: Validated and normalized layer definitions

    Returns:
        ArenaLayout describing the whole block
    """
    layer_layouts = []
    offset = 0
    first_node = 0
    weight_offset = 0

    for layer_id, layer_def in enumerate(layer_defs):
        layout = LayerLayout(
            id=layer_id,
            definition=layer_def,
            offset=offset,
            size=layers.layer_size(layer_defs, layer_id),
            column_count=layers.column_count(layer_def),
            nodes_per_column=layer_def.node_map.depth,
            node_size=layers.node_size(layer_defs, layer_id),
            column_size=layers.column_size(layer_defs, layer_id),
            backward_conn_count=layers.backward_conn_count(layer_defs, layer_id),
            forward_conn_count=layers.forward_conn_count(layer_defs, layer_id),
            first_node=first_node,
            weight_offset=weight_offset,
            weight_count=layers.weight_count(layer_defs, layer_id),
        )
        layer_layouts.append(layout)

        offset += layout.size
        first_node += layout.node_count
        weight_offset += layout.weight_count

    weight_block_size = layers.network_weight_block_size(layer_defs)

    return ArenaLayout(
        layers=tuple(layer_layouts),
        weight_block_offset=offset,
        weight_count=weight_offset,
        size=offset + weight_block_size,
    )


# ============================================================================
# ADDRESSING
# ============================================================================

def layer_offset(layer_layouts: Sequence[LayerLayout], layer_id: int) -> int:
    """
    Byte offset of a layer, found by walking the sizes of all layers before it.

    Layers have different sizes, so this cannot be a simple multiplication.
    """
    if not 0 <= layer_id < len(layer_layouts):
        raise IndexError(f"Layer id {layer_id} out of range")

    offset = 0
    for layout in layer_layouts[:layer_id]:
        offset += layout.size
    return offset


def column_offset(layout: LayerLayout, column_id: int) -> int:
    """Byte offset of the first node record of a column."""
    if not 0 <= column_id < layout.column_count:
        raise IndexError(
            f"Column id {column_id} out of range for layer {layout.id}"
        )
    return layout.offset + column_id * layout.nodes_per_column * NODE_DTYPE.itemsize


def node_offset(layout: LayerLayout, column_id: int, level: int) -> int:
    """Byte offset of a node record, given its column and level."""
    if not 0 <= level < layout.nodes_per_column:
        raise IndexError(f"Level {level} out of range for layer {layout.id}")
    return column_offset(layout, column_id) + level * NODE_DTYPE.itemsize


def node_handle(layout: LayerLayout, column_id: int, level: int) -> int:
    """Global handle of the node at (column, level) of a layer."""
    if not 0 <= column_id < layout.column_count:
        raise IndexError(
            f"Column id {column_id} out of range for layer {layout.id}"
        )
    if not 0 <= level < layout.nodes_per_column:
        raise IndexError(f"Level {level} out of range for layer {layout.id}")
    return layout.first_node + column_id * layout.nodes_per_column + level


def locate_node(
    layer_layouts: Sequence[LayerLayout],
    handle: int
) -> Tuple[int, int, int]:
    """
    Resolve a global node handle.

    Returns:
        (layer_id, column_id, level)
    """
    starts = [layout.first_node for layout in layer_layouts]
    layer_id = bisect.bisect_right(starts, handle) - 1
    if layer_id < 0 or not layer_layouts[layer_id].contains(handle):
        raise IndexError(f"Node handle {handle} out of range")

    layout = layer_layouts[layer_id]
    column_id, level = divmod(handle - layout.first_node, layout.nodes_per_column)
    return layer_id, column_id, level


# ============================================================================
# STORAGE
# ============================================================================

class LayerStorage(NamedTuple):
    """Views of one layer's records inside the arena buffer."""

    nodes: np.ndarray           # shape (node_count,), NODE_DTYPE
    connections: np.ndarray     # shape (node_count, max_conn_count), CONNECTION_DTYPE


def _address(array: np.ndarray) -> int:
    return array.__array_interface__['data'][0]


class Arena:
    """
    The memory block of one network.

    Allocated once with the exact size of its layout and never resized. All
    node, connection and weight access goes through numpy views of
    ``self.buffer``.
    """

    def __init__(self, layout: ArenaLayout, buffer: Optional[np.ndarray] = None):
        if buffer is None:
            buffer = np.zeros(layout.size, dtype=np.uint8)
        elif buffer.dtype != np.uint8 or buffer.size != layout.size:
            raise LayoutError(
                f"Arena buffer holds {buffer.size} bytes, layout needs {layout.size}"
            )

        self.layout = layout
        self.buffer = buffer
        self.layers: List[LayerStorage] = [
            self._map_layer(layer_layout) for layer_layout in layout.layers
        ]
        self.weights = buffer[layout.weight_block_offset:].view(WEIGHT_DTYPE)

        logger.debug(
            f"Mapped arena of {layout.size} bytes: {len(self.layers)} layers, "
            f"{layout.weight_count} weights"
        )

    @property
    def size(self) -> int:
        return self.buffer.size

    def _map_layer(self, layout: LayerLayout) -> LayerStorage:
        node_start = layout.offset
        node_end = node_start + layout.node_table_size
        nodes = self.buffer[node_start:node_end].view(NODE_DTYPE)

        conn_start = layout.connection_table_offset
        conn_end = conn_start + layout.connection_table_size
        connections = self.buffer[conn_start:conn_end].view(CONNECTION_DTYPE)
        connections = connections.reshape(layout.node_count, layout.max_conn_count)

        return LayerStorage(nodes=nodes, connections=connections)

    def reset(self) -> None:
        """Write default values into every node record and connection slot."""
        for layout, storage in zip(self.layout.layers, self.layers):
            nodes = storage.nodes
            nodes['size'] = layout.node_size
            nodes['bias'] = 0.0
            nodes['output'] = 0.0
            nodes['error_sum'] = 0.0
            nodes['backward_conn_count'] = layout.backward_conn_count
            nodes['forward_conn_count'] = layout.forward_conn_count

            storage.connections['node'] = NO_LINK
            storage.connections['weight'] = NO_LINK

        self.weights[:] = 0.0

    def verify(self) -> None:
        """
        Cross-check the mapped views against addresses recomputed by walking
        the layout.

        Raises:
            LayoutError: If any layer, column or the weight block is misplaced
        """
        base = _address(self.buffer)
        layer_layouts = self.layout.layers

        for layout, storage in zip(layer_layouts, self.layers):
            expected = layer_offset(layer_layouts, layout.id)
            actual = _address(storage.nodes) - base
            if actual != expected or layout.offset != expected:
                raise LayoutError(
                    f"Layer {layout.id} is at byte {actual}, expected {expected}"
                )

            column_size = layout.nodes_per_column * layout.node_size
            if layout.column_size != column_size or (
                layout.column_count * column_size != layout.size
            ):
                raise LayoutError(
                    f"Layer {layout.id} has column size {layout.column_size}, "
                    f"expected {column_size} of its {layout.size} bytes"
                )

            depth = layout.nodes_per_column
            for column_id in range(layout.column_count):
                first = storage.nodes[column_id * depth:column_id * depth + 1]
                actual = _address(first) - base
                if actual != column_offset(layout, column_id):
                    raise LayoutError(
                        f"Column {column_id} of layer {layout.id} is misplaced"
                    )

            if layout.connection_table_size:
                actual = _address(storage.connections) - base
                if actual != layout.connection_table_offset:
                    raise LayoutError(
                        f"Connections of layer {layout.id} are misplaced"
                    )

        if self.weights.size and _address(self.weights) - base != self.layout.weight_block_offset:
            raise LayoutError("Weight block is misplaced")

        weight_block_bytes = self.buffer.size - self.layout.weight_block_offset
        if self.layout.weight_count != weight_block_bytes / WEIGHT_DTYPE.itemsize:
            raise LayoutError(
                f"Incorrect weight count: {self.layout.weight_count} weights, "
                f"{weight_block_bytes} bytes in the weight block"
            )
