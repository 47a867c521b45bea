"""
wiring.py
~~~~~~~~~

Connection wiring of a freshly mapped arena.

Wiring runs in two strictly sequential phases:

1. Backward connections, layer by layer. Fully-connected and output nodes
   link to every node of the previous layer, each through its own weight.
   Convolutional nodes link to a filter window of the previous layer; all
   windows of one layer reuse the same weights for the same
   (source level, target level, filter position).

2. Forward connections, derived from the complete set of backward
   connections. A node gets a forward connection to every next-layer node
   whose backward connection points at it, through the very same weight
   index. Back propagation uses these to collect downstream errors without
   rescanning the next layer.
"""

import logging
from typing import Tuple

import numpy as np

from mnist_dnn.arena import Arena, LayerLayout
from mnist_dnn.errors import CapacityError, ConfigurationError, LayoutError
from mnist_dnn.layers import DENSE_LAYER_TYPES, LayerType, calc_stride
from mnist_dnn.records import NO_LINK

logger = logging.getLogger(__name__)


def filter_column_ids(
    layer: LayerLayout,
    column_id: int,
    prev_layer: LayerLayout
) -> np.ndarray:
    """
    Column ids in the previous layer covered by one filter window.

    The window belongs to column ``column_id`` of the convolutional layer and
    is positioned by the layer's stride. Positions that fall off the right or
    bottom edge of the previous node map are ``NO_LINK``.

    Returns:
        Array of filter * filter column ids, row by row
    """
    src_width = layer.definition.node_map.width
    tgt_map = prev_layer.definition.node_map
    filter_size = layer.definition.filter

    # Only the width is used for the stride, so node maps are assumed square
    stride = calc_stride(tgt_map.width, filter_size, src_width)

    start_x = (column_id % src_width) * stride
    start_y = (column_id // src_width) * stride

    rows, cols = np.divmod(np.arange(filter_size * filter_size), filter_size)
    xs = start_x + cols
    ys = start_y + rows

    column_ids = ys * tgt_map.width + xs
    out_of_range = (xs >= tgt_map.width) | (ys >= tgt_map.height)
    column_ids[out_of_range] = NO_LINK

    return column_ids


# ============================================================================
# PHASE 1: BACKWARD CONNECTIONS
# ============================================================================

def wire_dense_layer(arena: Arena, layer_id: int) -> None:
    """Connect every node of a dense layer to all nodes of the previous layer."""
    layout = arena.layout.layers[layer_id]
    prev_layout = arena.layout.layers[layer_id - 1]
    connections = arena.layers[layer_id].connections

    bwd = layout.backward_conn_count
    conn_ids = np.arange(bwd)
    local_ids = np.arange(layout.node_count)[:, np.newaxis]

    connections['node'][:, :bwd] = prev_layout.first_node + conn_ids
    connections['weight'][:, :bwd] = layout.weight_offset + local_ids * bwd + conn_ids


def wire_convolutional_layer(arena: Arena, layer_id: int) -> None:
    """
    Connect every node of a convolutional layer to its filter window.

    Connection slot of a node: ``tgt_level * filter_area + position``.
    Weight slot: ``src_level * tgt_depth * filter_area
    + tgt_level * filter_area + position``, relative to the layer's weights.
    """
    layout = arena.layout.layers[layer_id]
    prev_layout = arena.layout.layers[layer_id - 1]
    connections = arena.layers[layer_id].connections

    depth = layout.nodes_per_column
    tgt_depth = prev_layout.nodes_per_column
    filter_area = layout.definition.filter ** 2
    bwd = layout.backward_conn_count

    src_levels = np.arange(depth)[:, np.newaxis, np.newaxis]
    tgt_levels = np.arange(tgt_depth)[:, np.newaxis]
    positions = np.arange(filter_area)

    weight_slots = (
        layout.weight_offset
        + src_levels * tgt_depth * filter_area
        + tgt_levels * filter_area
        + positions
    )

    for column_id in range(layout.column_count):
        column_ids = filter_column_ids(layout, column_id, prev_layout)
        in_range = column_ids != NO_LINK

        targets = prev_layout.first_node + column_ids * tgt_depth + tgt_levels
        targets = np.where(in_range, targets, NO_LINK)
        weights = np.where(in_range, weight_slots, NO_LINK)

        rows = slice(column_id * depth, (column_id + 1) * depth)
        connections['node'][rows, :bwd] = np.broadcast_to(
            targets, (depth, tgt_depth, filter_area)
        ).reshape(depth, bwd)
        connections['weight'][rows, :bwd] = weights.reshape(depth, bwd)


def wire_backward_connections(arena: Arena, layer_id: int) -> None:
    layer_type = arena.layout.layers[layer_id].definition.layer_type

    if layer_type == LayerType.INPUT:
        return
    if layer_type in DENSE_LAYER_TYPES:
        wire_dense_layer(arena, layer_id)
    elif layer_type == LayerType.CONVOLUTIONAL:
        wire_convolutional_layer(arena, layer_id)
    else:
        raise ConfigurationError(
            f"Layer {layer_id}: wrong/missing layer type {layer_type!r}"
        )


# ============================================================================
# PHASE 2: FORWARD CONNECTIONS
# ============================================================================

def reconcile_forward_connections(
    next_targets: np.ndarray,
    next_weights: np.ndarray,
    next_first_node: int,
    first_node: int,
    node_count: int,
    capacity: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Invert the next layer's backward connections into forward connections.

    Entries are grouped by the node they point at with a stable sort, so each
    node's forward connections come out in the order a scan of the next
    layer (node by node, connection by connection) would find them.

    Args:
        next_targets: (next_node_count, bwd) target handles of the next layer
        next_weights: (next_node_count, bwd) weight indices of the next layer
        next_first_node: Handle of the next layer's first node
        first_node: Handle of this layer's first node
        node_count: Number of nodes in this layer
        capacity: Forward connection slots available per node

    Returns:
        (targets, weights, counts): ``(node_count, capacity)`` arrays padded
        with ``NO_LINK`` and the realized connection count per node

    Raises:
        CapacityError: If a node would need more than ``capacity`` slots
    """
    next_node_count, bwd = next_targets.shape
    flat_targets = next_targets.ravel()
    flat_weights = next_weights.ravel()
    sources = np.repeat(next_first_node + np.arange(next_node_count), bwd)

    linked = flat_targets != NO_LINK
    local = flat_targets[linked] - first_node
    if local.size and (local.min() < 0 or local.max() >= node_count):
        raise LayoutError("Backward connection points outside the previous layer")

    counts = np.bincount(local, minlength=node_count)
    if counts.size and counts.max() > capacity:
        worst = int(np.argmax(counts))
        raise CapacityError(
            f"Node {first_node + worst} needs {counts[worst]} forward "
            f"connections, only {capacity} slots available"
        )

    order = np.argsort(local, kind='stable')
    local_sorted = local[order]
    group_starts = np.cumsum(counts) - counts
    ranks = np.arange(local_sorted.size) - group_starts[local_sorted]

    targets = np.full((node_count, capacity), NO_LINK, dtype=np.int64)
    weights = np.full((node_count, capacity), NO_LINK, dtype=np.int64)
    targets[local_sorted, ranks] = sources[linked][order]
    weights[local_sorted, ranks] = flat_weights[linked][order]

    return targets, weights, counts


def wire_forward_connections(arena: Arena, layer_id: int) -> None:
    """Fill the forward slots of one layer from the next layer's wiring."""
    layer_layouts = arena.layout.layers
    # INPUT and OUTPUT layers have no forward connections
    if layer_id == 0 or layer_id == len(layer_layouts) - 1:
        return

    layout = layer_layouts[layer_id]
    next_layout = layer_layouts[layer_id + 1]
    storage = arena.layers[layer_id]
    next_connections = arena.layers[layer_id + 1].connections
    next_bwd = next_layout.backward_conn_count

    targets, weights, counts = reconcile_forward_connections(
        next_connections['node'][:, :next_bwd],
        next_connections['weight'][:, :next_bwd],
        next_first_node=next_layout.first_node,
        first_node=layout.first_node,
        node_count=layout.node_count,
        capacity=layout.forward_conn_count,
    )

    bwd = layout.backward_conn_count
    storage.connections['node'][:, bwd:] = targets
    storage.connections['weight'][:, bwd:] = weights
    storage.nodes['forward_conn_count'] = counts


def wire_network(arena: Arena) -> None:
    """
    Wire all connections of a reset arena.

    Forward wiring starts only after every layer's backward connections
    exist, since each layer derives its forward connections from the next.
    """
    layer_count = len(arena.layout.layers)

    for layer_id in range(layer_count):
        wire_backward_connections(arena, layer_id)

    for layer_id in range(layer_count):
        wire_forward_connections(arena, layer_id)

    logger.debug(f"Wired {layer_count} layers")
