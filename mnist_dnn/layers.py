"""
layers.py
~~~~~~~~~

Layer definitions and the geometry calculator.

A network's shape is fully described by an ordered sequence of
``LayerDefinition`` objects. All structural numbers (node counts, connection
counts, weight counts and byte sizes) are computed from those definitions
here, never stored separately. Functions that need fan-in or fan-out take the
whole definition sequence plus the index of the layer in question.
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from mnist_dnn.errors import ConfigurationError
from mnist_dnn.records import (
    CONNECTION_DTYPE,
    MAX_CONVOLUTIONAL_FILTER,
    NODE_DTYPE,
    WEIGHT_DTYPE,
)


class LayerType(Enum):
    INPUT = 'input'
    CONVOLUTIONAL = 'convolutional'
    FULLY_CONNECTED = 'fully_connected'
    OUTPUT = 'output'


class ActivationType(Enum):
    SIGMOID = 'sigmoid'
    TANH = 'tanh'
    RELU = 'relu'
    NONE = 'none'


DENSE_LAYER_TYPES = (LayerType.FULLY_CONNECTED, LayerType.OUTPUT)


@dataclass(frozen=True)
class Volume:
    """Width x height x depth of a layer's node map. Zero means unset."""

    width: int = 0
    height: int = 0
    depth: int = 0


@dataclass(frozen=True)
class LayerDefinition:
    """User-declared description of one layer."""

    layer_type: LayerType
    activation: Optional[ActivationType] = None
    node_map: Volume = field(default_factory=Volume)
    filter: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LayerDefinition':
        """
        Build a definition from a JSON-style dictionary.

        Accepted keys: ``type`` (or ``layer_type``), ``activation``,
        ``width``/``height``/``depth`` (or a nested ``node_map``) and
        ``filter``. Kinds are matched case-insensitively by name.

        Raises:
            ConfigurationError: If a kind is unrecognized or a key is missing
        """
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Layer definition must be a mapping, got {type(data).__name__}"
            )

        raw_type = data.get('type', data.get('layer_type'))
        if raw_type is None:
            raise ConfigurationError("Layer definition is missing its 'type'")
        layer_type = _parse_enum(LayerType, raw_type, 'layer type')

        raw_activation = data.get('activation')
        activation = None
        if raw_activation is not None:
            activation = _parse_enum(ActivationType, raw_activation, 'activation')

        dims = data.get('node_map', data)
        if not isinstance(dims, dict):
            raise ConfigurationError(
                f"node_map must be a mapping of width/height/depth, "
                f"got {type(dims).__name__}"
            )
        sizes = {key: dims.get(key, 0) for key in ('width', 'height', 'depth')}
        for key, value in sizes.items():
            if not _is_dimension(value):
                raise ConfigurationError(
                    f"Layer {key} must be a non-negative integer, got {value!r}"
                )
        node_map = Volume(**sizes)

        filter_size = data.get('filter', 0)
        if not _is_dimension(filter_size):
            raise ConfigurationError(
                f"Layer filter must be a non-negative integer, got {filter_size!r}"
            )

        return cls(
            layer_type=layer_type,
            activation=activation,
            node_map=node_map,
            filter=filter_size,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serializable representation of this definition."""
        return {
            'type': self.layer_type.value,
            'activation': self.activation.value if self.activation else None,
            'width': self.node_map.width,
            'height': self.node_map.height,
            'depth': self.node_map.depth,
            'filter': self.filter,
        }


def _parse_enum(enum_cls, value: Any, what: str):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().lower().replace(' ', '_').replace('-', '_')
        for member in enum_cls:
            if member.value == key:
                return member
    raise ConfigurationError(f"Unrecognized {what}: {value!r}")


# ============================================================================
# VALIDATION
# ============================================================================

def _is_dimension(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_layer_definitions(layer_defs: Sequence[LayerDefinition]) -> None:
    """
    Check that a sequence of raw or normalized definitions describes a
    feasible network.

    Raises:
        ConfigurationError: Describing the first rule that is violated
    """
    if len(layer_defs) < 2:
        raise ConfigurationError(
            f"A network needs at least an input and an output layer, "
            f"got {len(layer_defs)} layer(s)"
        )

    for layer_id, layer_def in enumerate(layer_defs):
        if not isinstance(layer_def, LayerDefinition):
            raise ConfigurationError(
                f"Layer {layer_id}: expected a LayerDefinition, "
                f"got {type(layer_def).__name__}"
            )

        layer_type = layer_def.layer_type
        if not isinstance(layer_type, LayerType):
            raise ConfigurationError(
                f"Layer {layer_id}: wrong/missing layer type {layer_type!r}"
            )

        if layer_id == 0 and layer_type != LayerType.INPUT:
            raise ConfigurationError("The first layer must be an INPUT layer")
        if layer_id == len(layer_defs) - 1 and layer_type != LayerType.OUTPUT:
            raise ConfigurationError("The last layer must be an OUTPUT layer")
        if layer_type == LayerType.INPUT and layer_id != 0:
            raise ConfigurationError(
                f"Layer {layer_id}: INPUT is only allowed as the first layer"
            )
        if layer_type == LayerType.OUTPUT and layer_id != len(layer_defs) - 1:
            raise ConfigurationError(
                f"Layer {layer_id}: OUTPUT is only allowed as the last layer"
            )

        if layer_type != LayerType.INPUT and not isinstance(
            layer_def.activation, ActivationType
        ):
            raise ConfigurationError(
                f"Layer {layer_id}: wrong/missing activation function "
                f"{layer_def.activation!r}"
            )

        node_map = layer_def.node_map
        dims = (node_map.width, node_map.height, node_map.depth)
        if not all(_is_dimension(d) for d in dims):
            raise ConfigurationError(
                f"Layer {layer_id}: node map dimensions must be non-negative "
                f"integers, got {dims}"
            )
        if dims == (0, 0, 0):
            raise ConfigurationError(f"Layer {layer_id}: node map is empty")

        if layer_type != LayerType.CONVOLUTIONAL:
            # A depth of 1 is what normalization writes for "unset"
            if node_map.depth > 1:
                raise ConfigurationError(
                    f"Layer {layer_id}: only CONVOLUTIONAL layers may have a depth"
                )
            continue

        # Convolutional rules
        if node_map.height == 0 or node_map.depth == 0:
            raise ConfigurationError(
                f"Layer {layer_id}: CONVOLUTIONAL layers need height and depth"
            )
        if not _is_dimension(layer_def.filter) or layer_def.filter == 0:
            raise ConfigurationError(
                f"Layer {layer_id}: CONVOLUTIONAL layers need a filter size"
            )
        prev_map = _normalized_map(layer_defs[layer_id - 1].node_map)
        if layer_def.filter >= prev_map.width or layer_def.filter >= prev_map.height:
            raise ConfigurationError(
                f"Layer {layer_id}: filter {layer_def.filter} must be smaller "
                f"than the previous node map {prev_map.width}x{prev_map.height}"
            )
        if layer_def.filter > MAX_CONVOLUTIONAL_FILTER:
            raise ConfigurationError(
                f"Layer {layer_id}: filter {layer_def.filter} exceeds the "
                f"maximum of {MAX_CONVOLUTIONAL_FILTER}"
            )


def _normalized_map(node_map: Volume) -> Volume:
    return Volume(
        width=node_map.width or 1,
        height=node_map.height or 1,
        depth=node_map.depth or 1,
    )


def normalize_layer_definition(layer_def: LayerDefinition) -> LayerDefinition:
    """Default unset dimensions to 1 and the filter of non-conv layers to 0."""
    filter_size = layer_def.filter
    if layer_def.layer_type != LayerType.CONVOLUTIONAL:
        filter_size = 0
    return replace(
        layer_def,
        node_map=_normalized_map(layer_def.node_map),
        filter=filter_size,
    )


def define_layers(*layer_defs: LayerDefinition) -> List[LayerDefinition]:
    """
    Validate and normalize a network definition.

    Accepts either several definitions or a single sequence of them.

    Returns:
        The normalized definitions, ready for ``create_network``

    Raises:
        ConfigurationError: If the definitions are invalid
    """
    if len(layer_defs) == 1 and isinstance(layer_defs[0], (list, tuple)):
        layer_defs = tuple(layer_defs[0])

    validate_layer_definitions(layer_defs)
    return [normalize_layer_definition(d) for d in layer_defs]


# ============================================================================
# COUNTS
# ============================================================================

def _unknown_type(layer_def: LayerDefinition) -> ConfigurationError:
    return ConfigurationError(
        f"Wrong/missing layer type definition: {layer_def.layer_type!r}"
    )


def column_count(layer_def: LayerDefinition) -> int:
    return layer_def.node_map.width * layer_def.node_map.height


def node_count(layer_def: LayerDefinition) -> int:
    # Dimensions must have been defaulted to 1
    return column_count(layer_def) * layer_def.node_map.depth


def backward_conn_count(layer_defs: Sequence[LayerDefinition], layer_id: int) -> int:
    """Number of backward connections of one NODE in the given layer."""
    layer_def = layer_defs[layer_id]

    if layer_def.layer_type == LayerType.INPUT:
        return 0
    if layer_def.layer_type in DENSE_LAYER_TYPES:
        return node_count(layer_defs[layer_id - 1])
    if layer_def.layer_type == LayerType.CONVOLUTIONAL:
        return layer_def.filter ** 2 * layer_defs[layer_id - 1].node_map.depth
    raise _unknown_type(layer_def)


def forward_conn_count(layer_defs: Sequence[LayerDefinition], layer_id: int) -> int:
    """
    Number of forward connection slots of one NODE in the given layer.

    When the next layer is convolutional this is an upper bound: nodes near
    the border of the node map are reached by fewer filter windows.
    """
    layer_def = layer_defs[layer_id]

    if layer_def.layer_type in (LayerType.INPUT, LayerType.OUTPUT):
        return 0
    if layer_def.layer_type not in (LayerType.CONVOLUTIONAL, LayerType.FULLY_CONNECTED):
        raise _unknown_type(layer_def)

    next_def = layer_defs[layer_id + 1]
    if next_def.layer_type in DENSE_LAYER_TYPES:
        return node_count(next_def)
    if next_def.layer_type == LayerType.CONVOLUTIONAL:
        return next_def.filter ** 2 * next_def.node_map.depth
    raise _unknown_type(next_def)


def weight_count(layer_defs: Sequence[LayerDefinition], layer_id: int) -> int:
    """Number of weights owned by a layer. Conv layers share theirs."""
    layer_def = layer_defs[layer_id]

    if layer_def.layer_type == LayerType.INPUT:
        return 0
    if layer_def.layer_type in DENSE_LAYER_TYPES:
        return node_count(layer_def) * node_count(layer_defs[layer_id - 1])
    if layer_def.layer_type == LayerType.CONVOLUTIONAL:
        return (
            layer_def.filter ** 2
            * layer_def.node_map.depth
            * layer_defs[layer_id - 1].node_map.depth
        )
    raise _unknown_type(layer_def)


def network_weight_count(layer_defs: Sequence[LayerDefinition]) -> int:
    return sum(weight_count(layer_defs, i) for i in range(len(layer_defs)))


def calc_stride(tgt_width: int, filter_size: int, src_width: int) -> int:
    """
    Number of target columns skipped between neighbouring filter windows.

    Args:
        tgt_width: Width of the TARGET (previous) layer's node map
        filter_size: Filter width (filters are square)
        src_width: Width of the SOURCE (convolutional) layer's node map
    """
    if src_width <= 1:
        return 0
    return math.ceil((tgt_width - filter_size) / (src_width - 1))


# ============================================================================
# BYTE SIZES
# ============================================================================

def max_conn_count(layer_defs: Sequence[LayerDefinition], layer_id: int) -> int:
    return backward_conn_count(layer_defs, layer_id) + forward_conn_count(layer_defs, layer_id)


def node_size(layer_defs: Sequence[LayerDefinition], layer_id: int) -> int:
    """Bytes of one node: its record plus all of its connection slots."""
    return (
        NODE_DTYPE.itemsize
        + max_conn_count(layer_defs, layer_id) * CONNECTION_DTYPE.itemsize
    )


def column_size(layer_defs: Sequence[LayerDefinition], layer_id: int) -> int:
    return layer_defs[layer_id].node_map.depth * node_size(layer_defs, layer_id)


def layer_size(layer_defs: Sequence[LayerDefinition], layer_id: int) -> int:
    return column_count(layer_defs[layer_id]) * column_size(layer_defs, layer_id)


def layer_weight_block_size(layer_defs: Sequence[LayerDefinition], layer_id: int) -> int:
    return weight_count(layer_defs, layer_id) * WEIGHT_DTYPE.itemsize


def network_weight_block_size(layer_defs: Sequence[LayerDefinition]) -> int:
    return sum(layer_weight_block_size(layer_defs, i) for i in range(len(layer_defs)))


def network_size(layer_defs: Sequence[LayerDefinition]) -> int:
    """Bytes of the whole arena: every layer followed by one weight block."""
    layers_bytes = sum(layer_size(layer_defs, i) for i in range(len(layer_defs)))
    return layers_bytes + network_weight_block_size(layer_defs)
