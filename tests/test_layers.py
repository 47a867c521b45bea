"""
test_layers.py
~~~~~~~~~~~~~~

Unit tests for layer definitions, validation and the geometry calculator.
"""

import pytest
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from mnist_dnn import layers
from mnist_dnn.errors import ConfigurationError
from mnist_dnn.layers import (
    ActivationType,
    LayerDefinition,
    LayerType,
    Volume,
    define_layers,
    validate_layer_definitions,
)
from mnist_dnn.records import CONNECTION_DTYPE, NODE_DTYPE, WEIGHT_DTYPE


def input_layer(width=28, height=28):
    return LayerDefinition(LayerType.INPUT, node_map=Volume(width=width, height=height))


def fc_layer(width, activation=ActivationType.SIGMOID):
    return LayerDefinition(LayerType.FULLY_CONNECTED, activation, Volume(width=width))


def output_layer(width=10, activation=ActivationType.SIGMOID):
    return LayerDefinition(LayerType.OUTPUT, activation, Volume(width=width))


def conv_layer(width, height, depth, filter_size, activation=ActivationType.RELU):
    return LayerDefinition(
        LayerType.CONVOLUTIONAL,
        activation,
        Volume(width=width, height=height, depth=depth),
        filter=filter_size,
    )


@pytest.fixture
def fc_defs():
    """Input 28x28, one hidden layer of 20, 10 outputs."""
    return define_layers(input_layer(), fc_layer(20), output_layer())


@pytest.fixture
def conv_defs():
    """The convolutional MNIST design: 28x28 -> 13x13x5 -> 6x6x5 -> 10."""
    return define_layers(
        input_layer(),
        conv_layer(13, 13, 5, 5),
        conv_layer(6, 6, 5, 3),
        output_layer(activation=ActivationType.RELU),
    )


@pytest.mark.unit
class TestDefineLayers:
    """Test normalization of layer definitions."""

    def test_unset_dimensions_default_to_one(self, fc_defs):
        assert fc_defs[0].node_map == Volume(28, 28, 1)
        assert fc_defs[1].node_map == Volume(20, 1, 1)
        assert fc_defs[2].node_map == Volume(10, 1, 1)

    def test_filter_cleared_for_non_convolutional_layers(self):
        defs = define_layers(
            input_layer(),
            LayerDefinition(LayerType.FULLY_CONNECTED, ActivationType.TANH,
                            Volume(width=5), filter=3),
            output_layer(),
        )
        assert defs[1].filter == 0

    def test_accepts_a_single_list(self, fc_defs):
        defs = define_layers([input_layer(), fc_layer(20), output_layer()])
        assert defs == fc_defs

    def test_normalized_definitions_are_accepted_again(self, conv_defs):
        assert define_layers(conv_defs) == conv_defs


@pytest.mark.unit
class TestValidation:
    """Test that invalid definitions are rejected before anything is built."""

    def test_needs_two_layers(self):
        with pytest.raises(ConfigurationError):
            validate_layer_definitions([input_layer()])

    def test_first_layer_must_be_input(self):
        with pytest.raises(ConfigurationError, match="first layer"):
            validate_layer_definitions([fc_layer(5), output_layer()])

    def test_last_layer_must_be_output(self):
        with pytest.raises(ConfigurationError, match="last layer"):
            validate_layer_definitions([input_layer(), fc_layer(5)])

    def test_output_only_allowed_last(self):
        with pytest.raises(ConfigurationError, match="OUTPUT"):
            validate_layer_definitions([input_layer(), output_layer(), output_layer()])

    def test_input_only_allowed_first(self):
        with pytest.raises(ConfigurationError, match="INPUT"):
            validate_layer_definitions([input_layer(), input_layer(), output_layer()])

    def test_unknown_layer_type(self):
        bogus = LayerDefinition('pooling', ActivationType.SIGMOID, Volume(width=4))
        with pytest.raises(ConfigurationError, match="layer type"):
            validate_layer_definitions([input_layer(), bogus, output_layer()])

    def test_missing_activation(self):
        with pytest.raises(ConfigurationError, match="activation"):
            validate_layer_definitions([
                input_layer(),
                LayerDefinition(LayerType.FULLY_CONNECTED, node_map=Volume(width=5)),
                output_layer(),
            ])

    def test_empty_node_map(self):
        with pytest.raises(ConfigurationError, match="empty"):
            validate_layer_definitions([input_layer(), fc_layer(0), output_layer()])

    @pytest.mark.parametrize("width", [-1, 2.5, True])
    def test_dimensions_must_be_non_negative_integers(self, width):
        with pytest.raises(ConfigurationError, match="non-negative"):
            validate_layer_definitions([input_layer(), fc_layer(width), output_layer()])

    def test_depth_only_for_convolutional_layers(self):
        deep_fc = LayerDefinition(
            LayerType.FULLY_CONNECTED, ActivationType.SIGMOID, Volume(4, 4, 3)
        )
        with pytest.raises(ConfigurationError, match="depth"):
            validate_layer_definitions([input_layer(), deep_fc, output_layer()])

    def test_convolutional_layer_needs_filter(self):
        with pytest.raises(ConfigurationError, match="filter"):
            validate_layer_definitions([input_layer(), conv_layer(5, 5, 2, 0), output_layer()])

    def test_convolutional_layer_needs_depth(self):
        with pytest.raises(ConfigurationError, match="depth"):
            validate_layer_definitions([input_layer(), conv_layer(5, 5, 0, 3), output_layer()])

    def test_filter_must_be_smaller_than_previous_map(self):
        with pytest.raises(ConfigurationError, match="smaller"):
            validate_layer_definitions([
                input_layer(4, 4), conv_layer(2, 2, 1, 4), output_layer()
            ])

    def test_filter_maximum(self):
        with pytest.raises(ConfigurationError, match="maximum"):
            validate_layer_definitions([input_layer(), conv_layer(2, 2, 1, 11), output_layer()])


@pytest.mark.unit
class TestLayerDefinitionDicts:
    """Test JSON-style construction of layer definitions."""

    def test_from_dict_is_case_insensitive(self):
        layer_def = LayerDefinition.from_dict({
            'type': 'Convolutional', 'activation': 'RELU',
            'width': 13, 'height': 13, 'depth': 5, 'filter': 5,
        })
        assert layer_def == conv_layer(13, 13, 5, 5)

    def test_from_dict_accepts_nested_node_map(self):
        layer_def = LayerDefinition.from_dict({
            'layer_type': 'fully-connected', 'activation': 'tanh',
            'node_map': {'width': 30},
        })
        assert layer_def == fc_layer(30, ActivationType.TANH)

    def test_from_dict_unknown_kind(self):
        with pytest.raises(ConfigurationError, match="Unrecognized"):
            LayerDefinition.from_dict({'type': 'pooling', 'width': 3})
        with pytest.raises(ConfigurationError, match="Unrecognized"):
            LayerDefinition.from_dict({'type': 'output', 'activation': 'softmax'})

    def test_from_dict_missing_type(self):
        with pytest.raises(ConfigurationError, match="type"):
            LayerDefinition.from_dict({'width': 3})

    @pytest.mark.parametrize("node_map", [[2, 2], 'wide', 4])
    def test_from_dict_node_map_must_be_a_mapping(self, node_map):
        with pytest.raises(ConfigurationError, match="node_map"):
            LayerDefinition.from_dict({'type': 'input', 'node_map': node_map})

    @pytest.mark.parametrize("field,value", [
        ('width', '28'), ('height', 2.5), ('depth', -1), ('width', True), ('filter', [5]),
    ])
    def test_from_dict_rejects_non_integer_sizes(self, field, value):
        data = {'type': 'convolutional', 'activation': 'relu',
                'width': 4, 'height': 4, 'depth': 2, 'filter': 3}
        data[field] = value
        with pytest.raises(ConfigurationError, match=field):
            LayerDefinition.from_dict(data)

    def test_from_dict_rejects_non_mapping(self):
        with pytest.raises(ConfigurationError, match="mapping"):
            LayerDefinition.from_dict(['input', 28, 28])

    def test_to_dict_round_trip(self, conv_defs):
        assert [LayerDefinition.from_dict(d.to_dict()) for d in conv_defs] == conv_defs


@pytest.mark.unit
class TestCounts:
    """Test node, connection and weight counts."""

    def test_fully_connected_counts(self, fc_defs):
        assert layers.node_count(fc_defs[0]) == 784
        assert layers.backward_conn_count(fc_defs, 0) == 0
        assert layers.backward_conn_count(fc_defs, 1) == 784
        assert layers.forward_conn_count(fc_defs, 1) == 10
        assert layers.forward_conn_count(fc_defs, 2) == 0
        assert layers.weight_count(fc_defs, 0) == 0
        assert layers.weight_count(fc_defs, 1) == 20 * 784
        assert layers.weight_count(fc_defs, 2) == 10 * 20
        assert layers.network_weight_count(fc_defs) == 20 * 784 + 200

    def test_convolutional_counts(self, conv_defs):
        assert layers.column_count(conv_defs[1]) == 169
        assert layers.node_count(conv_defs[1]) == 169 * 5
        assert layers.backward_conn_count(conv_defs, 1) == 25
        assert layers.backward_conn_count(conv_defs, 2) == 9 * 5
        assert layers.backward_conn_count(conv_defs, 3) == 36 * 5
        # Upper bound: filter area of the next layer times its depth
        assert layers.forward_conn_count(conv_defs, 1) == 9 * 5
        assert layers.forward_conn_count(conv_defs, 2) == 10

    def test_convolutional_weights_are_shared(self, conv_defs):
        # filter area x own depth x previous depth, independent of map size
        assert layers.weight_count(conv_defs, 1) == 25 * 5 * 1
        assert layers.weight_count(conv_defs, 2) == 9 * 5 * 5
        assert layers.weight_count(conv_defs, 3) == 10 * 180

    def test_unknown_layer_type_raises(self, fc_defs):
        bogus = LayerDefinition('pooling', ActivationType.SIGMOID, Volume(4, 1, 1))
        defs = [fc_defs[0], bogus, fc_defs[2]]
        with pytest.raises(ConfigurationError):
            layers.backward_conn_count(defs, 1)
        with pytest.raises(ConfigurationError):
            layers.weight_count(defs, 1)
        with pytest.raises(ConfigurationError):
            layers.forward_conn_count(defs, 1)


@pytest.mark.unit
class TestStride:

    @pytest.mark.parametrize("tgt_width,filter_size,src_width,expected", [
        (28, 5, 13, 2),
        (13, 3, 6, 2),
        (28, 5, 24, 1),
        (6, 3, 2, 3),
        (5, 3, 1, 0),
    ])
    def test_calc_stride(self, tgt_width, filter_size, src_width, expected):
        assert layers.calc_stride(tgt_width, filter_size, src_width) == expected


@pytest.mark.unit
class TestByteSizes:
    """Test the sizes that determine the arena layout."""

    def test_node_size(self, fc_defs):
        assert layers.node_size(fc_defs, 0) == NODE_DTYPE.itemsize
        assert layers.node_size(fc_defs, 1) == (
            NODE_DTYPE.itemsize + (784 + 10) * CONNECTION_DTYPE.itemsize
        )

    def test_column_and_layer_size(self, conv_defs):
        node_size = layers.node_size(conv_defs, 2)
        assert layers.column_size(conv_defs, 2) == 5 * node_size
        assert layers.layer_size(conv_defs, 2) == 36 * 5 * node_size

    def test_network_size(self, conv_defs):
        layers_bytes = sum(layers.layer_size(conv_defs, i) for i in range(4))
        weight_bytes = layers.network_weight_count(conv_defs) * WEIGHT_DTYPE.itemsize
        assert layers.network_weight_block_size(conv_defs) == weight_bytes
        assert layers.network_size(conv_defs) == layers_bytes + weight_bytes
