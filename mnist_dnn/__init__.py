"""
mnist_dnn package
~~~~~~~~~~~~~~~~~

Deep neural network for MNIST digit recognition with fully-connected and
convolutional layers. Every network lives in one contiguous arena whose
layout is computed from the layer definitions. Also contains the dataset
loader, training driver, model persistence and API server.
"""

from mnist_dnn.errors import (
    CapacityError,
    ConfigurationError,
    LayoutError,
    NetworkError,
    ShapeMismatchError,
)
from mnist_dnn.layers import (
    ActivationType,
    LayerDefinition,
    LayerType,
    Volume,
    define_layers,
)
from mnist_dnn.network import Network, create_network

__version__ = "1.0.0"

__all__ = [
    'ActivationType',
    'CapacityError',
    'ConfigurationError',
    'LayerDefinition',
    'LayerType',
    'LayoutError',
    'Network',
    'NetworkError',
    'ShapeMismatchError',
    'Volume',
    'create_network',
    'define_layers',
]
