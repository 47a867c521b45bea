"""
activation.py
~~~~~~~~~~~~~

Activation functions and their derivatives.

The "ReLU" pair is a softplus activation ``ln(1 + e^x)`` with the logistic
function as derivative, applied to the activated output like the others.
"""

import numpy as np

from mnist_dnn.errors import ConfigurationError
from mnist_dnn.layers import ActivationType


def _sigmoid(x: np.ndarray) -> np.ndarray:
    with np.errstate(over='ignore'):
        return 1.0 / (1.0 + np.exp(-x))


def activate(x: np.ndarray, kind: ActivationType) -> np.ndarray:
    """Apply an activation function to weighted sums."""
    if kind == ActivationType.SIGMOID:
        return _sigmoid(x)
    if kind == ActivationType.TANH:
        return np.tanh(x)
    if kind == ActivationType.RELU:
        return np.logaddexp(0.0, x)
    if kind == ActivationType.NONE:
        return np.asarray(x, dtype=np.float64)
    raise ConfigurationError(f"Undefined activation function: {kind!r}")


def derivative(y: np.ndarray, kind: ActivationType) -> np.ndarray:
    """
    Derivative of an activation function, evaluated on its OUTPUT value.

    Args:
        y: Outputs produced by ``activate``
        kind: The activation that produced them
    """
    if kind == ActivationType.SIGMOID:
        return y * (1.0 - y)
    if kind == ActivationType.TANH:
        return 1.0 - np.tanh(y) ** 2
    if kind == ActivationType.RELU:
        return _sigmoid(y)
    if kind == ActivationType.NONE:
        return np.ones_like(y, dtype=np.float64)
    raise ConfigurationError(f"Undefined derivative function: {kind!r}")
