"""
errors.py
~~~~~~~~~

Exceptions raised by the network core.

Every error is fatal for the operation that raised it: nothing in the core
retries or recovers. Callers (the training script, the API server) decide
whether to abort or report the diagnostic.
"""


class NetworkError(Exception):
    """Base class for all errors raised while building or running a network."""


class ConfigurationError(NetworkError, ValueError):
    """A layer definition is malformed (bad kind, dimensions or filter)."""


class CapacityError(NetworkError):
    """Forward wiring discovered more connections than a node has room for."""


class ShapeMismatchError(NetworkError, ValueError):
    """An input vector or label does not fit the network's shape."""


class LayoutError(NetworkError):
    """The arena layout failed its self-consistency check."""
