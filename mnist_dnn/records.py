"""
records.py
~~~~~~~~~~

Fixed-width record types stored inside a network's arena.

Byte sizes of nodes, columns, layers and the weight block are all derived
from the item sizes of these dtypes.
"""

import numpy as np

NODE_DTYPE = np.dtype([
    ('size', np.uint64),
    ('bias', np.float64),
    ('output', np.float64),
    ('error_sum', np.float64),
    ('backward_conn_count', np.int32),
    ('forward_conn_count', np.int32),
])

# node: global handle of the target node; weight: index into the weight block
CONNECTION_DTYPE = np.dtype([
    ('node', np.int64),
    ('weight', np.int64),
])

WEIGHT_DTYPE = np.dtype(np.float64)

# Stored in both fields of a connection whose filter position lies outside
# the previous layer's node map.
NO_LINK = -1

MAX_CONVOLUTIONAL_FILTER = 10
