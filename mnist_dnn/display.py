"""
display.py
~~~~~~~~~~

Plain-text rendering of network definitions, progress counters and digits
for terminal output.
"""

from typing import List, Sequence

import numpy as np

from mnist_dnn import layers
from mnist_dnn.layers import LayerDefinition, LayerType
from mnist_dnn.mnist_loader import IMAGE_HEIGHT, IMAGE_WIDTH
from mnist_dnn.trainer import Progress

LABEL_WIDTH = 31
CELL_WIDTH = 16


def _row(label: str, cells: Sequence[str], total: str = '') -> str:
    body = ''.join(f"|{cell:>{CELL_WIDTH}}" for cell in cells)
    return f"{label:<{LABEL_WIDTH}}{body}||{total:>{CELL_WIDTH - 1}}|"


def format_network_definition(layer_defs: Sequence[LayerDefinition]) -> str:
    """
    Summarize a network definition as a table with one column per layer.

    The definitions must already be normalized (see ``define_layers``).
    """
    count = len(layer_defs)
    indices = range(count)
    separator = '-' * (LABEL_WIDTH + (CELL_WIDTH + 1) * count + CELL_WIDTH + 2)

    def hidden_only(values: List[str]) -> List[str]:
        return [values[i] if 0 < i < count - 1 else '' for i in indices]

    strides = []
    for i in indices:
        layer_def = layer_defs[i]
        if layer_def.layer_type == LayerType.CONVOLUTIONAL:
            stride = layers.calc_stride(
                layer_defs[i - 1].node_map.width,
                layer_def.filter,
                layer_def.node_map.width,
            )
            strides.append(str(stride))
        else:
            strides.append('-')

    node_counts = [layers.node_count(d) for d in layer_defs]
    conn_counts = [
        node_counts[i] * layers.backward_conn_count(layer_defs, i) for i in indices
    ]
    weight_counts = [layers.weight_count(layer_defs, i) for i in indices]
    byte_sizes = [layers.layer_size(layer_defs, i) for i in indices]

    lines = [
        separator,
        _row('Layer Index', [str(i) for i in indices]),
        _row('Layer Type', [d.layer_type.name for d in layer_defs]),
        separator,
        _row('Activation Function', [d.activation.name if d.activation else '' for d in layer_defs]),
        _row('Image Matrix (width x height)', [
            f"{d.node_map.width} x {d.node_map.height}" for d in layer_defs
        ]),
        _row('Feature Maps (depth)', [str(d.node_map.depth) for d in layer_defs]),
        _row('Filter Size', hidden_only([
            f"{d.filter} x {d.filter}" if d.filter else '-' for d in layer_defs
        ])),
        _row('Stride', hidden_only(strides)),
        separator,
        _row('Number of Nodes', [f"{n:,}" for n in node_counts], f"{sum(node_counts):,}"),
        _row('Number of Connections', [f"{n:,}" for n in conn_counts], f"{sum(conn_counts):,}"),
        _row('Number of Weights', [f"{n:,}" for n in weight_counts], f"{sum(weight_counts):,}"),
        _row('Memory (bytes)', [f"{n:,}" for n in byte_sizes],
             f"{layers.network_size(layer_defs):,}"),
        separator,
    ]
    return '\n'.join(lines)


def format_progress(progress: Progress) -> str:
    """One line describing how far a training or testing run has come."""
    return (
        f"{progress.phase.capitalize() + ':':<9} Reading image No. "
        f"{progress.index:>6,} of {progress.total:>6,} images "
        f"[{int(progress.percent):>3d}%]  Result: Correct={progress.correct:>6,}  "
        f"Incorrect={progress.errors:>6,}  Accuracy={progress.accuracy * 100:5.2f}%"
    )


def format_image(pixels: np.ndarray, label: int, classification: int) -> str:
    """
    Render a 28x28 digit as text: ``X`` for inked pixels, ``.`` for blank.

    Args:
        pixels: Raw pixel values, any shape with 784 elements
        label: The correct digit
        classification: The digit the network chose
    """
    image = np.asarray(pixels).reshape(IMAGE_HEIGHT, IMAGE_WIDTH)
    rows = [''.join('X' if value else '.' for value in row) for row in image]
    rows.append(f"     Label:{label}   Classification:{classification}")
    return '\n'.join(rows)
