"""
mnist_loader.py
~~~~~~~~~~~~~~~

Loading of the MNIST handwritten digit dataset.

Two sources are supported:

- The original IDX files (``train-images-idx3-ubyte`` and friends), plain or
  gzip-compressed, as published by Yann LeCun.
- A compressed ``mnist.npz`` archive produced by
  ``scripts/convert_mnist_to_npz.py``, which loads much faster.

Every example is returned as a ``(vector, label)`` tuple, where ``vector`` is
a flat float64 array of 784 values in roughly [-1, 1) and ``label`` is the
digit as an int.
"""

import gzip
import logging
import os
from typing import List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

IMAGE_FILE_MAGIC = 2051
LABEL_FILE_MAGIC = 2049

IMAGE_WIDTH = 28
IMAGE_HEIGHT = 28

TRAINING_IMAGE_FILE = 'train-images-idx3-ubyte'
TRAINING_LABEL_FILE = 'train-labels-idx1-ubyte'
TESTING_IMAGE_FILE = 't10k-images-idx3-ubyte'
TESTING_LABEL_FILE = 't10k-labels-idx1-ubyte'
NPZ_FILE = 'mnist.npz'

Example = Tuple[np.ndarray, int]


class MNISTFormatError(ValueError):
    """Raised when a file is not a valid MNIST IDX file."""


def _open(path: str):
    if path.endswith('.gz'):
        return gzip.open(path, 'rb')
    return open(path, 'rb')


def _read_idx(path: str, magic: int, header_fields: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read an IDX file.

    Returns:
        (header, payload): the big-endian header fields after the magic
        number and the raw unsigned bytes that follow them
    """
    with _open(path) as f:
        raw = f.read()

    header_size = 4 * (1 + header_fields)
    if len(raw) < header_size:
        raise MNISTFormatError(f"{path}: file too short for an IDX header")

    header = np.frombuffer(raw[:header_size], dtype='>u4')
    if int(header[0]) != magic:
        raise MNISTFormatError(
            f"{path}: bad magic number {int(header[0])}, expected {magic}"
        )

    payload = np.frombuffer(raw[header_size:], dtype=np.uint8)
    return header[1:], payload


def read_image_file(path: str, limit: Optional[int] = None) -> np.ndarray:
    """
    Read an IDX image file.

    Args:
        path: Path to the file (``.gz`` files are decompressed)
        limit: Read at most this many images

    Returns:
        uint8 array of shape (count, rows * columns)

    Raises:
        MNISTFormatError: If the magic number is wrong or data is missing
    """
    header, payload = _read_idx(path, IMAGE_FILE_MAGIC, 3)
    count, rows, columns = (int(v) for v in header)
    if limit is not None:
        count = min(count, limit)

    image_size = rows * columns
    if payload.size < count * image_size:
        raise MNISTFormatError(
            f"{path}: expected {count} images of {image_size} bytes, "
            f"found {payload.size} bytes"
        )

    logger.debug(f"Read {count} images of {rows}x{columns} from {path}")
    return payload[:count * image_size].reshape(count, image_size)


def read_label_file(path: str, limit: Optional[int] = None) -> np.ndarray:
    """Read an IDX label file into a uint8 array of shape (count,)."""
    header, payload = _read_idx(path, LABEL_FILE_MAGIC, 1)
    count = int(header[0])
    if limit is not None:
        count = min(count, limit)

    if payload.size < count:
        raise MNISTFormatError(
            f"{path}: expected {count} labels, found {payload.size}"
        )

    logger.debug(f"Read {count} labels from {path}")
    return payload[:count]


def image_to_vector(pixels: np.ndarray) -> np.ndarray:
    """Scale raw pixels (0-255) to the network's input range."""
    return (np.asarray(pixels, dtype=np.float64).ravel() - 127.0) / 128.0


def vector_to_image(vector: np.ndarray) -> np.ndarray:
    """Recover raw 28x28 pixels from a vector made by image_to_vector."""
    pixels = np.rint(np.asarray(vector, dtype=np.float64) * 128.0 + 127.0)
    return np.clip(pixels, 0, 255).astype(np.uint8).reshape(28, 28)


def _examples(images: np.ndarray, labels: np.ndarray) -> List[Example]:
    if len(images) != len(labels):
        raise MNISTFormatError(
            f"Found {len(images)} images but {len(labels)} labels"
        )
    return [
        (image_to_vector(image), int(label))
        for image, label in zip(images, labels)
    ]


def find_idx_file(data_dir: str, name: str) -> str:
    """Path of an IDX file, preferring the uncompressed version."""
    path = os.path.join(data_dir, name)
    if os.path.exists(path):
        return path
    if os.path.exists(path + '.gz'):
        return path + '.gz'
    raise FileNotFoundError(f"MNIST file not found: {path}[.gz]")


def load_idx_data(
    data_dir: str = 'data',
    training_limit: Optional[int] = None,
    testing_limit: Optional[int] = None
) -> Tuple[List[Example], List[Example]]:
    """
    Load the training and testing sets from IDX files.

    Returns:
        (training_data, test_data)
    """
    training_data = _examples(
        read_image_file(find_idx_file(data_dir, TRAINING_IMAGE_FILE), training_limit),
        read_label_file(find_idx_file(data_dir, TRAINING_LABEL_FILE), training_limit),
    )
    test_data = _examples(
        read_image_file(find_idx_file(data_dir, TESTING_IMAGE_FILE), testing_limit),
        read_label_file(find_idx_file(data_dir, TESTING_LABEL_FILE), testing_limit),
    )
    return training_data, test_data


def load_npz(path: str) -> Tuple[List[Example], List[Example]]:
    """
    Load an archive written by ``scripts/convert_mnist_to_npz.py``.

    Returns:
        (training_data, test_data)
    """
    with np.load(path) as data:
        training_data = _examples(data['train_images'], data['train_labels'])
        test_data = _examples(data['test_images'], data['test_labels'])
    return training_data, test_data


def load_data_wrapper(
    data_dir: str = 'data',
    validation_size: int = 0
) -> Tuple[List[Example], List[Example], List[Example]]:
    """
    Load MNIST from ``data_dir``, using ``mnist.npz`` when present and the
    IDX files otherwise.

    Args:
        data_dir: Directory holding the dataset
        validation_size: Number of examples split off the END of the
            training set as validation data

    Returns:
        (training_data, validation_data, test_data)
    """
    npz_path = os.path.join(data_dir, NPZ_FILE)
    if os.path.exists(npz_path):
        training_data, test_data = load_npz(npz_path)
    else:
        training_data, test_data = load_idx_data(data_dir)

    if validation_size < 0 or validation_size > len(training_data):
        raise ValueError(
            f"validation_size must be between 0 and {len(training_data)}, "
            f"got {validation_size}"
        )

    split = len(training_data) - validation_size
    return training_data[:split], training_data[split:], test_data
