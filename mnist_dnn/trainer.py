"""
trainer.py
~~~~~~~~~~

Training and testing loops.

A network learns online: every example is fed, propagated forward,
back propagated and classified before the next one is read. Testing runs the
same loop without back propagation.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from mnist_dnn.network import Network

logger = logging.getLogger(__name__)

TRAINING = 'training'
TESTING = 'testing'


@dataclass(frozen=True)
class Progress:
    """Counters reported after each processed example."""

    phase: str
    index: int          # examples processed so far
    total: int
    errors: int

    @property
    def correct(self) -> int:
        return self.index - self.errors

    @property
    def accuracy(self) -> float:
        return 1.0 - self.errors / self.index if self.index else 0.0

    @property
    def percent(self) -> float:
        return 100.0 * self.index / self.total if self.total else 100.0


@dataclass(frozen=True)
class RunResult:
    """Outcome of one pass over a dataset."""

    total: int
    errors: int
    elapsed_time: float = 0.0

    @property
    def correct(self) -> int:
        return self.total - self.errors

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


def _run(
    net: Network,
    data: Sequence[Tuple[np.ndarray, int]],
    phase: str,
    callback: Optional[Callable[[Progress], None]],
    yield_func: Optional[Callable[[], None]]
) -> RunResult:
    start_time = time.time()
    total = len(data)
    errors = 0

    for index, (vector, label) in enumerate(data, start=1):
        net.feed_input(vector)
        net.feed_forward()
        if phase == TRAINING:
            net.back_propagate(label)

        if net.classify() != label:
            errors += 1

        if callback:
            callback(Progress(phase=phase, index=index, total=total, errors=errors))

        # Allow other tasks to run (for web server responsiveness)
        if yield_func:
            yield_func()

    result = RunResult(total=total, errors=errors, elapsed_time=time.time() - start_time)
    logger.info(
        f"{phase.capitalize()} finished: {result.correct}/{total} correct "
        f"({result.accuracy:.2%}) in {result.elapsed_time:.1f}s"
    )
    return result


def train_network(
    net: Network,
    data: Sequence[Tuple[np.ndarray, int]],
    callback: Optional[Callable[[Progress], None]] = None,
    yield_func: Optional[Callable[[], None]] = None
) -> RunResult:
    """
    Train a network for one epoch over ``data``.

    Args:
        net: The network to train (updated in place)
        data: ``(vector, label)`` examples
        callback: Called with a ``Progress`` after every example
        yield_func: Called after every example so cooperative servers can
            interleave other work

    Returns:
        RunResult with the number of misclassified examples. Examples are
        classified AFTER their weight update, so this is a training accuracy.
    """
    return _run(net, data, TRAINING, callback, yield_func)


def test_network(
    net: Network,
    data: Sequence[Tuple[np.ndarray, int]],
    callback: Optional[Callable[[Progress], None]] = None,
    yield_func: Optional[Callable[[], None]] = None
) -> RunResult:
    """Classify every example of ``data`` without changing the network."""
    return _run(net, data, TESTING, callback, yield_func)


def train_epochs(
    net: Network,
    training_data: Sequence[Tuple[np.ndarray, int]],
    epochs: int,
    test_data: Optional[Sequence[Tuple[np.ndarray, int]]] = None,
    epoch_callback: Optional[Callable[[int, RunResult, Optional[RunResult]], None]] = None,
    callback: Optional[Callable[[Progress], None]] = None,
    yield_func: Optional[Callable[[], None]] = None
) -> List[RunResult]:
    """
    Train for several epochs, optionally testing after each one.

    Args:
        epoch_callback: Called as ``epoch_callback(epoch, train_result,
            test_result)`` after every epoch, ``epoch`` counting from 1

    Returns:
        The training results of all epochs
    """
    if epochs < 1:
        raise ValueError(f"epochs must be a positive integer, got {epochs}")

    results = []
    for epoch in range(1, epochs + 1):
        train_result = train_network(net, training_data, callback, yield_func)
        test_result = None
        if test_data:
            test_result = test_network(net, test_data, callback, yield_func)

        logger.info(
            f"Epoch {epoch}/{epochs}: training accuracy {train_result.accuracy:.2%}"
            + (f", test accuracy {test_result.accuracy:.2%}" if test_result else '')
        )
        if epoch_callback:
            epoch_callback(epoch, train_result, test_result)
        results.append(train_result)

    return results


def find_misclassified(
    net: Network,
    data: Sequence[Tuple[np.ndarray, int]],
    limit: int
) -> List[Tuple[np.ndarray, int, int]]:
    """
    Return up to ``limit`` examples the network gets wrong, as
    ``(vector, label, classification)`` in dataset order.
    """
    found = []
    for vector, label in data:
        if len(found) >= limit:
            break
        net.feed_input(vector)
        net.feed_forward()
        classification = net.classify()
        if classification != label:
            found.append((vector, label, classification))
    return found
