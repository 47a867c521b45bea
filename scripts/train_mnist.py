#!/usr/bin/env python3
"""
Train and test a network on MNIST from the command line.

Prints the network definition, trains for a number of epochs with live
progress, tests on the test set and prints the total execution time.

Usage:
    python scripts/train_mnist.py [--epochs 2] [--learning-rate 0.005]
                                  [--architecture fc|conv] [--data-dir data]
                                  [--show-errors 5]
"""

import argparse
import logging
import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from mnist_dnn import mnist_loader
from mnist_dnn.display import format_image, format_network_definition, format_progress
from mnist_dnn.errors import NetworkError
from mnist_dnn.layers import ActivationType, LayerDefinition, LayerType, Volume, define_layers
from mnist_dnn.network import create_network
from mnist_dnn.trainer import Progress, find_misclassified, test_network, train_epochs

ARCHITECTURES = {
    'fc': [
        LayerDefinition(LayerType.INPUT, node_map=Volume(width=28, height=28)),
        LayerDefinition(LayerType.FULLY_CONNECTED, ActivationType.SIGMOID, Volume(width=500)),
        LayerDefinition(LayerType.FULLY_CONNECTED, ActivationType.SIGMOID, Volume(width=150)),
        LayerDefinition(LayerType.OUTPUT, ActivationType.SIGMOID, Volume(width=10)),
    ],
    'conv': [
        LayerDefinition(LayerType.INPUT, node_map=Volume(width=28, height=28)),
        LayerDefinition(LayerType.CONVOLUTIONAL, ActivationType.RELU,
                        Volume(width=13, height=13, depth=5), filter=5),
        LayerDefinition(LayerType.CONVOLUTIONAL, ActivationType.RELU,
                        Volume(width=6, height=6, depth=5), filter=3),
        LayerDefinition(LayerType.OUTPUT, ActivationType.RELU, Volume(width=10)),
    ],
}


def show_progress(progress: Progress) -> None:
    if progress.index % 100 == 0 or progress.index == progress.total:
        print('\r' + format_progress(progress), end='', flush=True)


def parse_args():
    parser = argparse.ArgumentParser(description='Train a deep neural network on MNIST')
    parser.add_argument('--epochs', type=int, default=2)
    parser.add_argument('--learning-rate', type=float, default=0.005)
    parser.add_argument('--architecture', choices=sorted(ARCHITECTURES), default='fc')
    parser.add_argument('--data-dir', default='data')
    parser.add_argument('--training-limit', type=int, default=None)
    parser.add_argument('--testing-limit', type=int, default=None)
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--show-errors', type=int, default=0, metavar='N',
                        help='print the first N misclassified test digits')
    return parser.parse_args()


def main():
    args = parse_args()
    if args.epochs < 1:
        print("--epochs must be at least 1", file=sys.stderr)
        sys.exit(1)
    logging.basicConfig(level=logging.WARNING)
    start_time = time.time()

    print("MNIST-DNN: A deep neural network processing the MNIST handwritten digit images\n")

    try:
        layer_defs = define_layers(ARCHITECTURES[args.architecture])
        print(format_network_definition(layer_defs))
        net = create_network(layer_defs, learning_rate=args.learning_rate, seed=args.seed)
    except NetworkError as e:
        print(f"Invalid network definition: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        training_data, test_data = mnist_loader.load_idx_data(
            args.data_dir, args.training_limit, args.testing_limit
        )
    except (FileNotFoundError, mnist_loader.MNISTFormatError) as e:
        print(f"Could not load MNIST data: {e}", file=sys.stderr)
        sys.exit(1)

    print()
    train_epochs(
        net, training_data, args.epochs,
        epoch_callback=lambda *_: print(),
        callback=show_progress,
    )

    test_network(net, test_data, callback=show_progress)

    if args.show_errors > 0:
        print('\n')
        for vector, label, classification in find_misclassified(net, test_data, args.show_errors):
            print(format_image(mnist_loader.vector_to_image(vector), label, classification))
            print()

    print(f"\n\n DONE! Total execution time: {time.time() - start_time:.1f} sec\n")


if __name__ == '__main__':
    main()
