#!/usr/bin/env python3
"""
Convert the MNIST IDX files to a single compressed NPZ archive.

Reading the four IDX files (optionally gzip'd) takes noticeably longer than
loading one NPZ archive, so the API server prefers
data/mnist.npz when it exists.

Usage:
    python scripts/convert_mnist_to_npz.py [data_dir]

The script will:
1. Read the training and testing IDX files from the data directory
2. Save them as mnist.npz in the same directory
3. Verify the conversion was successful
"""

import os
import sys
from typing import Dict

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from mnist_dnn import mnist_loader


def read_idx_files(data_dir: str) -> Dict[str, np.ndarray]:
    """
    Read all four MNIST IDX files.

    Parameters:
    -----------
    data_dir : str
        Directory holding the IDX files

    Returns:
    --------
    dict
        Raw uint8 arrays keyed like the NPZ archive
    """
    print(f"📂 Reading MNIST IDX files from: {data_dir}")

    arrays = {
        'train_images': mnist_loader.read_image_file(
            mnist_loader.find_idx_file(data_dir, mnist_loader.TRAINING_IMAGE_FILE)),
        'train_labels': mnist_loader.read_label_file(
            mnist_loader.find_idx_file(data_dir, mnist_loader.TRAINING_LABEL_FILE)),
        'test_images': mnist_loader.read_image_file(
            mnist_loader.find_idx_file(data_dir, mnist_loader.TESTING_IMAGE_FILE)),
        'test_labels': mnist_loader.read_label_file(
            mnist_loader.find_idx_file(data_dir, mnist_loader.TESTING_LABEL_FILE)),
    }

    print("✅ Read successfully:")
    print(f"   - Training: {len(arrays['train_images'])} images")
    print(f"   - Test: {len(arrays['test_images'])} images")
    return arrays


def save_as_npz(arrays: Dict[str, np.ndarray], filepath: str) -> None:
    """Save the raw arrays as a compressed NPZ archive."""
    print(f"\n💾 Writing NPZ archive: {filepath}")
    np.savez_compressed(filepath, **arrays)

    npz_size = os.path.getsize(filepath) / (1024 * 1024)
    print(f"✅ Saved successfully (size: {npz_size:.2f} MB)")


def verify_conversion(npz_filepath: str, arrays: Dict[str, np.ndarray]) -> bool:
    """
    Check that the archive holds exactly the arrays that were read.

    Returns:
    --------
    bool
        True if every array matches
    """
    print("\n🔍 Verifying conversion...")

    with np.load(npz_filepath) as data:
        for key, original in arrays.items():
            if not np.array_equal(data[key], original):
                print(f"❌ {key} does not match!")
                return False

    print("✅ Verification passed! Data is identical.")
    return True


def main():
    print("=" * 60)
    print("MNIST Data Format Converter")
    print("IDX files → NPZ archive")
    print("=" * 60)

    if len(sys.argv) > 1:
        data_dir = sys.argv[1]
    else:
        project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        data_dir = os.path.join(project_root, 'data')

    npz_path = os.path.join(data_dir, mnist_loader.NPZ_FILE)

    if os.path.exists(npz_path):
        response = input(f"\n⚠️  {npz_path} already exists. Overwrite? (y/N): ")
        if response.lower() != 'y':
            print("❌ Conversion cancelled.")
            sys.exit(0)

    try:
        arrays = read_idx_files(data_dir)
        save_as_npz(arrays, npz_path)
        if not verify_conversion(npz_path, arrays):
            sys.exit(1)
    except (FileNotFoundError, mnist_loader.MNISTFormatError) as e:
        print(f"\n❌ Error during conversion: {e}")
        sys.exit(1)

    print("\n" + "=" * 60)
    print("✅ CONVERSION COMPLETE!")
    print("=" * 60)
    print(f"\n📁 New NPZ file: {npz_path}")


if __name__ == '__main__':
    main()
