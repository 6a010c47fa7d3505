#mnist_dataset.py
"""
MNIST as two raw IDX byte buffers, sampled into random batches.
Images: 16 byte prefix followed by 28x28 uint8 images. Labels: 8 byte prefix followed by one byte per image.
"""

import gzip
import os
import torch
import numpy as np
from dataclasses import dataclass
from typing import Union

from errors import DatasetError

IMAGE_SIZE = 28
IMAGES_PREFIX_SIZE = 16
LABELS_PREFIX_SIZE = 8
LABEL_WIDTH = 12 # only the first 10 entries are used

IMAGES_MAGIC = 0x00000803
LABELS_MAGIC = 0x00000801

@dataclass
class Batch:
    """
    inputs: uint8 images [B, 1, 28, 28] on the device.
    labels: float32 one-hot vectors [B, 12] on the device.
    """
    inputs: torch.Tensor
    labels: torch.Tensor

    def __len__(self) -> int:
        return self.inputs.shape[0]


class MnistDataSet():
    """
    Random batches from fixed-layout MNIST buffers.
    Sampling is uniform with replacement, from a numpy generator seeded at construction.
    """

    def __init__(self, images: bytes, labels: bytes, seed: int = 42) -> None:
        if len(labels) < LABELS_PREFIX_SIZE or len(images) < IMAGES_PREFIX_SIZE:
            raise DatasetError(f"Buffers are shorter than their prefixes: {len(images)} image bytes, {len(labels)} label bytes.")
        self.num_images = len(labels) - LABELS_PREFIX_SIZE
        expected = IMAGES_PREFIX_SIZE + self.num_images * IMAGE_SIZE * IMAGE_SIZE
        if len(images) < expected:
            raise DatasetError(f"Image buffer holds {len(images)} bytes, {self.num_images} labels need {expected}.")
        if self.num_images == 0:
            raise DatasetError("The dataset contains no images.")

        self.images = np.frombuffer(images, dtype=np.uint8, count=self.num_images * IMAGE_SIZE * IMAGE_SIZE, offset=IMAGES_PREFIX_SIZE)
        self.images = self.images.reshape(self.num_images, 1, IMAGE_SIZE, IMAGE_SIZE)
        self.labels = np.frombuffer(labels, dtype=np.uint8, offset=LABELS_PREFIX_SIZE)
        if self.labels.max() >= LABEL_WIDTH:
            raise DatasetError(f"Label {self.labels.max()} does not fit in a one-hot vector of width {LABEL_WIDTH}.")
        self.seed = seed
        self.rng = np.random.default_rng(seed)

    def __len__(self) -> int:
        return self.num_images

    def __repr__(self) -> str:
        return f"MnistDataSet({self.num_images} images, seed={self.seed})"

    @classmethod
    def from_gzip_files(cls, images_path: str, labels_path: str, seed: int = 42) -> 'MnistDataSet':
        return cls(_read_gzip(images_path), _read_gzip(labels_path), seed=seed)

    @classmethod
    def from_arrays(cls, images: np.ndarray, labels: np.ndarray, seed: int = 42) -> 'MnistDataSet':
        """Packs [N, 28, 28] uint8 images and [N] labels into the IDX byte layout."""
        images = np.ascontiguousarray(images, dtype=np.uint8)
        labels = np.ascontiguousarray(labels, dtype=np.uint8)
        if images.ndim != 3 or images.shape[1:] != (IMAGE_SIZE, IMAGE_SIZE):
            raise DatasetError(f"Expected images of shape [N, {IMAGE_SIZE}, {IMAGE_SIZE}], got {images.shape}.")
        if len(images) != len(labels):
            raise DatasetError(f"{len(images)} images but {len(labels)} labels.")
        n = len(labels)
        images_prefix = np.array([IMAGES_MAGIC, n, IMAGE_SIZE, IMAGE_SIZE], dtype='>u4').tobytes()
        labels_prefix = np.array([LABELS_MAGIC, n], dtype='>u4').tobytes()
        return cls(images_prefix + images.tobytes(), labels_prefix + labels.tobytes(), seed=seed)

    @classmethod
    def download(cls, root: str = './data', train: bool = True, seed: int = 42) -> 'MnistDataSet':
        """Fetches MNIST with torchvision and re-packs it into the raw buffer layout."""
        from torchvision.datasets import MNIST
        mnist = MNIST(root=root, train=train, download=True)
        return cls.from_arrays(mnist.data.numpy(), mnist.targets.numpy(), seed=seed)

    def get_random_batch(self, device: Union[str, torch.device], batch_size: int) -> Batch:
        if batch_size <= 0:
            raise ValueError(f"Batch size must be positive, got {batch_size}.")
        indices = self.rng.integers(self.num_images, size=batch_size)

        inputs = torch.from_numpy(self.images[indices].copy())
        labels = torch.zeros(batch_size, LABEL_WIDTH, dtype=torch.float32)
        labels[torch.arange(batch_size), torch.from_numpy(self.labels[indices].astype(np.int64))] = 1.0

        return Batch(inputs=inputs.to(device), labels=labels.to(device))


def _read_gzip(path: str) -> bytes:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Dataset file not found: {path}")
    with gzip.open(path, 'rb') as f:
        return f.read()
