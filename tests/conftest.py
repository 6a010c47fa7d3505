import pytest
import numpy as np
import torch
from command_queue import CommandQueue, default_device
from mnist_dataset import MnistDataSet

def make_dataset(num_images: int = 16, seed: int = 42) -> MnistDataSet:
    """A small fake MNIST: random pixels, labels cycling through 0..9."""
    rng = np.random.default_rng(0)
    images = rng.integers(0, 256, size=(num_images, 28, 28), dtype=np.uint8)
    labels = np.arange(num_images) % 10
    return MnistDataSet.from_arrays(images, labels, seed=seed)

@pytest.fixture
def device():
    return default_device()

@pytest.fixture
def queue(device):
    return CommandQueue(device)

@pytest.fixture
def tiny_dataset():
    return make_dataset()
