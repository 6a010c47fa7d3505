#recognizer_network.py
"""
The MNIST recognizer: two convolutions and two fully connected layers, compiled twice on the same weights.

    Conv1 (1->32, 5x5, same) -> ReLU -> MaxPool 2x2
    Conv2 (32->64, 5x5, same) -> ReLU -> MaxPool 2x2
    Dense1 (64->1024, 7x7) -> ReLU
    [training only] Dropout (keep 0.5)
    Dense2 (1024->10, 1x1)
    training: softmax cross entropy loss / inference: softmax

The training graph updates the shared weights after every batch. The inference graph is reloaded
before it runs, so interleaved progress predictions always see the latest weights.
"""

import time
import numpy as np
import pandas as pd
import torch
from enum import Enum
from typing import List, Optional
from tqdm import tqdm
# custom modules
from compute_graph import LayerSpec, compile_graph, convolution, dropout, fully_connected, max_pool, relu, softmax, softmax_cross_entropy
from mnist_dataset import MnistDataSet
from network import Network

BATCH_SIZE = 40
NUM_TRAINING_ITERATIONS = 300
DROPOUT_SEED = 42

class TrainingState(Enum):
    IDLE = "idle"
    SAMPLING_BATCH = "sampling batch"
    ENCODING = "encoding"
    AWAITING_DEVICE = "awaiting device"
    REDUCING = "reducing"
    REPORTING_PROGRESS = "reporting progress"


class RecognizerNetwork(Network):
    """
    MNIST classifier with a training graph and an inference graph sharing one set of weights.
    Keyword arguments not listed here go to Network (device, seed, learning_rate, observer, image_scale).
    """

    def __init__(self, batch_size: int = BATCH_SIZE, iterations: int = NUM_TRAINING_ITERATIONS, **kwargs) -> None:
        super(RecognizerNetwork, self).__init__(**kwargs)
        if batch_size <= 0:
            raise ValueError(f"Batch size must be positive, got {batch_size}.")
        if iterations < 0:
            raise ValueError(f"Number of iterations must not be negative, got {iterations}.")
        self.batch_size = batch_size
        self.iterations = iterations
        self.state = TrainingState.IDLE

        self.training_graph = compile_graph(self.layer_specs(training=True), self.registry, training=True, name='training')
        print('\n'.join(f"T{i}: {label}" for i, label in enumerate(self.training_graph.gradient_labels)))
        self.inference_graph = compile_graph(self.layer_specs(training=False), self.registry, training=False, name='inference')

    @property
    def graphs(self):
        return (self.inference_graph, self.training_graph)

    def layer_specs(self, training: bool) -> List[LayerSpec]:
        specs = [
            convolution('Conv1', 1, 32, kernel_size=5),
            relu(),
            max_pool(2, 2),
            convolution('Conv2', 32, 64, kernel_size=5),
            relu(),
            max_pool(2, 2),
            fully_connected('Dense1', 64, 1024, kernel_size=7),
            relu(),
        ]
        if training:
            specs.append(dropout(keep_probability=0.5, seed=DROPOUT_SEED))
        specs.append(fully_connected('Dense2', 1024, 10, kernel_size=1))
        if training:
            specs.append(softmax_cross_entropy(weight=1.0 / self.batch_size, reduction='sum'))
        else:
            specs.append(softmax())
        return specs

    def reduce_loss(self, loss_images: torch.Tensor) -> float:
        """Host side mean: every per-example loss divided by the batch size, then summed."""
        values = loss_images.detach().cpu().numpy().astype(np.float64).reshape(-1)
        return float(np.sum(values / self.batch_size))

    def train_batch(self, dataset: MnistDataSet) -> float:
        """One forward + backward + update pass, submitted as a single command buffer. Returns the batch loss."""
        self.state = TrainingState.SAMPLING_BATCH
        batch = dataset.get_random_batch(self.device, self.batch_size)

        self.state = TrainingState.ENCODING
        command_buffer = self.queue.command_buffer(label='train batch')
        output = self.training_graph.encode_batch(command_buffer, batch.inputs, batch.labels)

        self.state = TrainingState.AWAITING_DEVICE
        command_buffer.commit()
        command_buffer.wait_until_completed()

        self.state = TrainingState.REDUCING
        return self.reduce_loss(output.result().loss_images)

    def predict_batch(self, dataset: MnistDataSet) -> torch.Tensor:
        """Forward pass of one random batch. Shows the first input and its class probabilities."""
        batch = dataset.get_random_batch(self.device, self.batch_size)

        command_buffer = self.queue.command_buffer(label='predict batch')
        outputs = self.inference_graph.encode_batch(command_buffer, batch.inputs)
        command_buffer.commit()
        command_buffer.wait_until_completed()

        probabilities = outputs.result()
        self.show_images(batch.inputs[0], probabilities[0])
        return probabilities

    def train_batches(self, dataset: MnistDataSet, iterations: Optional[int] = None) -> pd.DataFrame:
        iterations = self.iterations if iterations is None else iterations
        self.dump_weights()

        losses = []
        try:
            progress = tqdm(range(iterations), desc=f'Training ({self.batch_size} images each)', unit='batch')
            for i in progress:
                loss = self.train_batch(dataset)
                losses.append(loss)
                progress.set_postfix(loss=f'{loss:.4f}')

                self.state = TrainingState.REPORTING_PROGRESS
                self.observer.loss_reported(i, loss)
                self.inference_graph.reload_from_data_sources()
                self.predict_batch(dataset)
        finally:
            self.state = TrainingState.IDLE

        self.dump_weights()
        return pd.DataFrame({'Iteration': np.arange(len(losses)), 'Loss': np.array(losses, dtype=np.float64)})

    def predict_batches(self, dataset: MnistDataSet, delay: float = 1.0, max_batches: Optional[int] = None) -> int:
        """
        Continuous inference: one batch, then `delay` seconds of sleep, forever.
        max_batches stops it after that many batches. Returns the number of batches run.
        """
        count = 0
        while max_batches is None or count < max_batches:
            self.predict_batch(dataset)
            count += 1
            if delay > 0 and (max_batches is None or count < max_batches):
                time.sleep(delay)
        return count
