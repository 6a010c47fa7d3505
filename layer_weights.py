#layer_weights.py
"""
Per-layer parameter stores.
ConvolutionWeights owns the kernel and bias OptimizerVectors of one layer. Fully connected layers are convolutions
whose kernel covers the whole input, so they use the same class.
WeightsRegistry is the single owner of every ConvolutionWeights of a network. Compute graphs only keep labels into it.
"""

import uuid
import torch
import numpy as np
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

from command_queue import CommandBuffer, CommandQueue
from errors import OptimizerStepError
from optimizer_vectors import OptimizerVectors, VectorSnapshot

WEIGHT_INIT_RANGE = 0.2
BIAS_INIT_VALUE = 0.1

@dataclass(frozen=True)
class ConvolutionDescriptor:
    kernel_size: int
    in_channels: int
    out_channels: int
    stride: int = 1

    @property
    def weight_shape(self) -> tuple:
        # torch conv2d layout: [out, in, kH, kW]
        return (self.out_channels, self.in_channels, self.kernel_size, self.kernel_size)

    @property
    def weight_length(self) -> int:
        return self.in_channels * self.kernel_size * self.kernel_size * self.out_channels


@dataclass
class WeightsAndBiasesState:
    """Kernel and bias tensors of a layer, tagged with the store version they were taken from."""
    weights: torch.Tensor
    biases: Optional[torch.Tensor]
    version: int


@dataclass
class ConvolutionGradientState:
    """Gradients of a layer's kernel and bias, shaped like the tensors of WeightsAndBiasesState."""
    weights: torch.Tensor
    biases: Optional[torch.Tensor] = None


@dataclass
class LayerRecord:
    """Host snapshot of one layer, the unit the persistence codec reads and writes."""
    weights: Optional[VectorSnapshot]
    biases: Optional[VectorSnapshot] = None


class ConvolutionWeights():
    """
    Kernel and bias parameter groups of one convolution or fully connected layer.

    Attributes:
        label (str): Unique name of the layer in its network, also the key in the weights file.
        descriptor (ConvolutionDescriptor): Kernel size, channel counts and stride.
        weight_vectors (OptimizerVectors): Kernel value/momentum/velocity, uniform in [-0.2, 0.2] at start.
        bias_vectors (OptimizerVectors): Bias value/momentum/velocity, 0.1 at start. None if the layer has no bias.
        version (int): Bumped on every in-place mutation, lets graphs detect that their cached copy is stale.

    The same arguments always give the same initial weights. Without a label a random one is generated,
    which makes the layer impossible to find again in a saved file.
    """

    def __init__(
        self,
        queue: CommandQueue,
        in_channels: int,
        out_channels: int,
        kernel_size: int = 3,
        stride: int = 1,
        bias: bool = True,
        label: Optional[str] = None,
        seed: int = 0,
        learning_rate: float = 1e-3,
    ) -> None:
        if min(in_channels, out_channels, kernel_size, stride) <= 0:
            raise ValueError(f"Channels, kernel size and stride must be positive, got {(in_channels, out_channels, kernel_size, stride)}.")
        self.queue = queue
        self.label = label if label else str(uuid.uuid4())
        self.descriptor = ConvolutionDescriptor(kernel_size, in_channels, out_channels, stride)
        self.seed = seed
        self.version = 0

        device = queue.device
        self.weight_vectors = OptimizerVectors(self.descriptor.weight_length, device, 0.0, name=f"{self.label}.Weights", learning_rate=learning_rate)
        self.bias_vectors = OptimizerVectors(out_channels, device, BIAS_INIT_VALUE, name=f"{self.label}.Biases", learning_rate=learning_rate) if bias else None

        # run on its own buffer so as not to bother others
        queue.run(self.weight_vectors.fill_uniform, -WEIGHT_INIT_RANGE, WEIGHT_INIT_RANGE, seed, label=f"Randomize {self.label}")

    def __repr__(self) -> str:
        d = self.descriptor
        return f"ConvolutionWeights({self.label!r}, {d.in_channels}->{d.out_channels}, k={d.kernel_size}, stride={d.stride})"

    @property
    def name(self) -> str:
        return self.label

    @property
    def has_bias(self) -> bool:
        return self.bias_vectors is not None

    def state(self) -> WeightsAndBiasesState:
        """Views into the stores, shaped for conv2d. They share storage with the parameter buffers."""
        return WeightsAndBiasesState(
            weights=self.weight_vectors.value.data.view(self.descriptor.weight_shape),
            biases=self.bias_vectors.value.data if self.has_bias else None,
            version=self.version,
        )

    def apply_gradient_update(self, command_buffer: CommandBuffer, gradient_state: ConvolutionGradientState, source_state: WeightsAndBiasesState) -> WeightsAndBiasesState:
        """
        One Adam step on kernel and bias. Must be called exactly once per backward pass, from a buffer of our queue.
        source_state is the state the forward pass ran with; if it is not the current version an update was missed
        or applied twice.
        """
        if command_buffer.queue is not self.queue:
            raise ValueError(f"Weights '{self.label}' belong to {self.queue}, cannot update from {command_buffer.queue}.")
        if source_state.version != self.version:
            raise OptimizerStepError(
                f"Gradient for '{self.label}' was computed from version {source_state.version}, store is at version {self.version}.")

        # reject the whole update before the kernel moves
        if self.has_bias:
            if gradient_state.biases is None:
                raise ValueError(f"Missing bias gradient for '{self.label}'.")
            if gradient_state.biases.numel() != len(self.bias_vectors):
                raise ValueError(f"Bias gradient length mismatch in '{self.label}': {gradient_state.biases.numel()} vs {len(self.bias_vectors)}.")

        self.weight_vectors.update(gradient_state.weights)
        if self.has_bias:
            self.bias_vectors.update(gradient_state.biases)

        self.version += 1
        return self.state()

    @property
    def update_count(self) -> int:
        return self.weight_vectors.update_count

    def weights_are_valid(self) -> bool:
        return self.weight_vectors.is_valid() and (not self.has_bias or self.bias_vectors.is_valid())

    def get_weights(self) -> Dict[str, np.ndarray]:
        weights = {f"{self.label}.Weights.Value": self.weight_vectors.value.to_numpy()}
        if self.has_bias:
            weights[f"{self.label}.Biases.Value"] = self.bias_vectors.value.to_numpy()
        return weights

    def export_data(self, include_optimizer_state: bool = False) -> LayerRecord:
        return LayerRecord(
            weights=self.weight_vectors.export_data(include_optimizer_state),
            biases=self.bias_vectors.export_data(include_optimizer_state) if self.has_bias else None,
        )

    def import_data(self, record: Optional[LayerRecord]) -> None:
        """Per-buffer import, mismatches are skipped. Graphs using this layer must be reloaded afterwards."""
        if record is None:
            return
        self.weight_vectors.import_data(record.weights)
        if self.has_bias:
            self.bias_vectors.import_data(record.biases)
        self.version += 1


class WeightsRegistry():
    """
    Owns the ConvolutionWeights of one network, keyed by label, in creation order.
    The first request for a label creates the layer with seed `seed + ordinal`, later requests return the same instance.
    """

    def __init__(self, queue: CommandQueue, seed: int = 42, learning_rate: float = 1e-3) -> None:
        self.queue = queue
        self.seed = seed
        self.learning_rate = learning_rate
        self._weights: Dict[str, ConvolutionWeights] = {}

    def get_or_create(self, label: str, in_channels: int, out_channels: int, kernel_size: int = 3, stride: int = 1, bias: bool = True) -> ConvolutionWeights:
        existing = self._weights.get(label)
        if existing is not None:
            wanted = ConvolutionDescriptor(kernel_size, in_channels, out_channels, stride)
            if existing.descriptor != wanted or existing.has_bias != bias:
                raise ValueError(f"Layer '{label}' already exists as {existing.descriptor}, requested {wanted} (bias={bias}).")
            return existing

        print(f"Create weights {label}")
        weights = ConvolutionWeights(
            self.queue, in_channels, out_channels,
            kernel_size=kernel_size, stride=stride, bias=bias,
            label=label, seed=self.seed + len(self._weights),
            learning_rate=self.learning_rate,
        )
        self._weights[weights.label] = weights
        return weights

    def __getitem__(self, label: str) -> ConvolutionWeights:
        return self._weights[label]

    def __contains__(self, label: str) -> bool:
        return label in self._weights

    def __len__(self) -> int:
        return len(self._weights)

    def __iter__(self) -> Iterator[str]:
        return iter(self._weights)

    def items(self):
        return self._weights.items()

    def values(self):
        return self._weights.values()

    def weights_are_valid(self) -> bool:
        return all(w.weights_are_valid() for w in self._weights.values())
