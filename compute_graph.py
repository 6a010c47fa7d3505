#compute_graph.py
"""
Layer specifications and the compute graphs compiled from them.

A network is described as a flat sequence of LayerSpec values (a tagged variant: one LayerKind plus its parameters).
compile_graph() turns that sequence into a ComputeGraph bound to a WeightsRegistry:
    - weighted layers are looked up (or lazily created) in the registry by label,
    - a training graph also derives its backward pass: the weighted layers in reverse order,
      each updated through ConvolutionWeights.apply_gradient_update(),
    - an inference graph only runs the forward pass.

The registry stays the owner of all weights. A graph keeps labels plus cached device copies of the weights,
so after any out-of-band mutation (file load, update from another graph) it must be reloaded with
reload_from_data_sources() before it is executed again.
"""

import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

import torch
import torch.nn.functional as F

from command_queue import CommandBuffer, CommandResult
from errors import StaleGraphWarning
from layer_weights import ConvolutionGradientState, WeightsAndBiasesState, WeightsRegistry


class LayerKind(Enum):
    CONVOLUTION = "convolution"
    RELU = "relu"
    MAX_POOL = "max_pool"
    FULLY_CONNECTED = "fully_connected"
    DROPOUT = "dropout"
    SOFTMAX = "softmax"
    SOFTMAX_CROSS_ENTROPY = "softmax_cross_entropy"

WEIGHTED_KINDS = (LayerKind.CONVOLUTION, LayerKind.FULLY_CONNECTED)
TERMINAL_KINDS = (LayerKind.SOFTMAX, LayerKind.SOFTMAX_CROSS_ENTROPY)
PADDINGS = ('same', 'valid')
REDUCTIONS = ('sum', 'mean')


@dataclass(frozen=True)
class LayerSpec:
    kind: LayerKind
    label: Optional[str] = None
    in_channels: int = 0
    out_channels: int = 0
    kernel_size: int = 1
    stride: int = 1
    padding: str = 'same'
    keep_probability: float = 1.0
    seed: int = 0
    loss_weight: float = 1.0
    reduction: str = 'sum'

    @property
    def is_weighted(self) -> bool:
        return self.kind in WEIGHTED_KINDS


def convolution(label: str, in_channels: int, out_channels: int, kernel_size: int = 3, stride: int = 1, padding: str = 'same') -> LayerSpec:
    return LayerSpec(LayerKind.CONVOLUTION, label=label, in_channels=in_channels, out_channels=out_channels,
                     kernel_size=kernel_size, stride=stride, padding=padding)

def fully_connected(label: str, in_channels: int, out_channels: int, kernel_size: int = 1) -> LayerSpec:
    """A convolution whose kernel covers the whole input image, producing a 1x1 output."""
    return LayerSpec(LayerKind.FULLY_CONNECTED, label=label, in_channels=in_channels, out_channels=out_channels,
                     kernel_size=kernel_size, padding='valid')

def relu() -> LayerSpec:
    return LayerSpec(LayerKind.RELU)

def max_pool(size: int = 2, stride: int = 2, padding: str = 'same') -> LayerSpec:
    return LayerSpec(LayerKind.MAX_POOL, kernel_size=size, stride=stride, padding=padding)

def dropout(keep_probability: float = 0.5, seed: int = 42) -> LayerSpec:
    return LayerSpec(LayerKind.DROPOUT, keep_probability=keep_probability, seed=seed)

def softmax() -> LayerSpec:
    return LayerSpec(LayerKind.SOFTMAX)

def softmax_cross_entropy(weight: float = 1.0, reduction: str = 'sum') -> LayerSpec:
    return LayerSpec(LayerKind.SOFTMAX_CROSS_ENTROPY, loss_weight=weight, reduction=reduction)


@dataclass
class TrainingOutput:
    """
    loss_images: per-example weighted loss, shape [B].
    logits: output of the last layer before the loss node, shape [B, classes, 1, 1].
    """
    loss_images: torch.Tensor
    logits: torch.Tensor


class ComputeGraph():
    """
    An immutable sequence of layer nodes bound to the weights of a registry.
    Use compile_graph() to build one.
    """

    def __init__(self, nodes: Sequence[LayerSpec], registry: WeightsRegistry, training: bool, name: str = '') -> None:
        self.nodes = tuple(nodes)
        self.training = training
        self.name = name or ('training' if training else 'inference')
        self._registry = registry
        self.weight_labels = tuple(node.label for node in self.nodes if node.is_weighted)
        # backward pass visits the weighted layers from the loss towards the input
        self.gradient_labels = tuple(reversed(self.weight_labels)) if training else ()
        self._dropout_generators: Dict[int, torch.Generator] = {}
        for i, node in enumerate(self.nodes):
            if node.kind is LayerKind.DROPOUT:
                self._dropout_generators[i] = torch.Generator(device=self.device).manual_seed(node.seed)
        self._cache: Dict[str, WeightsAndBiasesState] = {}
        self.reload_from_data_sources()

    def __repr__(self) -> str:
        kinds = ' -> '.join(node.kind.value for node in self.nodes)
        return f"ComputeGraph({self.name!r}: {kinds})"

    @property
    def device(self) -> torch.device:
        return self._registry.queue.device

    @property
    def terminal(self) -> LayerSpec:
        return self.nodes[-1]

    def _cached_copy(self, state: WeightsAndBiasesState) -> WeightsAndBiasesState:
        def copy(t):
            if t is None:
                return None
            return t.detach().clone().requires_grad_(self.training)
        return WeightsAndBiasesState(weights=copy(state.weights), biases=copy(state.biases), version=state.version)

    def reload_from_data_sources(self) -> None:
        """Re-synchronize every cached weight copy with its parameter store."""
        for label in self.weight_labels:
            self._cache[label] = self._cached_copy(self._registry[label].state())

    @property
    def stale_labels(self) -> List[str]:
        return [label for label in self.weight_labels if self._registry[label].version != self._cache[label].version]

    @property
    def is_stale(self) -> bool:
        return len(self.stale_labels) > 0

    def cached_state(self, label: str) -> WeightsAndBiasesState:
        return self._cache[label]

    def _forward(self, inputs: torch.Tensor) -> torch.Tensor:
        """Runs every node except the terminal one."""
        x = inputs.to(self.device)
        if x.dtype == torch.uint8:
            # 8-bit normalized images
            x = x.float() / 255.0
        for i, node in enumerate(self.nodes[:-1]):
            if node.kind is LayerKind.CONVOLUTION:
                state = self._cache[node.label]
                padding = node.kernel_size // 2 if node.padding == 'same' else 0
                x = F.conv2d(x, state.weights, state.biases, stride=node.stride, padding=padding)
            elif node.kind is LayerKind.FULLY_CONNECTED:
                if tuple(x.shape[-2:]) != (node.kernel_size, node.kernel_size):
                    raise ValueError(f"Fully connected layer '{node.label}' expects {node.kernel_size}x{node.kernel_size} inputs, got {tuple(x.shape[-2:])}.")
                state = self._cache[node.label]
                x = F.conv2d(x, state.weights, state.biases)
            elif node.kind is LayerKind.RELU:
                x = F.relu(x)
            elif node.kind is LayerKind.MAX_POOL:
                x = F.max_pool2d(x, kernel_size=node.kernel_size, stride=node.stride, ceil_mode=node.padding == 'same')
            elif node.kind is LayerKind.DROPOUT:
                mask = torch.rand(x.shape, generator=self._dropout_generators[i], device=self.device) < node.keep_probability
                x = x * mask / node.keep_probability
        return x

    def _loss_images(self, logits: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
        node = self.terminal
        log_probs = F.log_softmax(logits.flatten(1), dim=1)
        num_classes = log_probs.shape[1]
        # label vectors may be wider than the number of classes, the extra entries are unused
        targets = labels.to(self.device, dtype=torch.float32).flatten(1)[:, :num_classes]
        cross_entropy = -(targets * log_probs)
        cross_entropy = cross_entropy.sum(dim=1) if node.reduction == 'sum' else cross_entropy.mean(dim=1)
        return node.loss_weight * cross_entropy

    def _run_training(self, command_buffer: CommandBuffer, inputs: torch.Tensor, labels: torch.Tensor) -> TrainingOutput:
        with torch.enable_grad():
            logits = self._forward(inputs)
            loss_images = self._loss_images(logits, labels)
            loss_images.sum().backward()

        for label in self.gradient_labels:
            source_state = self._cache[label]
            gradients = ConvolutionGradientState(
                weights=source_state.weights.grad,
                biases=source_state.biases.grad if source_state.biases is not None else None,
            )
            new_state = self._registry[label].apply_gradient_update(command_buffer, gradients, source_state)
            self._cache[label] = self._cached_copy(new_state)

        return TrainingOutput(loss_images=loss_images.detach(), logits=logits.detach())

    @torch.no_grad()
    def _run_inference(self, inputs: torch.Tensor) -> torch.Tensor:
        return F.softmax(self._forward(inputs), dim=1)

    def encode_batch(self, command_buffer: CommandBuffer, inputs: torch.Tensor, labels: Optional[torch.Tensor] = None) -> CommandResult:
        """
        Encodes one pass over a batch into the command buffer.
        Training graphs need labels and return a TrainingOutput; inference graphs return softmax probabilities [B, classes, 1, 1].
        """
        if command_buffer.queue is not self._registry.queue:
            raise ValueError(f"Graph '{self.name}' runs on {self._registry.queue}, got a buffer of {command_buffer.queue}.")
        if self.is_stale:
            warnings.warn(f"Graph '{self.name}' is executed with stale weights for {self.stale_labels}. Call reload_from_data_sources() first.", StaleGraphWarning)
        if self.training:
            if labels is None:
                raise ValueError(f"Training graph '{self.name}' needs labels.")
            return command_buffer.encode(self._run_training, command_buffer, inputs, labels)
        return command_buffer.encode(self._run_inference, inputs)


def _validate(specs: Sequence[LayerSpec], training: bool) -> None:
    if len(specs) == 0:
        raise ValueError("A graph needs at least one node.")
    expected_terminal = LayerKind.SOFTMAX_CROSS_ENTROPY if training else LayerKind.SOFTMAX
    if specs[-1].kind is not expected_terminal:
        raise ValueError(f"A {'training' if training else 'inference'} graph must end with {expected_terminal.value}, got {specs[-1].kind.value}.")

    previous_out = None
    labels = set()
    for spec in specs[:-1]:
        if spec.kind in TERMINAL_KINDS:
            raise ValueError(f"{spec.kind.value} can only be the last node.")
        if spec.kind is LayerKind.DROPOUT:
            if not training:
                raise ValueError("Dropout is only allowed in training graphs.")
            if not 0.0 < spec.keep_probability <= 1.0:
                raise ValueError(f"Keep probability must be in (0, 1], got {spec.keep_probability}.")
        if spec.padding not in PADDINGS:
            raise ValueError(f"Unknown padding '{spec.padding}', expected one of {PADDINGS}.")
        if spec.is_weighted:
            if not spec.label:
                raise ValueError(f"Weighted layer {spec} needs a label.")
            if spec.label in labels:
                raise ValueError(f"Label '{spec.label}' is used twice in the same graph.")
            labels.add(spec.label)
            if previous_out is not None and spec.in_channels != previous_out:
                raise ValueError(f"Layer '{spec.label}' expects {spec.in_channels} input channels, previous layer produces {previous_out}.")
            previous_out = spec.out_channels
    if training and specs[-1].reduction not in REDUCTIONS:
        raise ValueError(f"Unknown reduction '{specs[-1].reduction}', expected one of {REDUCTIONS}.")


def compile_graph(specs: Sequence[LayerSpec], registry: WeightsRegistry, training: bool, name: str = '') -> ComputeGraph:
    """
    Validates the layer sequence, creates missing weights in the registry and returns the graph.
    Weights already in the registry are shared, which is how a training and an inference graph see the same parameters.
    """
    specs = tuple(specs)
    _validate(specs, training)
    for spec in specs:
        if spec.is_weighted:
            registry.get_or_create(spec.label, spec.in_channels, spec.out_channels, kernel_size=spec.kernel_size, stride=spec.stride)
    return ComputeGraph(specs, registry, training, name=name)
