# test_compute_graph.py
import warnings
import pytest
import numpy as np
import torch
from command_queue import CommandQueue
from compute_graph import (LayerKind, compile_graph, convolution, dropout, fully_connected, max_pool, relu,
                           softmax, softmax_cross_entropy)
from errors import StaleGraphWarning
from layer_weights import WeightsRegistry

BATCH = 4

def small_specs(training, keep_probability=0.5):
    specs = [
        convolution('C1', 1, 2, kernel_size=3),
        relu(),
        max_pool(2, 2),
        fully_connected('F1', 2, 3, kernel_size=14),
    ]
    if training:
        specs.insert(3, dropout(keep_probability, seed=42))
        specs.append(softmax_cross_entropy(weight=1.0 / BATCH))
    else:
        specs.append(softmax())
    return specs

def make_batch(device, seed=0):
    g = torch.Generator().manual_seed(seed)
    inputs = torch.randint(0, 256, (BATCH, 1, 28, 28), generator=g, dtype=torch.uint8)
    labels = torch.zeros(BATCH, 12)
    labels[torch.arange(BATCH), torch.arange(BATCH) % 3] = 1.0
    return inputs.to(device), labels.to(device)

def run(queue, graph, inputs, labels=None):
    buffer = queue.command_buffer()
    handle = graph.encode_batch(buffer, inputs, labels)
    buffer.commit()
    buffer.wait_until_completed()
    return handle.result()

@pytest.fixture
def registry(queue):
    return WeightsRegistry(queue, seed=42)

@pytest.mark.parametrize("specs, training", [
    ([], True),
    ([relu(), softmax()], True),                                            # wrong terminal for training
    ([relu(), softmax_cross_entropy()], False),                             # wrong terminal for inference
    ([softmax(), relu(), softmax_cross_entropy()], True),                   # terminal node in the middle
    ([dropout(0.5), softmax()], False),                                     # dropout in inference
    ([dropout(0.0), softmax_cross_entropy()], True),                        # keep probability out of range
    ([dropout(1.5), softmax_cross_entropy()], True),
    ([convolution('C', 1, 2, padding='full'), softmax()], False),           # unknown padding
    ([convolution('', 1, 2), softmax()], False),                            # missing label
    ([convolution('C', 1, 2), convolution('C', 2, 2), softmax()], False),   # label used twice
    ([convolution('A', 1, 2), convolution('B', 3, 4), softmax()], False),   # channel mismatch
    ([relu(), softmax_cross_entropy(reduction='max')], True),
])
def test_invalid_graphs_are_rejected(registry, specs, training):
    with pytest.raises(ValueError):
        compile_graph(specs, registry, training=training)
    assert len(registry) == 0, "A rejected graph must not create weights."

def test_compile_creates_and_shares_weights(registry):
    training = compile_graph(small_specs(True), registry, training=True)
    assert list(registry) == ['C1', 'F1']
    inference = compile_graph(small_specs(False), registry, training=False)
    assert len(registry) == 2, "The inference graph should reuse the training weights."

    assert training.weight_labels == ('C1', 'F1')
    assert training.gradient_labels == ('F1', 'C1'), "Backward pass should visit layers from the loss towards the input."
    assert inference.gradient_labels == ()
    assert training.terminal.kind is LayerKind.SOFTMAX_CROSS_ENTROPY
    for label in registry:
        assert torch.equal(training.cached_state(label).weights.detach(), inference.cached_state(label).weights)

def test_inference_output_is_a_distribution(queue, registry):
    graph = compile_graph(small_specs(False), registry, training=False)
    inputs, _ = make_batch(queue.device)
    probabilities = run(queue, graph, inputs)
    assert probabilities.shape == (BATCH, 3, 1, 1)
    assert torch.allclose(probabilities.sum(dim=1).cpu(), torch.ones(BATCH, 1, 1), atol=1e-5)

def test_training_updates_registry_and_leaves_inference_stale(queue, registry):
    training = compile_graph(small_specs(True), registry, training=True)
    inference = compile_graph(small_specs(False), registry, training=False)
    before = registry['C1'].weight_vectors.value.to_numpy()
    inputs, labels = make_batch(queue.device)

    output = run(queue, training, inputs, labels)

    assert output.loss_images.shape == (BATCH,)
    assert output.logits.shape == (BATCH, 3, 1, 1)
    assert torch.all(output.loss_images > 0)
    assert not np.array_equal(registry['C1'].weight_vectors.value.to_numpy(), before), "Training did not update the weights."
    assert registry['C1'].update_count == registry['F1'].update_count == 1
    assert not training.is_stale, "The training graph caches its own updates."
    assert inference.is_stale
    assert inference.stale_labels == ['C1', 'F1']

    with pytest.warns(StaleGraphWarning):
        run(queue, inference, inputs)

    inference.reload_from_data_sources()
    assert not inference.is_stale
    with warnings.catch_warnings():
        warnings.simplefilter('error')
        run(queue, inference, inputs)

def test_weighted_loss_uses_reduction(queue, registry):
    summed = compile_graph(small_specs(True, keep_probability=1.0), registry, training=True)
    other = WeightsRegistry(queue, seed=42)
    specs = small_specs(True, keep_probability=1.0)
    specs[-1] = softmax_cross_entropy(weight=1.0 / BATCH, reduction='mean')
    averaged = compile_graph(specs, other, training=True)
    inputs, labels = make_batch(queue.device)

    sum_loss = run(queue, summed, inputs, labels).loss_images
    mean_loss = run(queue, averaged, inputs, labels).loss_images
    # one-hot labels: the sum over 3 classes is 3 times their mean
    assert torch.allclose(sum_loss, 3 * mean_loss, rtol=1e-5)

def test_training_is_reproducible(device):
    losses = []
    weights = []
    for _ in range(2):
        queue = CommandQueue(device)
        registry = WeightsRegistry(queue, seed=42)
        graph = compile_graph(small_specs(True), registry, training=True)
        for step in range(3):
            inputs, labels = make_batch(device, seed=step)
            losses.append(run(queue, graph, inputs, labels).loss_images.cpu())
        weights.append(registry['F1'].weight_vectors.value.to_numpy())
    assert all(torch.allclose(a, b) for a, b in zip(losses[:3], losses[3:]))
    assert np.allclose(weights[0], weights[1])

def test_training_needs_labels(queue, registry):
    graph = compile_graph(small_specs(True), registry, training=True)
    inputs, _ = make_batch(queue.device)
    with pytest.raises(ValueError):
        graph.encode_batch(queue.command_buffer(), inputs)

def test_foreign_command_buffer(queue, registry):
    graph = compile_graph(small_specs(False), registry, training=False)
    other = CommandQueue(queue.device)
    inputs, _ = make_batch(queue.device)
    with pytest.raises(ValueError):
        graph.encode_batch(other.command_buffer(), inputs)

def test_fully_connected_checks_input_size(queue, registry):
    graph = compile_graph(small_specs(False), registry, training=False)
    inputs = torch.zeros(BATCH, 1, 20, 20, dtype=torch.uint8, device=queue.device)
    with pytest.raises(ValueError, match="F1"):
        run(queue, graph, inputs)

def test_same_padding_keeps_odd_sizes(queue, registry):
    specs = [convolution('C', 1, 1, kernel_size=5), max_pool(2, 2), fully_connected('F', 1, 2, kernel_size=4), softmax()]
    graph = compile_graph(specs, registry, training=False)
    # 7x7 -> conv 7x7 -> pool 4x4 with ceil, matching the 4x4 dense kernel
    probabilities = run(queue, graph, torch.zeros(2, 1, 7, 7, device=queue.device))
    assert probabilities.shape == (2, 2, 1, 1)
