# test_optimizer_vectors.py
import math
import pytest
import numpy as np
import torch
from device_vector import DeviceVector
from errors import OptimizerStepError
from optimizer_vectors import AdamUpdater, OptimizerVectors, VectorSnapshot

@pytest.fixture
def group(device):
    g = OptimizerVectors(16, device, name='test')
    g.fill_uniform(-0.2, 0.2, seed=7)
    return g

def test_initialization(device):
    g = OptimizerVectors(8, device, initial_value=0.1, name='bias')
    assert len(g) == 8
    assert np.allclose(g.value.to_numpy(), 0.1)
    assert np.all(g.momentum.to_numpy() == 0), "Momentum should start at zero."
    assert np.all(g.velocity.to_numpy() == 0), "Velocity should start at zero."
    assert g.update_count == 0
    assert g.is_valid()

def test_uniform_fill_is_reproducible_and_bounded(device):
    a = DeviceVector(1000, device).fill_uniform(-0.2, 0.2, seed=3)
    b = DeviceVector(1000, device).fill_uniform(-0.2, 0.2, seed=3)
    c = DeviceVector(1000, device).fill_uniform(-0.2, 0.2, seed=4)
    assert a.equal(b), "Same seed should give the same values."
    assert not a.equal(c), "Different seeds should give different values."
    values = a.to_numpy()
    assert values.min() >= -0.2 and values.max() <= 0.2

def test_update_count_tracks_steps(group, device):
    for k in range(1, 6):
        group.update(torch.randn(16, device=device))
        assert group.update_count == k
        assert group.updater.time_step == k

def test_desynchronized_counter_is_fatal(group, device):
    for _ in range(3):
        group.update(torch.randn(16, device=device))
    # simulate a missed update
    group.update_count -= 1
    with pytest.raises(OptimizerStepError):
        group.update(torch.randn(16, device=device))

def test_duplicated_optimizer_step_is_fatal(group, device):
    group.update(torch.randn(16, device=device))
    group.updater.time_step += 1
    with pytest.raises(OptimizerStepError):
        group.update(torch.randn(16, device=device))

def test_gradient_length_mismatch(group, device):
    with pytest.raises(ValueError):
        group.update(torch.randn(15, device=device))
    assert group.update_count == 0, "A rejected gradient must not count as an update."

def test_adam_step_matches_reference(device):
    g = OptimizerVectors(4, device, initial_value=1.0, learning_rate=0.01)
    gradients = [np.array([0.5, -1.0, 2.0, 0.0], dtype=np.float32), np.array([0.1, 0.2, -0.3, 0.4], dtype=np.float32)]

    value = np.ones(4, dtype=np.float64)
    m = np.zeros(4)
    v = np.zeros(4)
    for t, grad in enumerate(gradients, start=1):
        g.update(torch.from_numpy(grad).to(device))
        m = 0.9 * m + 0.1 * grad
        v = 0.999 * v + 0.001 * grad.astype(np.float64) ** 2
        m_hat = m / (1 - 0.9 ** t)
        v_hat = v / (1 - 0.999 ** t)
        value -= 0.01 * m_hat / (np.sqrt(v_hat) + 1e-8)

    assert np.allclose(g.value.to_numpy(), value, atol=1e-6)
    assert np.allclose(g.momentum.to_numpy(), m, atol=1e-6)
    assert np.allclose(g.velocity.to_numpy(), v, atol=1e-6)

def test_first_adam_step_moves_by_learning_rate(device):
    # with bias correction the first step is lr * sign(g)
    g = OptimizerVectors(3, device, initial_value=0.0, learning_rate=1e-3)
    g.update(torch.tensor([2.0, -3.0, 0.5], device=device))
    assert np.allclose(g.value.to_numpy(), [-1e-3, 1e-3, -1e-3], atol=1e-7)

def test_updater_rejects_bad_learning_rate():
    with pytest.raises(ValueError):
        AdamUpdater(learning_rate=0.0)

@pytest.mark.parametrize("buffer", ['value', 'momentum', 'velocity'])
@pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf])
def test_is_valid_detects_non_finite(group, buffer, bad):
    assert group.is_valid()
    values = getattr(group, buffer).to_numpy()
    values[5] = bad
    getattr(group, buffer).write(values)
    assert not group.is_valid(), f"{bad} in {buffer} was not detected."

def test_is_valid_for_zero_and_bounded(device):
    assert OptimizerVectors(10, device, initial_value=0.0).is_valid()
    assert OptimizerVectors(10, device, initial_value=1e30).is_valid()

def test_export_import_with_optimizer_state(group, device):
    for _ in range(3):
        group.update(torch.randn(16, device=device))
    snapshot = group.export_data(include_optimizer_state=True)
    assert snapshot.has_optimizer_state

    fresh = OptimizerVectors(16, device, name='fresh')
    fresh.import_data(snapshot)
    assert fresh.value.equal(group.value), "Value was not restored bit for bit."
    assert fresh.momentum.equal(group.momentum), "Momentum was not restored bit for bit."
    assert fresh.velocity.equal(group.velocity), "Velocity was not restored bit for bit."

def test_export_import_without_optimizer_state(group, device):
    for _ in range(3):
        group.update(torch.randn(16, device=device))
    snapshot = group.export_data(include_optimizer_state=False)
    assert snapshot.momentum is None and snapshot.velocity is None

    fresh = OptimizerVectors(16, device)
    fresh.import_data(snapshot)
    assert fresh.value.equal(group.value)
    assert np.all(fresh.momentum.to_numpy() == 0), "Momentum should be untouched by a value-only import."
    assert np.all(fresh.velocity.to_numpy() == 0), "Velocity should be untouched by a value-only import."

def test_import_length_mismatch_is_silent(group):
    before = group.value.to_numpy()
    group.import_data(VectorSnapshot(value=np.ones(15, dtype=np.float32), momentum=np.ones(16, dtype=np.float32)))
    assert np.array_equal(group.value.to_numpy(), before), "A wrong-length value buffer must be skipped."
    assert np.all(group.momentum.to_numpy() == 1), "A matching buffer in the same snapshot should still be imported."

def test_import_none_is_noop(group):
    before = group.value.to_numpy()
    group.import_data(None)
    assert np.array_equal(group.value.to_numpy(), before)

def test_device_vector_write_rejects_wrong_length(device):
    v = DeviceVector(4, device, 2.0)
    assert not v.write([1.0, 2.0])
    assert np.all(v.to_numpy() == 2.0)
    assert v.write(torch.arange(4.0))
    assert np.array_equal(v.to_numpy(), [0.0, 1.0, 2.0, 3.0])
    with pytest.raises(ValueError):
        DeviceVector(0, device)

def test_import_without_value_keeps_value(group):
    before = group.value.to_numpy()
    group.import_data(VectorSnapshot(velocity=np.full(16, 2.0, dtype=np.float32)))
    assert np.array_equal(group.value.to_numpy(), before)
    assert np.all(group.velocity.to_numpy() == 2.0)
    assert np.all(group.momentum.to_numpy() == 0)
