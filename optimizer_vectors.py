#optimizer_vectors.py
"""
Adam optimizer state kept next to the parameter it optimizes.
OptimizerVectors holds three parallel device buffers (value, momentum, velocity) for one learnable tensor
and owns the AdamUpdater that steps them.
"""

import torch
import numpy as np
from dataclasses import dataclass
from typing import Optional, Union

from device_vector import DeviceVector
from errors import OptimizerStepError

@dataclass
class VectorSnapshot:
    """
    Host copy of one parameter group. momentum and velocity are None unless the optimizer state was requested,
    value is None only when it is read from a file that lacks it.
    """
    value: Optional[np.ndarray] = None
    momentum: Optional[np.ndarray] = None
    velocity: Optional[np.ndarray] = None

    @property
    def has_optimizer_state(self) -> bool:
        return self.momentum is not None and self.velocity is not None


class AdamUpdater():
    """
    Bias-corrected Adam:
        t += 1
        m = beta1*m + (1-beta1)*g
        v = beta2*v + (1-beta2)*g^2
        value -= lr * m_hat / (sqrt(v_hat) + eps)
    The time step is tracked here, independently of the caller's own update count.
    """

    def __init__(self, learning_rate: float = 1e-3, beta1: float = 0.9, beta2: float = 0.999, epsilon: float = 1e-8, time_step: int = 0) -> None:
        if learning_rate <= 0:
            raise ValueError(f"Learning rate must be positive, got {learning_rate}.")
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.time_step = time_step

    @torch.no_grad()
    def encode(self, gradient: torch.Tensor, value: torch.Tensor, momentum: torch.Tensor, velocity: torch.Tensor) -> torch.Tensor:
        self.time_step += 1
        t = self.time_step

        momentum.mul_(self.beta1).add_(gradient, alpha=1 - self.beta1)
        velocity.mul_(self.beta2).addcmul_(gradient, gradient, value=1 - self.beta2)

        bias_correction1 = 1 - self.beta1 ** t
        bias_correction2 = 1 - self.beta2 ** t

        denom = (velocity / bias_correction2).sqrt_().add_(self.epsilon)
        value.addcdiv_(momentum, denom, value=-self.learning_rate / bias_correction1)
        return value


class OptimizerVectors():
    """
    Value, momentum and velocity buffers of one learnable tensor, plus its Adam updater.
    Momentum and velocity start at zero. The value starts at `initial_value` and can be re-filled with fill_uniform().
    """

    def __init__(self, length: int, device: Union[str, torch.device] = 'cpu', initial_value: float = 0.0, name: str = '', learning_rate: float = 1e-3) -> None:
        self.name = name
        self.value = DeviceVector(length, device, initial_value, name=f"{name}.value")
        self.momentum = DeviceVector(length, device, 0.0, name=f"{name}.momentum")
        self.velocity = DeviceVector(length, device, 0.0, name=f"{name}.velocity")
        self.updater = AdamUpdater(learning_rate=learning_rate)
        self.update_count = 0

    def __repr__(self) -> str:
        return f"OptimizerVectors({self.name!r}, length={len(self)}, updates={self.update_count})"

    def __len__(self) -> int:
        return len(self.value)

    def fill_uniform(self, low: float, high: float, seed: int) -> None:
        self.value.fill_uniform(low, high, seed)

    def update(self, gradient: torch.Tensor) -> torch.Tensor:
        """
        Applies one Adam step in place and returns the new value tensor.
        Raises OptimizerStepError if our update count and the updater's time step disagree afterwards.
        """
        gradient = gradient.detach().reshape(-1).to(device=self.value.device, dtype=torch.float32)
        if gradient.numel() != len(self):
            raise ValueError(f"Gradient length mismatch in '{self.name}': {gradient.numel()} vs {len(self)}.")

        self.update_count += 1
        self.updater.encode(gradient, self.value.data, self.momentum.data, self.velocity.data)

        if self.update_count != self.updater.time_step:
            raise OptimizerStepError(
                f"Update time step of '{self.name}' is out of sync: {self.update_count} updates applied, "
                f"optimizer is at step {self.updater.time_step}.")
        return self.value.data

    def is_valid(self) -> bool:
        return self.value.is_valid() and self.momentum.is_valid() and self.velocity.is_valid()

    def export_data(self, include_optimizer_state: bool = False) -> VectorSnapshot:
        return VectorSnapshot(
            value=self.value.to_numpy(),
            momentum=self.momentum.to_numpy() if include_optimizer_state else None,
            velocity=self.velocity.to_numpy() if include_optimizer_state else None,
        )

    def import_data(self, snapshot: Optional[VectorSnapshot]) -> None:
        """
        Overwrites each buffer present in the snapshot with a matching length.
        Missing buffers and length mismatches are skipped silently, check is_valid() afterwards.
        """
        if snapshot is None:
            return
        for vector, values in ((self.value, snapshot.value),
                               (self.momentum, snapshot.momentum),
                               (self.velocity, snapshot.velocity)):
            if values is not None:
                vector.write(values)
