#device_vector.py
import torch
import numpy as np
from typing import Optional, Union

class DeviceVector():
    """
    A fixed length, contiguous float32 buffer living on a torch device, with host read and write access.
    Watch out:
        - The length is fixed at construction. write() refuses buffers of another length instead of resizing.
        - There is no gradient tracking. All in-place operations run under torch.no_grad().
        - Use equal() instead of == or != if you want to see if two vectors hold the same values.
    """

    def __init__(self, length: int, device: Union[str, torch.device] = 'cpu', initial_value: float = 0.0, name: str = '') -> None:
        if length <= 0:
            raise ValueError(f"Vector length must be positive, got {length}.")
        self.name = name
        self.data = torch.full((length,), float(initial_value), dtype=torch.float32, device=device)

    def __repr__(self) -> str:
        return f"DeviceVector({self.name!r}, length={len(self)}, device={self.device})"

    def __len__(self) -> int:
        return self.data.numel()

    @property
    def device(self) -> torch.device:
        return self.data.device

    @property
    def byte_size(self) -> int:
        return self.data.element_size() * self.data.numel()

    def _ensure_compatible(self, other: 'DeviceVector') -> None:
        if not isinstance(other, DeviceVector):
            raise TypeError(f"Compatibility error: 'other' is of type {type(other)}, expected DeviceVector.")
        if len(other) != len(self):
            raise ValueError(f"Length mismatch: {len(self)} (self) vs {len(other)} (other).")

    @torch.no_grad()
    def fill(self, value: float) -> 'DeviceVector':
        self.data.fill_(value)
        return self

    @torch.no_grad()
    def fill_uniform(self, low: float, high: float, seed: int) -> 'DeviceVector':
        """
        Fill with uniform random values in [low, high].
        The numbers are drawn on the CPU so the same seed gives the same values on every device.
        """
        generator = torch.Generator().manual_seed(int(seed))
        values = torch.empty(len(self), dtype=torch.float32).uniform_(low, high, generator=generator)
        self.data.copy_(values)
        return self

    def to_numpy(self) -> np.ndarray:
        """Host read. Returns a copy, later device writes do not show up in it."""
        return self.data.detach().cpu().numpy().copy()

    @torch.no_grad()
    def write(self, values: Union[np.ndarray, torch.Tensor, list]) -> bool:
        """
        Host write. Returns False and leaves the buffer untouched if the length does not match.
        """
        if isinstance(values, torch.Tensor):
            values = values.detach().to(dtype=torch.float32).flatten()
        else:
            values = torch.as_tensor(np.asarray(values, dtype=np.float32)).flatten()
        if values.numel() != len(self):
            return False
        self.data.copy_(values.to(self.device))
        return True

    def is_valid(self) -> bool:
        """False if any element is NaN or +-infinity."""
        return bool(torch.isfinite(self.data).all().item())

    def equal(self, other: 'DeviceVector', tol: Optional[float] = None) -> bool:
        """
        Compares the values with another vector. Exact comparison unless a tolerance is given.
        Not overloading __eq__ because that opens a can of worms with __hash__.
        """
        self._ensure_compatible(other)
        other_data = other.data.to(self.device)
        if tol is None:
            return bool(torch.equal(self.data, other_data))
        return bool(torch.allclose(self.data, other_data, atol=tol))

    def __abs__(self) -> float:
        """
        Returns the L2 norm of the vector.
        """
        return torch.norm(self.data).item()
