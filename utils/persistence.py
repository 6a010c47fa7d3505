import gzip
import numpy as np
import torch
from typing import Dict, Optional
from safetensors.torch import save as safetensors_save, load as safetensors_load
# custom modules
from errors import PersistenceError
from layer_weights import LayerRecord
from optimizer_vectors import VectorSnapshot

"""
Weights file codec: gzip( safetensors( {"<label>.<group>.<buffer>": float32 tensor} ) ).
group is 'weights' or 'biases', buffer is 'value', 'momentum' or 'velocity'.
safetensors is length prefixed (8 byte header size, JSON header, raw data), so the mapping is order independent.
momentum and velocity are only written when the optimizer state was requested.
"""

FORMAT_NAME = 'recognizer-weights'
FORMAT_VERSION = '1'
GROUPS = ('weights', 'biases')
BUFFERS = ('value', 'momentum', 'velocity')

NetworkSnapshot = Dict[str, LayerRecord]

def _vector_tensors(prefix: str, snapshot: Optional[VectorSnapshot]) -> Dict[str, torch.Tensor]:
    if snapshot is None:
        return {}
    tensors = {}
    for buffer in BUFFERS:
        values = getattr(snapshot, buffer)
        if values is not None:
            tensors[f"{prefix}.{buffer}"] = torch.from_numpy(np.ascontiguousarray(values, dtype=np.float32)).clone()
    return tensors

def encode_snapshot(snapshot: NetworkSnapshot) -> bytes:
    tensors = {}
    for label, record in snapshot.items():
        tensors.update(_vector_tensors(f"{label}.weights", record.weights))
        tensors.update(_vector_tensors(f"{label}.biases", record.biases))
    data = safetensors_save(tensors, metadata={'format': FORMAT_NAME, 'version': FORMAT_VERSION})
    return gzip.compress(data, compresslevel=1)

def decode_snapshot(data: bytes) -> NetworkSnapshot:
    """
    Parses a compressed container. Decompression errors propagate, malformed keys raise PersistenceError.
    Layers may hold any subset of their buffers.
    """
    tensors = safetensors_load(gzip.decompress(data))

    buffers: Dict[str, Dict[str, Dict[str, np.ndarray]]] = {}
    for key, tensor in tensors.items():
        # labels may contain dots themselves, the last two parts are group and buffer
        parts = key.rsplit('.', 2)
        if len(parts) != 3 or not parts[0] or parts[1] not in GROUPS or parts[2] not in BUFFERS:
            raise PersistenceError(f"Malformed key '{key}' in weights container.")
        label, group, buffer = parts
        if tensor.dtype != torch.float32 or tensor.dim() != 1:
            raise PersistenceError(f"'{key}' must be a 1-D float32 vector, got {tensor.dtype} {tuple(tensor.shape)}.")
        buffers.setdefault(label, {}).setdefault(group, {})[buffer] = tensor.numpy().copy()

    # groups and buffers absent from the file stay None, import skips them one by one
    snapshot = {}
    for label, groups in buffers.items():
        snapshot[label] = LayerRecord(
            weights=VectorSnapshot(**groups['weights']) if 'weights' in groups else None,
            biases=VectorSnapshot(**groups['biases']) if 'biases' in groups else None,
        )
    return snapshot

def write_snapshot(path: str, snapshot: NetworkSnapshot) -> int:
    """
    Overwrites `path` in place and returns the number of bytes written.
    Not atomic: a crash in the middle of the write leaves a corrupt file.
    """
    data = encode_snapshot(snapshot)
    with open(path, 'wb') as f:
        f.write(data)
    return len(data)

def read_snapshot(path: str) -> NetworkSnapshot:
    with open(path, 'rb') as f:
        return decode_snapshot(f.read())
