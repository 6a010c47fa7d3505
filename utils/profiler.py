import psutil
import torch
from time import perf_counter
from contextlib import contextmanager
from typing import Dict, Optional

"""
Measure the time and memory usage of a phase of the recognizer (training run, inference batch, weights file I/O).
"""

def memory_usage(device: Optional[torch.device] = None) -> Dict[str, float]:
    """RAM, and device memory if the phase runs on CUDA, in GB."""
    usage = {
        'ram used ': psutil.virtual_memory().used / 1e9,
        'ram avail': psutil.virtual_memory().available / 1e9,
    }
    if device is not None and torch.device(device).type == 'cuda':
        usage.update({
            'gpu alloc': torch.cuda.memory_allocated(device) / 1e9,
            'gpu reser': torch.cuda.memory_reserved(device) / 1e9,
        })
    return usage

@contextmanager
def profiler(description: str, device: Optional[torch.device] = None, length: int = 80, pad_char: str = ':'):
    """
    Prints a banner, the memory before, the memory difference after, and the elapsed seconds.
    Yields a dict that holds 'seconds' once the block is done.
    """
    timing = {}
    print('\n' + description.center(length, pad_char))
    before = memory_usage(device)
    print(' | '.join(f'{k}: {v:6.1f}' for k, v in before.items()))
    start = perf_counter()
    try:
        yield timing
    finally:
        timing['seconds'] = perf_counter() - start
        after = memory_usage(device)
        # differences, with a '+' or '-' sign
        print(' | '.join(f'{k}: {after[k] - v:+6.1f}' for k, v in before.items()))
        print(f"{timing['seconds']:.2f} s for {description}".center(length, pad_char))
