#command_queue.py
"""
A serial command queue in front of a torch device.
Work is recorded into a CommandBuffer, committed as one ordered unit while holding the queue lock,
and the caller blocks on wait_until_completed() until the device has finished.
There is exactly one queue per network, so training and inference submissions never interleave.
"""

import threading
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

import torch


def default_device() -> torch.device:
    """CUDA if available, CPU otherwise."""
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


class CommandBufferStatus(Enum):
    NOT_ENQUEUED = "not enqueued"
    COMMITTED = "committed"
    COMPLETED = "completed"
    ERROR = "error"


class CommandResult():
    """
    Handle to the outcome of one encoded command.
    Only readable after the owning buffer completed.
    """

    def __init__(self, buffer: 'CommandBuffer') -> None:
        self._buffer = buffer
        self._value = None
        self._error: Optional[BaseException] = None
        self._skipped = False

    def done(self) -> bool:
        return self._buffer.status in (CommandBufferStatus.COMPLETED, CommandBufferStatus.ERROR)

    def result(self) -> Any:
        if not self.done():
            raise RuntimeError(f"Command buffer '{self._buffer.label}' has not completed ({self._buffer.status.value}).")
        if self._error is not None:
            raise self._error
        if self._skipped:
            raise RuntimeError(f"Command in '{self._buffer.label}' was skipped after an earlier command failed.")
        return self._value


class CommandBuffer():
    """
    An ordered list of commands for one submission.
    encode() records, commit() executes, wait_until_completed() blocks until the device is done.
    """

    def __init__(self, queue: 'CommandQueue', label: str = '') -> None:
        self.queue = queue
        self.label = label
        self.status = CommandBufferStatus.NOT_ENQUEUED
        self._commands: List[Tuple[Callable, tuple, dict, CommandResult]] = []
        self._executing = False
        self._failed = False

    @property
    def device(self) -> torch.device:
        return self.queue.device

    @property
    def is_executing(self) -> bool:
        """True while the recorded commands are running inside commit()."""
        return self._executing

    def encode(self, fn: Callable, *args, **kwargs) -> CommandResult:
        if self.status is not CommandBufferStatus.NOT_ENQUEUED:
            raise RuntimeError(f"Cannot encode into command buffer '{self.label}': already {self.status.value}.")
        handle = CommandResult(self)
        self._commands.append((fn, args, kwargs, handle))
        return handle

    def commit(self) -> None:
        if self.status is not CommandBufferStatus.NOT_ENQUEUED:
            raise RuntimeError(f"Command buffer '{self.label}' was already committed.")
        self.status = CommandBufferStatus.COMMITTED
        failed = False
        # TODO: record a per-buffer CUDA event so wait_until_completed() does not block on the whole device
        with self.queue.lock:
            self._executing = True
            try:
                for fn, args, kwargs, handle in self._commands:
                    if failed:
                        handle._skipped = True
                        continue
                    try:
                        handle._value = fn(*args, **kwargs)
                    except Exception as e:
                        # the rest of the buffer is skipped, the error surfaces through result()
                        handle._error = e
                        failed = True
            finally:
                self._executing = False
        self._failed = failed

    def wait_until_completed(self) -> None:
        if self.status is CommandBufferStatus.NOT_ENQUEUED:
            raise RuntimeError(f"Command buffer '{self.label}' was never committed.")
        if self.status is CommandBufferStatus.COMMITTED:
            self.queue.synchronize()
            self.status = CommandBufferStatus.ERROR if self._failed else CommandBufferStatus.COMPLETED


class CommandQueue():
    """
    The single submission point for one device.
    The lock is held while a buffer executes, which serializes all submissions.
    """

    def __init__(self, device: Optional[torch.device] = None, label: str = 'queue') -> None:
        self.device = torch.device(device) if device is not None else default_device()
        self.label = label
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return f"CommandQueue({self.label!r}, device={self.device})"

    def command_buffer(self, label: str = '') -> CommandBuffer:
        return CommandBuffer(self, label=label)

    def synchronize(self) -> None:
        if self.device.type == 'cuda':
            torch.cuda.synchronize(self.device)

    def run(self, fn: Callable, *args, label: str = '', **kwargs) -> Any:
        """Submit a single command on its own buffer and block until it is done."""
        buffer = self.command_buffer(label=label)
        handle = buffer.encode(fn, *args, **kwargs)
        buffer.commit()
        buffer.wait_until_completed()
        return handle.result()
