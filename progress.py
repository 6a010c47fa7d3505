#progress.py
"""
Progress reporting from the training and inference loops to a presentation layer.
The network calls the observer it was given on its worker thread. Presenting the images
(on a UI thread, in a window, on disk) is the observer's job.
"""

import os
import queue
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from PIL import Image


class ProgressKind(Enum):
    INPUT_IMAGE = "input image produced"
    OUTPUT_IMAGE = "output image produced"
    LOSS = "loss reported"


@dataclass
class ProgressEvent:
    kind: ProgressKind
    payload: Any


class ProgressObserver():
    """Does nothing. Subclass and override the channels you care about."""

    def input_image_produced(self, image: Image.Image) -> None:
        pass

    def output_image_produced(self, image: Image.Image) -> None:
        pass

    def loss_reported(self, iteration: int, loss: float) -> None:
        pass


class QueueProgressObserver(ProgressObserver):
    """
    Publishes every notification as a ProgressEvent on a thread safe queue.
    A UI thread drains the queue with get_nowait() and presents the images itself.
    """

    def __init__(self, events: Optional[queue.Queue] = None) -> None:
        self.events = events if events is not None else queue.Queue()

    def input_image_produced(self, image: Image.Image) -> None:
        self.events.put(ProgressEvent(ProgressKind.INPUT_IMAGE, image))

    def output_image_produced(self, image: Image.Image) -> None:
        self.events.put(ProgressEvent(ProgressKind.OUTPUT_IMAGE, image))

    def loss_reported(self, iteration: int, loss: float) -> None:
        self.events.put(ProgressEvent(ProgressKind.LOSS, (iteration, loss)))


class ImageDirectoryObserver(ProgressObserver):
    """Keeps the latest input and output image as input.png and output.png in a directory."""

    def __init__(self, directory: str) -> None:
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def input_image_produced(self, image: Image.Image) -> None:
        image.save(os.path.join(self.directory, 'input.png'))

    def output_image_produced(self, image: Image.Image) -> None:
        image.save(os.path.join(self.directory, 'output.png'))
