#network.py
import pandas as pd
import torch
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Sequence, Union
# custom modules
from command_queue import CommandQueue
from compute_graph import ComputeGraph
from layer_weights import ConvolutionWeights, WeightsRegistry
from progress import ProgressObserver
from utils.image_conversion import to_image
from utils.persistence import read_snapshot, write_snapshot
from utils.profiler import profiler

class Network():
    """
    Base class of a trainable network: owns the device queue, the weights registry and the compute graphs built on it.

    Subclasses define the graphs and the training/inference loops (see RecognizerNetwork).
    This class provides everything that does not depend on the topology:
        - conv2d(): lazy creation of shared layer weights, keyed by label,
        - weights_are_valid(): the global training health check,
        - write()/read(): the weights file, followed by a reload of every graph,
        - show_images(): progress images for the observer,
        - *_async(): the same phases as background tasks on a single worker, so they never overlap.

    Attributes:
        queue (CommandQueue): The only submission point for device work of this network.
        registry (WeightsRegistry): Owner of all layer weights.
        observer (ProgressObserver): Receives progress images and losses.
        image_scale (float): Factor applied to float tensors before they are turned into images.
    """

    def __init__(
        self,
        device: Optional[Union[str, torch.device]] = None,
        seed: int = 42,
        learning_rate: float = 1e-3,
        observer: Optional[ProgressObserver] = None,
        image_scale: float = 1.0,
    ) -> None:
        self.queue = CommandQueue(device, label='network')
        print(f"Device: {self.device}")
        self.registry = WeightsRegistry(self.queue, seed=seed, learning_rate=learning_rate)
        self.observer = observer if observer is not None else ProgressObserver()
        self.image_scale = image_scale
        self._executor: Optional[ThreadPoolExecutor] = None

    def __repr__(self) -> str:
        return f"Network ({len(self.registry)} weights)"

    @property
    def device(self) -> torch.device:
        return self.queue.device

    @property
    def graphs(self) -> Sequence[ComputeGraph]:
        """Every graph that caches weights of the registry."""
        return ()

    def conv2d(self, in_channels: int, out_channels: int, label: str, kernel_size: int = 3, stride: int = 1, bias: bool = True) -> ConvolutionWeights:
        return self.registry.get_or_create(label, in_channels, out_channels, kernel_size=kernel_size, stride=stride, bias=bias)

    def weights_are_valid(self) -> bool:
        return self.registry.weights_are_valid()

    def reload_graphs(self) -> None:
        for graph in self.graphs:
            graph.reload_from_data_sources()

    def dump_weights(self) -> None:
        for weights in self.registry.values():
            for name, values in weights.get_weights().items():
                print(f"{name} = [" + ", ".join(f"{v:g}" for v in values[:5]) + "]")

    def show_images(self, image: torch.Tensor, output_image: torch.Tensor) -> None:
        self.observer.input_image_produced(to_image(image, scale=self.image_scale))
        self.observer.output_image_produced(to_image(output_image, scale=self.image_scale))

    # Weights file

    def write(self, path: str, include_optimizer_state: bool = False) -> int:
        """
        Writes every registered layer to `path`, overwriting it. Returns the file size.
        momentum and velocity are only included for resuming training.
        """
        snapshot = {label: weights.export_data(include_optimizer_state) for label, weights in self.registry.items()}
        length = write_snapshot(path, snapshot)
        print(f"Wrote {length:,} bytes to {path}")
        return length

    def read(self, path: str) -> int:
        """
        Imports every layer of the file whose label is registered here, then reloads all graphs.
        Unknown labels are ignored, registered layers missing from the file keep their current values.
        Returns the number of layers imported. Check weights_are_valid() afterwards.
        """
        snapshot = read_snapshot(path)
        imported = 0
        for label, record in snapshot.items():
            if label in self.registry:
                self.registry[label].import_data(record)
                imported += 1
        self.reload_graphs()
        print(f"Read {len(snapshot)} weights from {path} ({imported} imported)")
        return imported

    # Training and inference

    def train(self, dataset, iterations: Optional[int] = None) -> pd.DataFrame:
        """
        Runs the training loop, then reloads every graph from the updated weights.
        Returns the loss history with columns ['Iteration', 'Loss'].
        """
        with profiler(f'Training {self}', device=self.device):
            history = self.train_batches(dataset, iterations)
        self.reload_graphs()
        return history

    def predict(self, dataset, delay: float = 1.0, max_batches: Optional[int] = None) -> int:
        return self.predict_batches(dataset, delay=delay, max_batches=max_batches)

    def train_batches(self, dataset, iterations: Optional[int] = None) -> pd.DataFrame:
        raise NotImplementedError

    def predict_batches(self, dataset, delay: float = 1.0, max_batches: Optional[int] = None) -> int:
        raise NotImplementedError

    # Background tasks

    def _submit(self, fn, *args, **kwargs) -> Future:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='network')
        return self._executor.submit(fn, *args, **kwargs)

    def train_async(self, dataset, iterations: Optional[int] = None) -> Future:
        return self._submit(self.train, dataset, iterations)

    def predict_async(self, dataset, delay: float = 1.0, max_batches: Optional[int] = None) -> Future:
        return self._submit(self.predict, dataset, delay=delay, max_batches=max_batches)

    def write_async(self, path: str, include_optimizer_state: bool = False) -> Future:
        return self._submit(self.write, path, include_optimizer_state=include_optimizer_state)

    def read_async(self, path: str) -> Future:
        return self._submit(self.read, path)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
