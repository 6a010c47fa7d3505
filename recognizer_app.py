#recognizer_app.py
"""
Top-level driver: load or train the recognizer, save the weights if they are healthy, then predict forever.
Every failure of the run is logged here and turned into a RunOutcome; nothing escapes to the host process.
"""

import os
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Optional

# custom modules
from mnist_dataset import MnistDataSet
from progress import ImageDirectoryObserver, ProgressObserver
from recognizer_network import BATCH_SIZE, NUM_TRAINING_ITERATIONS, RecognizerNetwork
from utils.plots import plot_loss_history, save_fig_with_cfg

# config dict for a run
DEFAULT_CFG = {
    'device': None,                      # None: cuda if available, else cpu
    'seed': 42,                          # base seed of the weights, layer i uses seed + i
    'batch_size': BATCH_SIZE,
    'iterations': NUM_TRAINING_ITERATIONS,
    'learning_rate': 1e-3,
    'weights_path': 'mnist5.weights',
    'force_train': True,                 # train even if a weights file exists
    'include_optimizer_state': False,    # write momentum and velocity to resume training later
    'images_path': None,                 # gzip IDX files. If None, MNIST is downloaded to data_root
    'labels_path': None,
    'data_root': './data',
    'predict_delay': 1.0,                # seconds between two inference batches
    'predict_batches': None,             # None: predict until the process is stopped
    'image_scale': 1.0,                  # float tensors are multiplied by this before they become images
    'plot_path': None,                   # if set, the loss history is saved there as HTML
}


class RunOutcome(Enum):
    TRAINED = "trained"          # trained, saved, predicted
    LOADED = "loaded"            # loaded valid weights, predicted without training
    BAD_WEIGHTS = "bad weights"  # NaN or Inf in the weights, nothing saved
    FAILED = "failed"            # an exception ended the run


def make_cfg(**overrides) -> dict:
    unknown = set(overrides) - set(DEFAULT_CFG)
    if unknown:
        raise KeyError(f"Unknown config keys: {sorted(unknown)}")
    cfg = dict(DEFAULT_CFG)
    cfg.update(overrides)
    return cfg


def load_dataset(cfg: dict) -> MnistDataSet:
    if cfg['images_path'] and cfg['labels_path']:
        return MnistDataSet.from_gzip_files(cfg['images_path'], cfg['labels_path'], seed=cfg['seed'])
    return MnistDataSet.download(cfg['data_root'], seed=cfg['seed'])


def run(cfg: Optional[dict] = None, observer: Optional[ProgressObserver] = None) -> RunOutcome:
    cfg = make_cfg(**(cfg or {}))
    network = None
    try:
        weights_path = cfg['weights_path']
        has_weights = os.path.exists(weights_path)
        needs_train = cfg['force_train'] or not has_weights

        # create the network
        network = RecognizerNetwork(
            batch_size=cfg['batch_size'],
            iterations=cfg['iterations'],
            device=cfg['device'],
            seed=cfg['seed'],
            learning_rate=cfg['learning_rate'],
            observer=observer,
            image_scale=cfg['image_scale'],
        )
        print(network)

        # read previously trained weights
        if has_weights:
            network.read(weights_path)

        dataset = load_dataset(cfg)

        if needs_train:
            history = network.train(dataset)
            if cfg['plot_path'] and len(history) > 0:
                save_fig_with_cfg(cfg['plot_path'], plot_loss_history(history), cfg)

        # save the network only if training went well
        if not network.weights_are_valid():
            print("Bad weights")
            return RunOutcome.BAD_WEIGHTS
        if needs_train:
            network.write(weights_path, include_optimizer_state=cfg['include_optimizer_state'])

        network.predict(dataset, delay=cfg['predict_delay'], max_batches=cfg['predict_batches'])
        return RunOutcome.TRAINED if needs_train else RunOutcome.LOADED

    except Exception:
        traceback.print_exc()
        return RunOutcome.FAILED
    finally:
        if network is not None:
            network.shutdown(wait=False)


def run_async(cfg: Optional[dict] = None, observer: Optional[ProgressObserver] = None) -> Future:
    """Runs the whole driver on a background thread, for hosts that own the main thread (e.g. a UI)."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='recognizer')
    future = executor.submit(run, cfg, observer)
    executor.shutdown(wait=False)
    return future


if __name__ == '__main__':
    outcome = run(DEFAULT_CFG, observer=ImageDirectoryObserver('progress_images'))
    print(f"Run finished: {outcome.value}")
