import json
import logging
from pathlib import Path

import psutil
import torch
from torch.utils.data import DataLoader, Dataset

import config

# Class names written next to the training minibatches
LABELS_FILE = "labels.json"


def load_label_names(folder):
    """Class names saved by preprocess.py, or None if there are none."""
    path = Path(folder) / LABELS_FILE
    if not path.exists():
        return None
    with open(path) as f:
        return json.load(f)


def save_minibatch(path, features, labels):
    """Writes one featurized minibatch in the format ExistingMiniBatchDataset reads."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save({"features": features, "labels": labels}, path)


class ExistingMiniBatchDataset(Dataset):
    """
    Minibatches that were saved to disk ahead of time, one file per batch.
    Item `i` is the batch stored at `root / (pattern % i)`; the dataset length
    is the number of consecutive files starting from index 0.
    """

    def __init__(self, root, pattern: str, shuffle_rows: bool = False):
        self.root = Path(root)
        self.pattern = pattern
        self.shuffle_rows = shuffle_rows
        self._cached_idx = None
        self._cached_batch = None

        if not self.root.is_dir():
            raise FileNotFoundError(f"Minibatch directory {self.root} does not exist.")

        self.num_batches = 0
        while self._path(self.num_batches).exists():
            self.num_batches += 1
        if self.num_batches == 0:
            raise FileNotFoundError(
                f"No minibatch files matching '{pattern}' found in {self.root}."
            )
        logging.info(f"Found {self.num_batches} minibatches in {self.root} ({pattern})")

    def _path(self, idx):
        return self.root / (self.pattern % idx)

    def _load_file(self, idx: int):
        # Only the last file read stays in memory
        if idx != self._cached_idx:
            self._cached_batch = torch.load(self._path(idx), weights_only=False)
            self._cached_idx = idx
        return self._cached_batch

    def __len__(self):
        return self.num_batches

    def __getitem__(self, idx):
        if idx < 0:
            idx += self.num_batches
        if not 0 <= idx < self.num_batches:
            raise IndexError(f"Minibatch index {idx} out of range ({self.num_batches} batches)")

        batch = self._load_file(idx)
        features, labels = batch["features"], batch["labels"]
        if self.shuffle_rows:
            perm = torch.randperm(len(labels))
            if isinstance(features, (list, tuple)):
                features = [f[perm] for f in features]
            else:
                features = features[perm]
            labels = labels[perm]
        return {"features": features, "labels": labels}


def choose_num_workers(requested: int = -1) -> int:
    """Uses the requested worker count, or picks one from available RAM when negative."""
    if requested >= 0:
        logging.info(f"Using configured num_workers: {requested}")
        return requested

    available_ram = psutil.virtual_memory().available / (1024 ** 3)  # GB
    if available_ram > 24:
        num_workers = 4
    elif available_ram > 6:
        num_workers = 2
    else:
        num_workers = 0
    logging.info(f"Auto-detected num_workers: {num_workers} (Available RAM: {available_ram:.1f} GB)")
    return num_workers


def make_loader(dataset: Dataset, num_workers: int = -1, shuffle: bool = False) -> DataLoader:
    """
    Wraps a minibatch dataset in a DataLoader that prefetches batches in
    background workers. Items are already batches, so no collation happens.
    """
    num_workers = choose_num_workers(num_workers)
    persistent = num_workers > 0
    prefetch = 2 if num_workers > 0 else None
    pin_memory = num_workers > 0 and config.DEVICE == "cuda"

    logging.debug(f"DataLoader config: workers={num_workers}, persistent={persistent}, pin={pin_memory}")

    return DataLoader(
        dataset,
        batch_size=None,
        shuffle=shuffle,
        num_workers=num_workers,
        pin_memory=pin_memory,
        persistent_workers=persistent,
        prefetch_factor=prefetch,
    )
