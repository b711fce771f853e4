import json
import logging
import os
import threading
import time
from pathlib import Path

import psutil
import torch
from torch.utils.data import DataLoader, random_split
from torchvision import datasets, transforms
from tqdm import tqdm

import config as base_config
import model_zoo
import utilities
from dataset import LABELS_FILE, choose_num_workers, save_minibatch
from transfer import TransferLearningHelper, build_transfer_graph

DEVICE = base_config.DEVICE


def monitor_ram_usage(stop_event):
    """Monitors RAM usage in a separate thread, logging if enabled in config."""
    while not stop_event.is_set():
        if base_config.PRINT_RAM_USAGE:
            process = psutil.Process(os.getpid())
            mem_info = process.memory_info()
            logging.info(f"RAM Usage: {mem_info.rss / 1024 ** 2:.2f} MB")
        stop_event.wait(5)


def build_image_transform():
    return transforms.Compose(
        [
            transforms.Resize(base_config.RESIZE_SIZE),
            transforms.CenterCrop(base_config.IMAGE_SIZE),
            transforms.ToTensor(),
            transforms.Normalize(base_config.IMAGENET_MEAN, base_config.IMAGENET_STD),
        ]
    )


def split_dataset(image_dataset, train_percent: int, seed: int):
    """Seeded random train/test split, by percentage of images."""
    n_train = int(len(image_dataset) * train_percent / 100)
    generator = torch.Generator().manual_seed(seed)
    return random_split(image_dataset, [n_train, len(image_dataset) - n_train], generator=generator)


def clear_minibatches(out_dir: Path, pattern: str):
    """Removes minibatches left over from an earlier run."""
    idx = 0
    while (out_dir / (pattern % idx)).exists():
        (out_dir / (pattern % idx)).unlink()
        idx += 1
    if idx:
        logging.info(f"Removed {idx} stale minibatches from {out_dir}")


def featurize_split(helper, subset, out_dir, pattern, batch_size, num_workers=0) -> int:
    """Runs each minibatch through the frozen layers and saves the features."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    clear_minibatches(out_dir, pattern)

    loader = DataLoader(subset, batch_size=batch_size, shuffle=False, num_workers=num_workers)
    n_batches = 0
    for images, labels in tqdm(loader, desc=f"Featurizing {out_dir.name}"):
        features = helper.featurize(images.to(helper.device))
        if isinstance(features, list):
            features = [f.cpu() for f in features]
        else:
            features = features.cpu()
        if base_config.DEBUG_MODE and n_batches == 0:
            utilities.print_batch_stats(features if torch.is_tensor(features) else features[0], "features")
        save_minibatch(out_dir / (pattern % n_batches), features, labels)
        n_batches += 1
    return n_batches


def featurize_dataset(config: dict, image_dir=base_config.FLOWER_PHOTOS_DIR):
    """
    Builds the transfer graph, featurizes the raw flower photos at its frozen
    boundary and writes the train and test minibatches. Returns the number of
    (train, test) batches written.
    """
    image_dir = Path(image_dir)
    if not image_dir.is_dir():
        raise FileNotFoundError(
            f"Image directory {image_dir} not found. Run scripts/download_data.py first."
        )

    logging.info("--- Featurizing Flower Photos ---")
    utilities.seed_everything(config["seed"])

    stop_event = threading.Event()
    monitor_thread = threading.Thread(target=monitor_ram_usage, args=(stop_event,))
    monitor_thread.daemon = True
    monitor_thread.start()

    try:
        base_graph = model_zoo.load_pretrained(config["model_name"], weights=config["weights"])
        graph = build_transfer_graph(base_graph, config)
        del base_graph
        graph.to(DEVICE)
        helper = TransferLearningHelper(graph, device=DEVICE)

        images = datasets.ImageFolder(str(image_dir), transform=build_image_transform())
        if len(images.classes) != config["num_classes"]:
            raise ValueError(
                f"Found {len(images.classes)} classes in {image_dir}, expected {config['num_classes']}"
            )
        logging.info(f"Found {len(images)} images in classes {images.classes}")

        train_set, test_set = split_dataset(images, config["train_percent"], config["seed"])
        num_workers = choose_num_workers(config["num_workers"])
        batch_size = config["featurize_batch_size"]

        n_train = featurize_split(
            helper, train_set, config["train_folder"], config["train_pattern"], batch_size, num_workers
        )
        n_test = featurize_split(
            helper, test_set, config["test_folder"], config["test_pattern"], batch_size, num_workers
        )

        with open(Path(config["train_folder"]) / LABELS_FILE, "w") as f:
            json.dump(images.classes, f)
    finally:
        stop_event.set()
        monitor_thread.join()

    logging.info(f"Saved {n_train} train and {n_test} test minibatches.")
    return n_train, n_test


def main():
    utilities.configure_logging()
    start = time.time()
    featurize_dataset(base_config.get_default_config())
    logging.info(f"--- Pre-processing Complete ({time.time() - start:.0f}s) ---")


if __name__ == "__main__":
    main()
