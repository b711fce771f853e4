import json
from pathlib import Path

import numpy as np
import pytest
import torch
from PIL import Image

import config
import preprocess
from dataset import ExistingMiniBatchDataset

CLASSES = ["daisy", "roses", "tulips"]


@pytest.fixture
def photo_dir(tmp_path):
    rng = np.random.default_rng(0)
    root = tmp_path / "flower_photos"
    for name in CLASSES:
        (root / name).mkdir(parents=True)
        for i in range(2):
            pixels = rng.integers(0, 255, size=(20, 24, 3), dtype=np.uint8)
            Image.fromarray(pixels).save(root / name / f"{i}.jpg")
    return root


@pytest.fixture
def small_images(monkeypatch, tiny_graph):
    monkeypatch.setattr(config, "RESIZE_SIZE", 18)
    monkeypatch.setattr(config, "IMAGE_SIZE", 16)
    monkeypatch.setattr(preprocess.model_zoo, "load_pretrained", lambda name, weights=None: tiny_graph)
    monkeypatch.setattr(preprocess, "DEVICE", "cpu")


def test_image_transform_output_shape(small_images):
    image = Image.new("RGB", (30, 20), color=(200, 10, 10))
    tensor = preprocess.build_image_transform()(image)
    assert tensor.shape == (3, 16, 16)


def test_split_dataset_is_seeded():
    data = list(range(10))
    train_a, test_a = preprocess.split_dataset(data, 80, seed=12345)
    train_b, _ = preprocess.split_dataset(data, 80, seed=12345)
    assert len(train_a) == 8 and len(test_a) == 2
    assert list(train_a.indices) == list(train_b.indices)


def test_featurize_dataset_writes_minibatches(photo_dir, small_images, transfer_cfg):
    n_train, n_test = preprocess.featurize_dataset(transfer_cfg, image_dir=photo_dir)
    assert (n_train, n_test) == (2, 2)

    train_data = ExistingMiniBatchDataset(transfer_cfg["train_folder"], transfer_cfg["train_pattern"])
    assert len(train_data) == 2
    first = train_data[0]
    assert first["features"].shape == (2, 16)
    assert first["labels"].dtype == torch.int64
    assert set(first["labels"].tolist()) <= {0, 1, 2}

    labels = json.loads((Path(transfer_cfg["train_folder"]) / "labels.json").read_text())
    assert labels == CLASSES


def test_featurize_dataset_replaces_stale_batches(photo_dir, small_images, transfer_cfg):
    stale = Path(transfer_cfg["test_folder"])
    stale.mkdir(parents=True)
    for i in range(5):
        torch.save({"features": torch.zeros(1), "labels": torch.zeros(1)}, stale / (transfer_cfg["test_pattern"] % i))

    preprocess.featurize_dataset(transfer_cfg, image_dir=photo_dir)
    assert len(ExistingMiniBatchDataset(stale, transfer_cfg["test_pattern"])) == 2


def test_featurize_dataset_checks_inputs(photo_dir, small_images, transfer_cfg, tmp_path):
    with pytest.raises(FileNotFoundError, match="scripts/download_data.py"):
        preprocess.featurize_dataset(transfer_cfg, image_dir=tmp_path / "nowhere")

    transfer_cfg["num_classes"] = 5
    with pytest.raises(ValueError, match="expected 5"):
        preprocess.featurize_dataset(transfer_cfg, image_dir=photo_dir)
