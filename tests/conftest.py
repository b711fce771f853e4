import sys
from pathlib import Path

import pytest
import torch
import torch.nn as nn

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import config  # noqa: E402
from model_zoo import graph_from_vgg  # noqa: E402


class TinyVGG(nn.Module):
    """Same module layout as torchvision's VGG, small enough for unit tests."""

    def __init__(self, num_classes=10):
        super().__init__()
        self.features = nn.Sequential(
            nn.Conv2d(3, 4, kernel_size=3, padding=1),
            nn.ReLU(inplace=True),
            nn.MaxPool2d(kernel_size=2, stride=2),
            nn.Conv2d(4, 8, kernel_size=3, padding=1),
            nn.ReLU(inplace=True),
            nn.Conv2d(8, 8, kernel_size=3, padding=1),
            nn.ReLU(inplace=True),
            nn.MaxPool2d(kernel_size=2, stride=2),
        )
        self.avgpool = nn.AdaptiveAvgPool2d((2, 2))
        self.classifier = nn.Sequential(
            nn.Linear(32, 16),
            nn.ReLU(True),
            nn.Dropout(p=0.5),
            nn.Linear(16, 16),
            nn.ReLU(True),
            nn.Dropout(p=0.5),
            nn.Linear(16, num_classes),
        )

    def forward(self, x):
        x = self.features(x)
        x = self.avgpool(x)
        x = torch.flatten(x, 1)
        return self.classifier(x)


@pytest.fixture
def tiny_vgg():
    torch.manual_seed(0)
    return TinyVGG().eval()


@pytest.fixture
def tiny_graph(tiny_vgg):
    return graph_from_vgg(tiny_vgg)


@pytest.fixture
def transfer_cfg(tmp_path):
    cfg = config.get_default_config()
    cfg.update(
        num_classes=3,
        replace_n_out=12,
        learning_rate=0.05,
        num_epochs=2,
        num_workers=0,
        ui_enabled=False,
        train_folder=str(tmp_path / "trainFolder"),
        test_folder=str(tmp_path / "testFolder"),
        model_path=str(tmp_path / "checkpoints" / "model.zip"),
        featurize_batch_size=2,
        train_percent=50,
    )
    return cfg


def random_batches(n_batches, batch_size=4, n_features=16, num_classes=3, seed=0):
    generator = torch.Generator().manual_seed(seed)
    return [
        {
            "features": torch.randn(batch_size, n_features, generator=generator),
            "labels": torch.randint(0, num_classes, (batch_size,), generator=generator),
        }
        for _ in range(n_batches)
    ]


@pytest.fixture
def make_batches():
    return random_batches
