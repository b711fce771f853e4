import os
from pathlib import Path

import torch

# --- Project Root ---
PROJECT_ROOT = Path(os.path.dirname(os.path.abspath(__file__)))
DATA_ROOT = PROJECT_ROOT / "datasets"

DEBUG_MODE = False
PRINT_RAM_USAGE = False

# --- Raw Data ---
FLOWER_PHOTOS_URL = "http://download.tensorflow.org/example_images/flower_photos.tgz"
FLOWER_PHOTOS_ARCHIVE = DATA_ROOT / "flower_photos.tgz"
FLOWER_PHOTOS_DIR = DATA_ROOT / "flower_photos"

# --- Featurized Minibatches ---
# These are written by preprocess.py and consumed by train.py.
TRAIN_FOLDER = DATA_ROOT / "trainFolder"
TEST_FOLDER = DATA_ROOT / "testFolder"
TRAIN_PATTERN = "flowers-train-%d.pt"
TEST_PATTERN = "flowers-test-%d.pt"

# --- Image Constants (ImageNet statistics used by the pretrained weights) ---
IMAGE_SIZE = 224
RESIZE_SIZE = 256
IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

# --- Experiment Constants ---
NUM_CLASSES = 5
SEED = 12345
N_EPOCHS = 50
FEATURIZE_BATCH_SIZE = 15
TRAIN_PERCENT = 80

# --- Runtime ---
DEVICE = "cuda" if torch.cuda.is_available() else "cpu"

# --- UI ---
UI_PORT = 9000
UI_LOG_DIR = PROJECT_ROOT / "runs"

# --- Output Paths ---
MODEL_PATH = PROJECT_ROOT / "checkpoints" / "MyComputationGraph.zip"


def get_default_config() -> dict:
    """Returns the experiment configuration used by train.py and preprocess.py."""
    return {
        "run_id": "vgg16_flowers",
        "model_name": "vgg16",
        "weights": "DEFAULT",
        "num_classes": NUM_CLASSES,
        "seed": SEED,
        "num_epochs": N_EPOCHS,
        # Fine-tune configuration, applied to every layer that is not frozen
        "activation": "leakyrelu",
        "learning_rate": 5e-5,
        "updater": "nesterovs",
        "momentum": 0.9,
        "dropout": 0.5,
        "l2": None,
        "gradient_clip": None,
        # Graph surgery
        "feature_extractor": "fc1",  # featurized data is the output of this vertex
        "replace_layer": "fc2",
        "replace_n_out": 1024,
        "replace_weight_init": "xavier",
        "remove_vertex": "predictions",
        "output_name": "newpredictions",
        # Data
        "train_folder": str(TRAIN_FOLDER),
        "test_folder": str(TEST_FOLDER),
        "train_pattern": TRAIN_PATTERN,
        "test_pattern": TEST_PATTERN,
        "featurize_batch_size": FEATURIZE_BATCH_SIZE,
        "train_percent": TRAIN_PERCENT,
        "num_workers": -1,
        "shuffle": False,
        # Monitoring
        "listener_frequency": 1,
        "ui_enabled": True,
        "ui_port": UI_PORT,
        "stats_file": None,  # JSON-lines stats instead of in-memory storage
        # Output
        "report_dir": None,  # training_curves.png and confusion_matrix.png
        "model_path": str(MODEL_PATH),
        "save_updater": False,
    }
