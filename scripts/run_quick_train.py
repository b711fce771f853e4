#!/usr/bin/env python3
"""Runs a 1-epoch CPU training loop to validate the pipeline end-to-end."""
from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import config
import train
import utilities


def main() -> None:
    utilities.configure_logging()
    cfg = config.get_default_config()
    cfg["run_id"] = "quick_train"
    cfg["num_epochs"] = 1
    cfg["num_workers"] = 0
    cfg["ui_enabled"] = False
    cfg["model_path"] = str(config.MODEL_PATH.parent / "quick_train.zip")
    config.DEVICE = "cpu"
    train.DEVICE = "cpu"
    train.run_experiment(cfg)


if __name__ == "__main__":
    main()
