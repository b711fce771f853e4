import logging
import random

import numpy as np
import torch

import config


def configure_logging(level=None):
    """Root logger setup shared by the command-line entry points."""
    if level is None:
        level = logging.DEBUG if config.DEBUG_MODE else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def seed_everything(seed: int):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def print_batch_stats(batch_data: torch.Tensor, batch_name: str):
    """Prints a quick summary of a data batch."""
    logging.debug(f"  > Stats for '{batch_name}' batch:")
    if not isinstance(batch_data, torch.Tensor) or batch_data.numel() == 0:
        logging.debug("    Batch is empty or not a tensor!")
        return
    batch_data = batch_data.float()
    logging.debug(f"    Shape: {tuple(batch_data.shape)}")
    logging.debug(f"    Min:   {batch_data.min().item():.4f}")
    logging.debug(f"    Max:   {batch_data.max().item():.4f}")
    logging.debug(f"    Mean:  {batch_data.mean().item():.4f}")
    logging.debug(f"    NaNs:  {torch.isnan(batch_data).sum().item()}")
    logging.debug(f"    Infs:  {torch.isinf(batch_data).sum().item()}")
