import io
import json
import logging
import zipfile
from pathlib import Path

import torch

from model import LayerGraph
from transfer import FineTuneConfiguration

CONFIGURATION_JSON = "configuration.json"
COEFFICIENTS = "coefficients.pt"
UPDATER_STATE = "updaterState.pt"


def _tensor_bytes(obj) -> bytes:
    buf = io.BytesIO()
    torch.save(obj, buf)
    return buf.getvalue()


def write_model(graph: LayerGraph, path, save_updater: bool = False, optimizer=None) -> Path:
    """
    Saves a graph as a zip archive holding its configuration (JSON), its
    coefficients and, if requested, the optimizer state needed to resume
    training. The archive can be opened with any zip tool.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    cfg = graph.get_config()
    if graph.fine_tune is not None:
        cfg["fine_tune"] = graph.fine_tune.get_config()

    optimizer = optimizer if optimizer is not None else graph.optimizer
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(CONFIGURATION_JSON, json.dumps(cfg, indent=2))
        zf.writestr(COEFFICIENTS, _tensor_bytes(graph.state_dict()))
        if save_updater:
            if optimizer is None:
                logging.warning("save_updater requested but the graph has no optimizer state.")
            else:
                zf.writestr(UPDATER_STATE, _tensor_bytes(optimizer.state_dict()))

    logging.info(f"Model saved to {path}")
    return path


def restore_model(path, load_updater: bool = False, map_location="cpu"):
    """
    Loads a graph written by write_model. Returns (graph, updater_state); the
    updater state is None unless `load_updater` is set. When the graph carries
    a fine-tune configuration, its optimizer is rebuilt from the saved state.
    """
    path = Path(path)
    with zipfile.ZipFile(path) as zf:
        names = set(zf.namelist())
        for required in (CONFIGURATION_JSON, COEFFICIENTS):
            if required not in names:
                raise ValueError(f"{path} is not a saved model: missing {required}")

        cfg = json.loads(zf.read(CONFIGURATION_JSON))
        graph = LayerGraph.from_config(cfg)
        state = torch.load(io.BytesIO(zf.read(COEFFICIENTS)), map_location=map_location, weights_only=True)
        graph.load_state_dict(state)
        if cfg.get("fine_tune"):
            graph.fine_tune = FineTuneConfiguration(**cfg["fine_tune"])

        updater_state = None
        if load_updater:
            if UPDATER_STATE not in names:
                raise ValueError(f"{path} was saved without updater state")
            updater_state = torch.load(
                io.BytesIO(zf.read(UPDATER_STATE)), map_location=map_location, weights_only=True
            )
            if graph.fine_tune is not None:
                optimizer = graph.fine_tune.create_optimizer(graph.trainable_parameters())
                optimizer.load_state_dict(updater_state)
                graph.optimizer = optimizer

    logging.info(f"Model restored from {path}")
    return graph, updater_state
