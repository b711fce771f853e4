import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path

import psutil
from tensorboard import program
from torch.utils.tensorboard import SummaryWriter

import config
from model import PARAM_KEYS


# --- Storage ---

class StatsStorage:
    """Holds training stats records and notifies listeners when one arrives."""

    def __init__(self):
        self._listeners = []

    def put(self, record: dict):
        self._store(record)
        for listener in list(self._listeners):
            listener(record)

    def add_listener(self, listener):
        self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def records(self, session_id: str = None) -> list:
        """All stored records, or only those of one listener session."""
        records = self._load()
        if session_id is None:
            return records
        return [r for r in records if r.get("session_id") == session_id]

    def _store(self, record: dict):
        raise NotImplementedError

    def _load(self) -> list:
        raise NotImplementedError


class InMemoryStatsStorage(StatsStorage):
    def __init__(self):
        super().__init__()
        self._records = []

    def _store(self, record):
        self._records.append(record)

    def _load(self):
        return list(self._records)


class FileStatsStorage(StatsStorage):
    """Appends each record as a JSON line, so stats survive the process."""

    def __init__(self, path):
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _store(self, record):
        with open(self.path, "a") as f:
            f.write(json.dumps(record) + "\n")

    def _load(self):
        if not self.path.exists():
            return []
        with open(self.path) as f:
            return [json.loads(line) for line in f if line.strip()]


# --- Listener ---

class StatsListener:
    """
    Collects score, learning rate, parameter/gradient magnitudes, timing and
    memory every `frequency` iterations and puts them into a StatsStorage.
    Only trainable parameters are reported.
    """

    def __init__(self, storage: StatsStorage, frequency: int = 1, session_id: str = None):
        if frequency < 1:
            raise ValueError(f"Listener frequency must be >= 1, got {frequency}")
        self.storage = storage
        self.frequency = frequency
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self._start = time.time()
        self._process = psutil.Process(os.getpid())

    def iteration_done(self, graph, iteration: int, epoch: int, score: float):
        if iteration % self.frequency:
            return

        params, grads = {}, {}
        for vertex, layer in graph.layers.items():
            for pname, p in layer.named_parameters():
                if not p.requires_grad:
                    continue
                key = f"{vertex}_{PARAM_KEYS.get(pname.split('.')[-1], pname)}"
                params[key] = p.detach().abs().mean().item()
                if p.grad is not None:
                    grads[key] = p.grad.detach().abs().mean().item()

        learning_rate = None
        if graph.optimizer is not None:
            learning_rate = graph.optimizer.param_groups[0]["lr"]

        now = time.time()
        self.storage.put(
            {
                "session_id": self.session_id,
                "iteration": iteration,
                "epoch": epoch,
                "score": float(score),
                "learning_rate": learning_rate,
                "timestamp": now,
                "elapsed_seconds": now - self._start,
                "memory_rss_mb": self._process.memory_info().rss / 1024 ** 2,
                "parameters": params,
                "gradients": grads,
            }
        )


# --- UI ---

class UIServer:
    """
    Mirrors attached StatsStorage records into TensorBoard event files and
    serves them with a TensorBoard instance. One server per process.
    """

    _instance = None
    _lock = threading.Lock()

    def __init__(self, log_dir=config.UI_LOG_DIR, port: int = config.UI_PORT):
        self.log_dir = Path(log_dir)
        self.port = port
        self.url = None
        self._writer = None
        self._attached = {}

    @classmethod
    def get_instance(cls, **kwargs) -> "UIServer":
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls(**kwargs)
            return cls._instance

    @property
    def writer(self) -> SummaryWriter:
        if self._writer is None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self._writer = SummaryWriter(log_dir=str(self.log_dir), flush_secs=10)
        return self._writer

    def attach(self, storage: StatsStorage, session_id: str = None):
        """
        Replays the records already in `storage` and mirrors new ones. With a
        `session_id`, records of other sessions are skipped.
        """
        if id(storage) in self._attached:
            return
        for record in storage.records(session_id):
            self._write(record)

        def callback(record):
            if session_id is None or record.get("session_id") == session_id:
                self._write(record)

        storage.add_listener(callback)
        self._attached[id(storage)] = (storage, callback)
        logging.info(f"Attached stats storage to UI (log dir: {self.log_dir})")

    def detach(self, storage: StatsStorage):
        entry = self._attached.pop(id(storage), None)
        if entry is not None:
            storage.remove_listener(entry[1])

    def _write(self, record: dict):
        step = record["iteration"]
        writer = self.writer
        writer.add_scalar("score", record["score"], step)
        if record.get("learning_rate") is not None:
            writer.add_scalar("learning_rate", record["learning_rate"], step)
        if record.get("memory_rss_mb") is not None:
            writer.add_scalar("memory/rss_mb", record["memory_rss_mb"], step)
        for key, value in record.get("parameters", {}).items():
            writer.add_scalar(f"parameters/{key}", value, step)
        for key, value in record.get("gradients", {}).items():
            writer.add_scalar(f"gradients/{key}", value, step)

    def flush(self):
        if self._writer is not None:
            self._writer.flush()

    def start(self) -> str:
        """Launches TensorBoard on the log directory and returns its URL."""
        if self.url is not None:
            return self.url
        self.log_dir.mkdir(parents=True, exist_ok=True)
        tb = program.TensorBoard()
        tb.configure(argv=[None, "--logdir", str(self.log_dir), "--port", str(self.port)])
        self.url = tb.launch()
        logging.info(f"Training UI available at {self.url}")
        return self.url

    def stop(self):
        for storage, _ in list(self._attached.values()):
            self.detach(storage)
        if self._writer is not None:
            self._writer.close()
            self._writer = None
