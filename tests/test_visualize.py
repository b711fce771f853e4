import json

import pytest
import torch

import visualize
from evaluation import Evaluation


def _records(n_epochs=2, per_epoch=3):
    records = []
    for epoch in range(n_epochs):
        for i in range(per_epoch):
            iteration = epoch * per_epoch + i + 1
            records.append(
                {"iteration": iteration, "epoch": epoch, "score": 1.0 / iteration, "learning_rate": 5e-5}
            )
    return records


def test_plot_training_curves(tmp_path):
    out = visualize.plot_training_curves(_records(), tmp_path / "plots" / "curves.png")
    assert out.exists() and out.stat().st_size > 0


def test_plot_training_curves_without_learning_rate(tmp_path):
    records = [dict(r, learning_rate=None) for r in _records()]
    assert visualize.plot_training_curves(records, tmp_path / "curves.png").exists()


def test_plot_training_curves_needs_records(tmp_path):
    with pytest.raises(ValueError, match="No stats records"):
        visualize.plot_training_curves([], tmp_path / "curves.png")


def test_plot_confusion_matrix(tmp_path):
    ev = Evaluation(3, labels=["daisy", "roses", "tulips"])
    ev.eval(torch.tensor([0, 1, 2, 2]), torch.eye(3)[[0, 1, 1, 2]])
    assert visualize.plot_confusion_matrix(ev, tmp_path / "cm.png").exists()


def test_main_plots_stats_file(tmp_path):
    stats = tmp_path / "run.jsonl"
    stats.write_text("\n".join(json.dumps(r) for r in _records()) + "\n")
    visualize.main([str(stats)])
    assert (tmp_path / "run.png").exists()
