"""Training report plots: score curves from stats records and the confusion matrix."""
import argparse
import logging
from collections import defaultdict
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402

import utilities  # noqa: E402
from monitor import FileStatsStorage  # noqa: E402


def plot_training_curves(records, output_path):
    """
    Plots the minibatch score per iteration with the mean score of each epoch
    on top, and the learning rate underneath when the records carry one.
    """
    if not records:
        raise ValueError("No stats records to plot.")
    records = sorted(records, key=lambda r: r["iteration"])
    iterations = [r["iteration"] for r in records]
    scores = [r["score"] for r in records]

    by_epoch = defaultdict(list)
    for r in records:
        by_epoch[r["epoch"]].append(r)

    has_lr = any(r.get("learning_rate") is not None for r in records)
    fig, axes = plt.subplots(2 if has_lr else 1, 1, figsize=(10, 7 if has_lr else 4), sharex=True, squeeze=False)
    ax = axes[0, 0]
    ax.plot(iterations, scores, color="lightsteelblue", linewidth=1, label="minibatch score")
    epoch_x = [max(r["iteration"] for r in rs) for _, rs in sorted(by_epoch.items())]
    epoch_y = [np.mean([r["score"] for r in rs]) for _, rs in sorted(by_epoch.items())]
    ax.plot(epoch_x, epoch_y, "o-", color="navy", label="epoch mean")
    ax.set_ylabel("Score")
    ax.set_title("Training score")
    ax.grid(True, alpha=0.3)
    ax.legend()

    if has_lr:
        lr_ax = axes[1, 0]
        lr_ax.plot(iterations, [r.get("learning_rate") for r in records], color="darkorange")
        lr_ax.set_ylabel("Learning rate")
        lr_ax.grid(True, alpha=0.3)
    axes[-1, 0].set_xlabel("Iteration")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.tight_layout()
    plt.savefig(output_path, dpi=120)
    plt.close(fig)
    logging.info(f"Saved training curves to {output_path}")
    return output_path


def plot_confusion_matrix(evaluation, output_path):
    matrix = evaluation.confusion_matrix()
    names = evaluation.label_names

    fig, ax = plt.subplots(figsize=(1.2 * len(names) + 3, 1.2 * len(names) + 2))
    im = ax.imshow(matrix, cmap="Blues")
    fig.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
    ax.set_xticks(range(len(names)), labels=names, rotation=45, ha="right")
    ax.set_yticks(range(len(names)), labels=names)
    ax.set_xlabel("Predicted")
    ax.set_ylabel("Actual")
    ax.set_title(f"Confusion matrix (accuracy {evaluation.accuracy():.3f})")

    threshold = matrix.max() / 2 if matrix.size else 0
    for i in range(matrix.shape[0]):
        for j in range(matrix.shape[1]):
            color = "white" if matrix[i, j] > threshold else "black"
            ax.text(j, i, str(matrix[i, j]), ha="center", va="center", color=color)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.tight_layout()
    plt.savefig(output_path, dpi=120)
    plt.close(fig)
    logging.info(f"Saved confusion matrix to {output_path}")
    return output_path


def main(argv=None):
    utilities.configure_logging()
    parser = argparse.ArgumentParser(description="Plot training curves from a stats file.")
    parser.add_argument("stats_file", help="JSON-lines file written by FileStatsStorage.")
    parser.add_argument("--output", default=None, help="PNG path (default: next to the stats file).")
    args = parser.parse_args(argv)

    stats_file = Path(args.stats_file)
    output = Path(args.output) if args.output else stats_file.with_suffix(".png")
    plot_training_curves(FileStatsStorage(stats_file).records(), output)


if __name__ == "__main__":
    main()
