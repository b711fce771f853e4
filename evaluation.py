import logging

import numpy as np
import torch
from sklearn import metrics
from tqdm import tqdm


def _to_numpy(x) -> np.ndarray:
    if torch.is_tensor(x):
        x = x.detach()
        if x.is_floating_point():
            x = x.float()
        return x.cpu().numpy()
    return np.asarray(x)


def _nan_to_zero(value) -> float:
    value = float(value)
    return 0.0 if np.isnan(value) else value


class Evaluation:
    """
    Accumulates actual and predicted classes for a single-label classifier and
    reports accuracy, precision, recall and F1 through sklearn.metrics.

    Per-class precision (recall) is undefined when a class is never predicted
    (never present); such classes are left out of the macro averages and
    report 0.0 individually.
    """

    def __init__(self, num_classes: int, labels=None):
        if labels is not None and len(labels) != num_classes:
            raise ValueError(f"Got {len(labels)} label names for {num_classes} classes")
        self.num_classes = num_classes
        self.label_names = list(labels) if labels is not None else [str(i) for i in range(num_classes)]
        self.reset()

    def reset(self):
        self._actual = []
        self._predicted = []

    @property
    def _classes(self):
        return list(range(self.num_classes))

    def _arrays(self):
        if not self._actual:
            return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
        return np.concatenate(self._actual), np.concatenate(self._predicted)

    def eval(self, labels, output):
        """
        labels: (N,) class indices or (N, C) one-hot rows.
        output: (N, C) network output (probabilities or logits).
        """
        labels = _to_numpy(labels)
        output = _to_numpy(output)
        n = self.num_classes

        if output.ndim != 2 or output.shape[1] != n:
            raise ValueError(f"Expected output of shape (N, {n}), got {output.shape}")
        if labels.ndim == 2:
            if labels.shape[1] != n:
                raise ValueError(f"Expected labels of shape (N, {n}), got {labels.shape}")
            actual = labels.argmax(axis=1)
        elif labels.ndim == 1:
            actual = labels.astype(np.int64)
        else:
            raise ValueError(f"Labels must be 1D or 2D, got shape {labels.shape}")
        if len(actual) != output.shape[0]:
            raise ValueError(
                f"Labels and output disagree on batch size: {len(actual)} vs {output.shape[0]}"
            )
        if actual.size and (actual.min() < 0 or actual.max() >= n):
            raise ValueError(f"Label index out of range for {n} classes")

        predicted = output.argmax(axis=1)
        self._actual.append(actual)
        self._predicted.append(predicted)

    def merge(self, other: "Evaluation"):
        if other.num_classes != self.num_classes:
            raise ValueError("Cannot merge evaluations with different class counts")
        self._actual.extend(other._actual)
        self._predicted.extend(other._predicted)
        return self

    def num_examples(self) -> int:
        return int(sum(len(a) for a in self._actual))

    def confusion_matrix(self) -> np.ndarray:
        actual, predicted = self._arrays()
        if not len(actual):
            return np.zeros((self.num_classes, self.num_classes), dtype=np.int64)
        return metrics.confusion_matrix(actual, predicted, labels=self._classes)

    def accuracy(self) -> float:
        actual, predicted = self._arrays()
        if not len(actual):
            return 0.0
        return float(metrics.accuracy_score(actual, predicted))

    def _score(self, metric, cls):
        actual, predicted = self._arrays()
        if not len(actual):
            return 0.0
        if cls is not None:
            values = metric(actual, predicted, labels=self._classes, average=None, zero_division=np.nan)
            return _nan_to_zero(values[cls])
        return _nan_to_zero(
            metric(actual, predicted, labels=self._classes, average="macro", zero_division=np.nan)
        )

    def precision(self, cls=None) -> float:
        return self._score(metrics.precision_score, cls)

    def recall(self, cls=None) -> float:
        return self._score(metrics.recall_score, cls)

    def f1(self, cls=None) -> float:
        if cls is not None:
            return self._score(metrics.f1_score, cls)
        # harmonic mean of the macro precision and recall
        p, r = self.precision(), self.recall()
        if p + r == 0:
            return 0.0
        return 2 * p * r / (p + r)

    def stats(self) -> str:
        names = self.label_names
        confusion = self.confusion_matrix()
        lines = [""]
        for actual in range(self.num_classes):
            for predicted in range(self.num_classes):
                count = confusion[actual, predicted]
                if count:
                    lines.append(
                        f"Examples labeled as {names[actual]} classified by model as "
                        f"{names[predicted]}: {count} times"
                    )

        never_predicted = [c for c in range(self.num_classes) if confusion[:, c].sum() == 0]
        if never_predicted and self.num_examples():
            lines.append("")
            lines.append(
                f"Warning: {len(never_predicted)} class(es) were never predicted by the model "
                f"and were excluded from average precision"
            )
            lines.append(f"Classes excluded from average precision: {never_predicted}")

        lines += [
            "",
            "",
            "==========================Scores========================================",
            f" # of classes:    {self.num_classes}",
            f" Accuracy:        {self.accuracy():.4f}",
            f" Precision:       {self.precision():.4f}",
            f" Recall:          {self.recall():.4f}",
            f" F1 Score:        {self.f1():.4f}",
            f"Precision, recall & F1: macro-averaged (equally weighted avg. of {self.num_classes} classes)",
            "========================================================================",
            "",
            "=========================Confusion Matrix=========================",
        ]

        width = max(5, len(str(confusion.max())) + 2)
        lines.append("".join(str(c).rjust(width) for c in range(self.num_classes)))
        lines.append("-" * (width * self.num_classes))
        for actual in range(self.num_classes):
            row = "".join(str(v).rjust(width) for v in confusion[actual])
            lines.append(f"{row} | {actual} = {names[actual]}")
        lines.append("")
        lines.append("Confusion matrix format: Actual (rowClass) predicted as (columnClass) N times")
        lines.append("==================================================================")
        return "\n".join(lines)


def evaluate(output_fn, loader, num_classes: int, device="cpu", label_names=None) -> Evaluation:
    """
    Evaluates `output_fn(*features) -> [output, ...]` on every minibatch of a
    loader yielding dicts with "features" and "labels".
    """
    evaluation = Evaluation(num_classes, label_names)
    for batch in tqdm(loader, desc="Evaluating", leave=False):
        features = batch["features"]
        if torch.is_tensor(features):
            features = [features]
        features = [f.to(device) for f in features]
        output = output_fn(*features)[0]
        evaluation.eval(batch["labels"], output)
    logging.debug(f"Evaluated {evaluation.num_examples()} examples.")
    return evaluation
