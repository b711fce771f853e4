import pytest
import torch

from dataset import (
    ExistingMiniBatchDataset,
    choose_num_workers,
    load_label_names,
    make_loader,
    save_minibatch,
)

PATTERN = "flowers-train-%d.pt"


def _write_batches(folder, batches, pattern=PATTERN):
    for i, batch in enumerate(batches):
        save_minibatch(folder / (pattern % i), batch["features"], batch["labels"])


def test_dataset_counts_consecutive_files(tmp_path, make_batches):
    batches = make_batches(3)
    _write_batches(tmp_path, batches)
    # a gap ends the sequence
    save_minibatch(tmp_path / (PATTERN % 5), batches[0]["features"], batches[0]["labels"])

    data = ExistingMiniBatchDataset(tmp_path, PATTERN)
    assert len(data) == 3
    assert torch.equal(data[1]["features"], batches[1]["features"])
    assert torch.equal(data[-1]["labels"], batches[2]["labels"])


def test_dataset_index_out_of_range(tmp_path, make_batches):
    _write_batches(tmp_path, make_batches(2))
    data = ExistingMiniBatchDataset(tmp_path, PATTERN)
    with pytest.raises(IndexError):
        data[2]


def test_dataset_requires_files(tmp_path):
    with pytest.raises(FileNotFoundError, match="does not exist"):
        ExistingMiniBatchDataset(tmp_path / "missing", PATTERN)
    with pytest.raises(FileNotFoundError, match="No minibatch files"):
        ExistingMiniBatchDataset(tmp_path, PATTERN)


def test_shuffle_rows_keeps_pairs_together(tmp_path):
    features = torch.arange(8, dtype=torch.float32).unsqueeze(1).repeat(1, 3)
    labels = torch.arange(8)
    save_minibatch(tmp_path / (PATTERN % 0), features, labels)

    torch.manual_seed(1)
    item = ExistingMiniBatchDataset(tmp_path, PATTERN, shuffle_rows=True)[0]
    assert torch.equal(item["features"][:, 0].long(), item["labels"])
    assert sorted(item["labels"].tolist()) == list(range(8))


def test_loader_yields_saved_batches_in_order(tmp_path, make_batches):
    batches = make_batches(4)
    _write_batches(tmp_path, batches)
    loader = make_loader(ExistingMiniBatchDataset(tmp_path, PATTERN), num_workers=0)
    loaded = list(loader)
    assert len(loaded) == 4
    for got, expected in zip(loaded, batches):
        assert torch.equal(got["features"], expected["features"])
        assert torch.equal(got["labels"], expected["labels"])


def test_choose_num_workers(monkeypatch):
    assert choose_num_workers(3) == 3

    class FakeMemory:
        available = 8 * 1024 ** 3

    monkeypatch.setattr("dataset.psutil.virtual_memory", lambda: FakeMemory())
    assert choose_num_workers(-1) == 2
    FakeMemory.available = 1024 ** 3
    assert choose_num_workers(-1) == 0


def test_label_names(tmp_path):
    assert load_label_names(tmp_path) is None
    (tmp_path / "labels.json").write_text('["daisy", "roses"]')
    assert load_label_names(tmp_path) == ["daisy", "roses"]


def test_last_loaded_file_is_kept_per_dataset(tmp_path, make_batches):
    train_dir, test_dir = tmp_path / "train", tmp_path / "test"
    _write_batches(train_dir, make_batches(2))
    _write_batches(test_dir, make_batches(2, seed=1))
    train_data = ExistingMiniBatchDataset(train_dir, PATTERN)
    test_data = ExistingMiniBatchDataset(test_dir, PATTERN)

    expected = train_data[1]["features"]
    test_data[0]
    (train_dir / (PATTERN % 1)).unlink()
    # served from memory, the test dataset did not evict it
    assert torch.equal(train_data[1]["features"], expected)
