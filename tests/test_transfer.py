import pytest
import torch

from model import DenseLayer, GraphConfigurationError, OutputLayer
from transfer import (
    FineTuneConfiguration,
    GraphBuilder,
    TransferLearningHelper,
    build_transfer_graph,
)


class RecordingListener:
    def __init__(self):
        self.calls = []

    def iteration_done(self, graph, iteration, epoch, score):
        self.calls.append((iteration, epoch, score))


def test_build_transfer_graph_freezes_and_replaces(tiny_graph, transfer_cfg):
    graph = build_transfer_graph(tiny_graph, transfer_cfg)

    assert graph.outputs == ["newpredictions"]
    assert "predictions" not in graph.layers
    assert set(graph.frozen_vertices) == set(tiny_graph.topological_order[:8])
    assert "fc1" in graph.frozen_vertices
    assert "fc2" not in graph.frozen_vertices

    fc2 = graph.layers["fc2"]
    assert (fc2.n_in, fc2.n_out) == (16, 12)
    assert fc2.activation == "leakyrelu"
    assert fc2.dropout == 0.5
    assert fc2.weight_init == "xavier"

    head = graph.layers["newpredictions"]
    assert isinstance(head, OutputLayer)
    assert head.activation == "softmax"
    assert head.loss == "negativeloglikelihood"
    assert (head.n_in, head.n_out) == (12, 3)
    assert graph.fine_tune.updater == "nesterovs"


def test_build_leaves_source_graph_untouched(tiny_graph, transfer_cfg):
    before = tiny_graph.layers["fc1"].linear.weight.clone()
    graph = build_transfer_graph(tiny_graph, transfer_cfg)

    assert tiny_graph.layers["fc2"].n_out == 16
    assert "predictions" in tiny_graph.layers
    assert not tiny_graph.frozen_vertices
    assert torch.equal(tiny_graph.layers["fc1"].linear.weight, before)
    # frozen weights are copied, not re-initialized
    assert torch.equal(graph.layers["fc1"].linear.weight, before)


def test_build_is_reproducible_with_seed(tiny_graph, transfer_cfg):
    a = build_transfer_graph(tiny_graph, transfer_cfg)
    b = build_transfer_graph(tiny_graph, transfer_cfg)
    assert torch.equal(a.layers["fc2"].linear.weight, b.layers["fc2"].linear.weight)
    assert torch.equal(a.layers["newpredictions"].linear.weight, b.layers["newpredictions"].linear.weight)


def test_cannot_modify_frozen_layer(tiny_graph):
    builder = GraphBuilder(tiny_graph).set_feature_extractor("fc1").n_out_replace("fc1", 8)
    with pytest.raises(GraphConfigurationError, match="frozen"):
        builder.build()


def test_added_layer_infers_n_in(tiny_graph):
    graph = (
        GraphBuilder(tiny_graph)
        .set_feature_extractor("fc2")
        .remove_vertex_and_connections("predictions")
        .add_layer("head", OutputLayer(activation="softmax", n_out=4), "fc2")
        .set_outputs("head")
        .build()
    )
    assert graph.layers["head"].n_in == 16
    assert graph.output(torch.randn(2, 3, 16, 16))[0].shape == (2, 4)


def test_mismatched_n_in_is_rejected(tiny_graph):
    builder = (
        GraphBuilder(tiny_graph)
        .n_out_replace("fc1", 10)
        .add_layer("side", DenseLayer(n_in=16, n_out=2), "fc1")
    )
    with pytest.raises(GraphConfigurationError, match="nIn=16"):
        builder.build()


def test_unknown_vertex_is_rejected(tiny_graph):
    with pytest.raises(GraphConfigurationError, match="No vertex named"):
        GraphBuilder(tiny_graph).set_feature_extractor("fc9")


def test_fine_tune_configuration_validates_updater():
    with pytest.raises(ValueError, match="Unsupported updater"):
        FineTuneConfiguration(updater="adagrad")


def test_nesterovs_optimizer():
    conf = FineTuneConfiguration(learning_rate=5e-5, updater="nesterovs", momentum=0.9, l2=1e-4)
    opt = conf.create_optimizer([torch.nn.Parameter(torch.zeros(2))])
    group = opt.param_groups[0]
    assert isinstance(opt, torch.optim.SGD)
    assert group["nesterov"] and group["momentum"] == 0.9
    assert group["lr"] == 5e-5 and group["weight_decay"] == 1e-4


def test_helper_featurizes_at_frozen_boundary(tiny_graph, transfer_cfg):
    graph = build_transfer_graph(tiny_graph, transfer_cfg)
    helper = TransferLearningHelper(graph)
    assert helper.boundary == ["fc1"]
    assert helper.unfrozen_graph().topological_order == ["fc2", "newpredictions"]

    x = torch.randn(3, 3, 16, 16)
    features = helper.featurize(x)
    assert features.shape == (3, 16)
    assert not features.requires_grad

    from_features = helper.output_from_featurized(features)[0]
    direct = graph.output(x)[0]
    assert torch.allclose(from_features, direct, atol=1e-6)


def test_helper_requires_frozen_vertices(tiny_graph):
    with pytest.raises(GraphConfigurationError, match="no frozen vertices"):
        TransferLearningHelper(tiny_graph)


def test_helper_rejects_frozen_output(tiny_graph):
    graph = GraphBuilder(tiny_graph).set_feature_extractor("predictions").build()
    with pytest.raises(GraphConfigurationError, match="is frozen"):
        TransferLearningHelper(graph)


def test_fit_featurized_updates_only_unfrozen_layers(tiny_graph, transfer_cfg, make_batches):
    graph = build_transfer_graph(tiny_graph, transfer_cfg)
    helper = TransferLearningHelper(graph)
    listener = RecordingListener()
    graph.set_listeners(listener)

    frozen_before = graph.layers["fc1"].linear.weight.clone()
    head_before = graph.layers["newpredictions"].linear.weight.clone()

    batches = make_batches(5)
    score = helper.fit_featurized(batches)

    assert score > 0
    assert torch.equal(graph.layers["fc1"].linear.weight, frozen_before)
    assert not torch.equal(graph.layers["newpredictions"].linear.weight, head_before)
    assert graph.iteration_count == 5
    assert graph.epoch_count == 1
    assert [c[0] for c in listener.calls] == [1, 2, 3, 4, 5]
    assert all(c[1] == 0 for c in listener.calls)

    helper.fit_featurized(batches)
    assert graph.epoch_count == 2
    assert listener.calls[-1][:2] == (10, 1)


def test_fit_featurized_reduces_score(tiny_graph, transfer_cfg, make_batches):
    transfer_cfg.update(updater="adam", learning_rate=0.01, dropout=None)
    graph = build_transfer_graph(tiny_graph, transfer_cfg)
    graph.layers["fc2"].dropout = None
    helper = TransferLearningHelper(graph)
    batches = make_batches(2)

    first = helper.fit_featurized(batches)
    for _ in range(30):
        last = helper.fit_featurized(batches)
    assert last < first


def test_optimizer_only_sees_trainable_parameters(tiny_graph, transfer_cfg):
    graph = build_transfer_graph(tiny_graph, transfer_cfg)
    helper = TransferLearningHelper(graph)
    opt = helper.optimizer
    assert opt is graph.optimizer
    n_opt = sum(p.numel() for group in opt.param_groups for p in group["params"])
    assert n_opt == graph.num_params(trainable_only=True) == 16 * 12 + 12 + 12 * 3 + 3
