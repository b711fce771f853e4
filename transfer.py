import copy
import logging
from collections import OrderedDict

import torch
import torch.optim as optim
from tqdm import tqdm

import config
from model import GraphConfigurationError, LayerGraph, OutputLayer, ParamLayer, check_activation

UPDATERS = ("sgd", "nesterovs", "adam", "rmsprop")


class FineTuneConfiguration:
    """
    Training settings for every layer that is not frozen. Existing layers get
    them unconditionally; newly added layers only inherit the ones they leave
    unset, so e.g. an explicit softmax on a new output layer is kept.
    """

    def __init__(
        self,
        activation=None,
        learning_rate=1e-3,
        updater="sgd",
        momentum=0.9,
        dropout=None,
        l2=None,
        seed=None,
        weight_init=None,
        gradient_clip=None,
    ):
        if updater.lower() not in UPDATERS:
            raise ValueError(f"Unsupported updater: {updater}")
        self.activation = check_activation(activation)
        self.learning_rate = learning_rate
        self.updater = updater.lower()
        self.momentum = momentum
        self.dropout = dropout
        self.l2 = l2
        self.seed = seed
        self.weight_init = weight_init
        self.gradient_clip = gradient_clip

    @classmethod
    def from_config(cls, cfg: dict) -> "FineTuneConfiguration":
        return cls(
            activation=cfg.get("activation"),
            learning_rate=cfg["learning_rate"],
            updater=cfg.get("updater", "sgd"),
            momentum=cfg.get("momentum", 0.9),
            dropout=cfg.get("dropout"),
            l2=cfg.get("l2"),
            seed=cfg.get("seed"),
            weight_init=cfg.get("weight_init"),
            gradient_clip=cfg.get("gradient_clip"),
        )

    def get_config(self) -> dict:
        return dict(vars(self))

    def apply_to(self, layer, override=True):
        if not isinstance(layer, ParamLayer):
            return
        for attr in ("activation", "dropout", "weight_init"):
            value = getattr(self, attr)
            if value is None:
                continue
            if override or getattr(layer, attr) is None:
                setattr(layer, attr, value)

    def create_optimizer(self, params):
        weight_decay = self.l2 or 0.0
        if self.updater == "sgd":
            return optim.SGD(params, lr=self.learning_rate, weight_decay=weight_decay)
        if self.updater == "nesterovs":
            return optim.SGD(
                params,
                lr=self.learning_rate,
                momentum=self.momentum,
                nesterov=True,
                weight_decay=weight_decay,
            )
        if self.updater == "adam":
            return optim.Adam(params, lr=self.learning_rate, weight_decay=weight_decay)
        return optim.RMSprop(params, lr=self.learning_rate, weight_decay=weight_decay)


def _detached_copy(graph: LayerGraph) -> LayerGraph:
    """Deep copy of a graph without its listeners or optimizer."""
    listeners, optimizer = graph.listeners, graph.optimizer
    graph.listeners, graph.optimizer = [], None
    try:
        return copy.deepcopy(graph)
    finally:
        graph.listeners, graph.optimizer = listeners, optimizer


class GraphBuilder:
    """
    Edits a copy of an existing LayerGraph: freezing a feature extractor,
    resizing, removing and adding vertices. Nothing is applied to the copy's
    weights until build().
    """

    def __init__(self, graph: LayerGraph):
        source = _detached_copy(graph)
        self._inputs = list(source.inputs)
        self._vertices = OrderedDict(
            (name, (source.layers[name], list(source.vertex_inputs[name])))
            for name in source.vertex_inputs
        )
        self._outputs = list(source.outputs)
        self._frozen = set(source.frozen_vertices)
        self._feature_extractors = []
        self._reinit = {}
        self._added = []
        self._fine_tune = None

    def _require(self, name):
        if name not in self._vertices:
            raise GraphConfigurationError(f"No vertex named '{name}' in graph")

    def _consumers(self, name):
        return [v for v, (_, srcs) in self._vertices.items() if name in srcs]

    def _ancestors(self, name):
        seen = set()
        stack = list(self._vertices[name][1])
        while stack:
            src = stack.pop()
            if src in seen or src not in self._vertices:
                continue
            seen.add(src)
            stack.extend(self._vertices[src][1])
        return seen

    def fine_tune_configuration(self, conf: FineTuneConfiguration):
        self._fine_tune = conf
        return self

    def set_feature_extractor(self, *names):
        """Freezes the named vertices and everything upstream of them."""
        for name in names:
            self._require(name)
        self._feature_extractors.extend(names)
        return self

    def n_out_replace(self, name, n_out, weight_init="xavier"):
        """
        Changes the output size of a layer. The layer and every layer reading
        from it are re-initialized with `weight_init`.
        """
        self._require(name)
        layer = self._vertices[name][0]
        if not isinstance(layer, ParamLayer):
            raise GraphConfigurationError(f"Vertex '{name}' has no weights to resize")
        self._reinit.setdefault(name, {}).update(n_out=n_out, weight_init=weight_init)
        for consumer in self._consumers(name):
            if isinstance(self._vertices[consumer][0], ParamLayer):
                entry = self._reinit.setdefault(consumer, {})
                entry["n_in"] = n_out
                entry.setdefault("weight_init", weight_init)
        return self

    def remove_vertex_and_connections(self, name):
        self._require(name)
        del self._vertices[name]
        for _, srcs in self._vertices.values():
            while name in srcs:
                srcs.remove(name)
        self._outputs = [o for o in self._outputs if o != name]
        self._feature_extractors = [f for f in self._feature_extractors if f != name]
        self._frozen.discard(name)
        self._reinit.pop(name, None)
        if name in self._added:
            self._added.remove(name)
        return self

    def add_layer(self, name, layer, *inputs):
        if name in self._vertices or name in self._inputs:
            raise GraphConfigurationError(f"Vertex '{name}' already exists")
        if not inputs:
            raise GraphConfigurationError(f"Layer '{name}' needs at least one input")
        self._vertices[name] = (layer, list(inputs))
        self._added.append(name)
        return self

    def set_outputs(self, *names):
        self._outputs = list(names)
        return self

    def _input_size(self, name):
        """Sum of the nOut of a vertex's inputs, or None when it cannot be known."""
        total = 0
        for src in self._vertices[name][1]:
            if src not in self._vertices:
                return None
            src_layer = self._vertices[src][0]
            if not isinstance(src_layer, ParamLayer):
                return None
            total += src_layer.n_out
        return total

    def build(self) -> LayerGraph:
        frozen = set(self._frozen)
        for name in self._feature_extractors:
            frozen.add(name)
            frozen |= self._ancestors(name)

        for name in self._reinit:
            if name in frozen:
                raise GraphConfigurationError(f"Cannot modify frozen layer '{name}'")

        conf = self._fine_tune
        if conf is not None and conf.seed is not None:
            torch.manual_seed(conf.seed)

        for name, (layer, _) in self._vertices.items():
            if name in frozen or conf is None:
                continue
            conf.apply_to(layer, override=name not in self._added)

        for name, (layer, _) in self._vertices.items():
            if name in self._reinit:
                logging.debug(f"Re-initializing '{name}' with {self._reinit[name]}")
                layer.reinitialize(**self._reinit[name])
            elif name in self._added and isinstance(layer, ParamLayer):
                if layer.n_in is None:
                    layer.n_in = self._input_size(name)
                    if layer.n_in is None:
                        raise GraphConfigurationError(
                            f"Cannot infer nIn for '{name}'; set it explicitly"
                        )
                layer.reinitialize()

        for name, (layer, _) in self._vertices.items():
            if name in frozen or not isinstance(layer, ParamLayer):
                continue
            expected = self._input_size(name)
            if expected is not None and expected != layer.n_in:
                raise GraphConfigurationError(
                    f"Layer '{name}' has nIn={layer.n_in} but its inputs provide {expected}"
                )

        graph = LayerGraph(self._inputs, self._vertices, self._outputs)
        graph.freeze(frozen)
        graph.fine_tune = conf
        return graph


class TransferLearningHelper:
    """
    Splits a graph at its frozen boundary so the frozen part can be run once
    to featurize data, and the unfrozen part trained on those features.
    The unfrozen graph shares its layers with the full graph.
    """

    def __init__(self, graph: LayerGraph, device=None):
        self.graph = graph
        frozen = set(graph.frozen_vertices)
        if not frozen:
            raise GraphConfigurationError("Graph has no frozen vertices; nothing to featurize.")
        for name in graph.outputs:
            if name in frozen:
                raise GraphConfigurationError(f"Output vertex '{name}' is frozen")

        unfrozen = [n for n in graph.topological_order if n not in frozen]
        self.frozen_vertices = frozen
        self.boundary = []
        for name in list(graph.inputs) + graph.topological_order:
            if name in unfrozen:
                continue
            if any(c not in frozen for c in graph.consumers(name)):
                self.boundary.append(name)

        self._unfrozen = LayerGraph(
            self.boundary,
            OrderedDict((n, (graph.layers[n], graph.vertex_inputs[n])) for n in unfrozen),
            graph.outputs,
        )
        if device is None:
            device = next(graph.parameters()).device.type
        self.device = device
        self.scaler = torch.amp.GradScaler("cuda", enabled=(device == "cuda"))
        logging.info(
            f"Transfer helper: {len(frozen)} frozen vertices, featurizing at {self.boundary}"
        )

    def unfrozen_graph(self) -> LayerGraph:
        return self._unfrozen

    @property
    def optimizer(self):
        if self.graph.optimizer is None:
            conf = self.graph.fine_tune or FineTuneConfiguration()
            self.graph.optimizer = conf.create_optimizer(self.graph.trainable_parameters())
        return self.graph.optimizer

    def featurize(self, *inputs):
        """Runs the frozen part of the graph and returns the boundary activations."""
        was_training = self.graph.training
        self.graph.eval()
        try:
            with torch.no_grad():
                acts = self.graph.feed_forward(*inputs, only=self.frozen_vertices)
        finally:
            self.graph.train(was_training)
        feats = [acts[name] for name in self.boundary]
        return feats[0] if len(feats) == 1 else feats

    def output_from_featurized(self, *features):
        return self._unfrozen.output(*features, train=False)

    def _to_device(self, value):
        if isinstance(value, (list, tuple)):
            return [v.to(self.device) for v in value]
        return value.to(self.device)

    def fit_featurized(self, loader) -> float:
        """
        One pass over a loader of featurized minibatches (dicts with
        "features" and "labels"). Returns the mean score.
        """
        graph = self.graph
        optimizer = self.optimizer
        conf = graph.fine_tune
        self._unfrozen.train()

        total_score, n_batches = 0.0, 0
        loop = tqdm(loader, desc=f"Epoch {graph.epoch_count}", leave=False)
        for batch in loop:
            features = self._to_device(batch["features"])
            labels = self._to_device(batch["labels"])
            if torch.is_tensor(features):
                features = [features]

            if config.DEBUG_MODE and n_batches == 0:
                logging.debug(f"First batch: features {[f.shape for f in features]}")

            with torch.amp.autocast("cuda", enabled=(self.device == "cuda")):
                loss = self._unfrozen.score(features, labels)

            optimizer.zero_grad()
            self.scaler.scale(loss).backward()
            if conf is not None and conf.gradient_clip:
                self.scaler.unscale_(optimizer)
                torch.nn.utils.clip_grad_norm_(graph.trainable_parameters(), max_norm=conf.gradient_clip)
            self.scaler.step(optimizer)
            self.scaler.update()

            score = loss.item()
            graph.iteration_count += 1
            for listener in graph.listeners:
                listener.iteration_done(graph, graph.iteration_count, graph.epoch_count, score)

            total_score += score
            n_batches += 1
            loop.set_postfix(score=score)

        graph.epoch_count += 1
        return total_score / max(n_batches, 1)


def build_transfer_graph(base_graph: LayerGraph, cfg: dict) -> LayerGraph:
    """
    Freezes `feature_extractor` and below, resizes `replace_layer`, drops the
    old classifier and puts a new softmax output of `num_classes` on top.
    Featurized data must be produced with the same settings.
    """
    fine_tune = FineTuneConfiguration.from_config(cfg)
    output_layer = OutputLayer(
        loss="negativeloglikelihood",
        activation="softmax",
        n_in=cfg["replace_n_out"],
        n_out=cfg["num_classes"],
    )
    return (
        GraphBuilder(base_graph)
        .fine_tune_configuration(fine_tune)
        .set_feature_extractor(cfg["feature_extractor"])
        .n_out_replace(cfg["replace_layer"], cfg["replace_n_out"], cfg["replace_weight_init"])
        .remove_vertex_and_connections(cfg["remove_vertex"])
        .add_layer(cfg["output_name"], output_layer, cfg["replace_layer"])
        .set_outputs(cfg["output_name"])
        .build()
    )
