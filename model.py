import logging
from collections import OrderedDict, deque

import torch
import torch.nn as nn
import torch.nn.functional as F


class GraphConfigurationError(ValueError):
    """Raised when a layer graph is wired inconsistently."""


# --- Activations ---

ACTIVATIONS = {
    "identity": lambda x: x,
    "relu": F.relu,
    "leakyrelu": lambda x: F.leaky_relu(x, negative_slope=0.01),
    "sigmoid": torch.sigmoid,
    "tanh": torch.tanh,
    "softmax": lambda x: F.softmax(x, dim=1),
}

LOSSES = ("negativeloglikelihood", "mcxent", "mse")

# Short names used in graph summaries
PARAM_KEYS = {"weight": "W", "bias": "b"}


def check_activation(name):
    if name is not None and name not in ACTIVATIONS:
        raise ValueError(f"Unsupported activation: {name}")
    return name


def apply_activation(name, x):
    return ACTIVATIONS[name or "identity"](x)


def init_weights(weight: torch.Tensor, scheme: str):
    """Initializes a weight tensor in place."""
    if scheme == "xavier":
        nn.init.xavier_normal_(weight)
    elif scheme == "xavier_uniform":
        nn.init.xavier_uniform_(weight)
    elif scheme == "relu":
        nn.init.kaiming_normal_(weight, nonlinearity="relu")
    elif scheme == "zero":
        nn.init.zeros_(weight)
    else:
        raise ValueError(f"Unsupported weight init: {scheme}")


# --- Layers ---

class Layer(nn.Module):
    """
    Base class for graph vertices. A frozen layer keeps its parameters fixed and
    always runs in inference mode, whatever mode the surrounding graph is in.
    """

    layer_type = "Layer"

    def __init__(self):
        super().__init__()
        self.frozen = False

    def freeze(self):
        self.frozen = True
        for p in self.parameters():
            p.requires_grad_(False)

    def shape_info(self):
        return None, None

    def get_config(self) -> dict:
        return {"type": self.layer_type}


class ParamLayer(Layer):
    """A layer with weights, an activation and optional input dropout."""

    def __init__(self, n_in=None, n_out=None, activation=None, dropout=None, weight_init=None):
        super().__init__()
        self.n_in = n_in
        self.n_out = n_out
        self.activation = check_activation(activation)
        self.dropout = dropout
        self.weight_init = weight_init

    @property
    def is_built(self):
        return self.n_in is not None and self.n_out is not None and self._core() is not None

    def _core(self):
        raise NotImplementedError

    def _build(self):
        raise NotImplementedError

    def reinitialize(self, n_in=None, n_out=None, weight_init=None):
        """Rebuilds the weights, optionally with a new shape or init scheme."""
        if n_in is not None:
            self.n_in = n_in
        if n_out is not None:
            self.n_out = n_out
        if weight_init is not None:
            self.weight_init = weight_init
        if self.n_in is None or self.n_out is None:
            raise GraphConfigurationError(
                f"Cannot initialize {self.layer_type} without nIn and nOut"
            )
        self._build()
        if self.frozen:
            self.freeze()

    def _drop(self, x):
        if self.dropout and not self.frozen:
            return F.dropout(x, p=self.dropout, training=self.training)
        return x

    def preoutput(self, x):
        raise NotImplementedError

    def forward(self, x):
        return apply_activation(self.activation, self.preoutput(x))

    def shape_info(self):
        return self.n_in, self.n_out

    def get_config(self) -> dict:
        return {
            "type": self.layer_type,
            "n_in": self.n_in,
            "n_out": self.n_out,
            "activation": self.activation,
            "dropout": self.dropout,
            "weight_init": self.weight_init,
        }


class DenseLayer(ParamLayer):
    layer_type = "DenseLayer"

    def __init__(self, n_in=None, n_out=None, activation=None, dropout=None, weight_init=None):
        super().__init__(n_in, n_out, activation, dropout, weight_init)
        self.linear = None
        if n_in is not None and n_out is not None:
            self._build()

    def _core(self):
        return self.linear

    def _build(self):
        self.linear = nn.Linear(self.n_in, self.n_out)
        init_weights(self.linear.weight, self.weight_init or "xavier")
        nn.init.zeros_(self.linear.bias)

    def preoutput(self, x):
        return self.linear(self._drop(x))


class OutputLayer(DenseLayer):
    """Dense layer that also knows how to score its output against labels."""

    layer_type = "OutputLayer"

    def __init__(
        self,
        loss="negativeloglikelihood",
        n_in=None,
        n_out=None,
        activation=None,
        dropout=None,
        weight_init=None,
    ):
        if loss not in LOSSES:
            raise ValueError(f"Unsupported loss function: {loss}")
        super().__init__(n_in, n_out, activation, dropout, weight_init)
        self.loss = loss

    def compute_score(self, x, labels):
        """
        Mean loss over the minibatch. Labels may be class indices (N,) or
        one-hot / soft targets (N, C).
        """
        z = self.preoutput(x).float()
        if self.loss in ("negativeloglikelihood", "mcxent"):
            if (self.activation or "identity") == "softmax":
                log_probs = F.log_softmax(z, dim=1)
            else:
                log_probs = torch.log(apply_activation(self.activation, z).clamp_min(1e-10))
            if labels.dim() == 1:
                return F.nll_loss(log_probs, labels.long())
            return -(labels.float() * log_probs).sum(dim=1).mean()

        out = apply_activation(self.activation, z)
        if labels.dim() == 1:
            labels = F.one_hot(labels.long(), num_classes=self.n_out)
        return F.mse_loss(out, labels.float())

    def get_config(self) -> dict:
        cfg = super().get_config()
        cfg["loss"] = self.loss
        return cfg


class ConvolutionLayer(ParamLayer):
    layer_type = "ConvolutionLayer"

    def __init__(
        self,
        n_in=None,
        n_out=None,
        kernel_size=3,
        stride=1,
        padding=0,
        activation=None,
        dropout=None,
        weight_init=None,
    ):
        super().__init__(n_in, n_out, activation, dropout, weight_init)
        self.kernel_size = kernel_size
        self.stride = stride
        self.padding = padding
        self.conv = None
        if n_in is not None and n_out is not None:
            self._build()

    def _core(self):
        return self.conv

    def _build(self):
        self.conv = nn.Conv2d(
            self.n_in,
            self.n_out,
            kernel_size=self.kernel_size,
            stride=self.stride,
            padding=self.padding,
        )
        init_weights(self.conv.weight, self.weight_init or "relu")
        nn.init.zeros_(self.conv.bias)

    def preoutput(self, x):
        return self.conv(self._drop(x))

    def get_config(self) -> dict:
        cfg = super().get_config()
        cfg.update(kernel_size=self.kernel_size, stride=self.stride, padding=self.padding)
        return cfg


class SubsamplingLayer(Layer):
    layer_type = "SubsamplingLayer"

    def __init__(self, pooling="max", kernel_size=2, stride=2, padding=0):
        super().__init__()
        if pooling not in ("max", "avg"):
            raise ValueError(f"Unsupported pooling type: {pooling}")
        self.pooling = pooling
        self.kernel_size = kernel_size
        self.stride = stride
        self.padding = padding

    def forward(self, x):
        if self.pooling == "max":
            return F.max_pool2d(x, self.kernel_size, self.stride, self.padding)
        return F.avg_pool2d(x, self.kernel_size, self.stride, self.padding)

    def get_config(self) -> dict:
        return {
            "type": self.layer_type,
            "pooling": self.pooling,
            "kernel_size": self.kernel_size,
            "stride": self.stride,
            "padding": self.padding,
        }


class AdaptivePoolingLayer(Layer):
    layer_type = "AdaptivePoolingLayer"

    def __init__(self, pooling="avg", output_size=(7, 7)):
        super().__init__()
        if pooling not in ("max", "avg"):
            raise ValueError(f"Unsupported pooling type: {pooling}")
        self.pooling = pooling
        self.output_size = tuple(output_size)

    def forward(self, x):
        if self.pooling == "max":
            return F.adaptive_max_pool2d(x, self.output_size)
        return F.adaptive_avg_pool2d(x, self.output_size)

    def get_config(self) -> dict:
        return {
            "type": self.layer_type,
            "pooling": self.pooling,
            "output_size": list(self.output_size),
        }


class FlattenLayer(Layer):
    layer_type = "FlattenLayer"

    def forward(self, x):
        return torch.flatten(x, 1)


LAYER_TYPES = {
    cls.layer_type: cls
    for cls in (
        DenseLayer,
        OutputLayer,
        ConvolutionLayer,
        SubsamplingLayer,
        AdaptivePoolingLayer,
        FlattenLayer,
    )
}


def layer_from_config(cfg: dict) -> Layer:
    cfg = dict(cfg)
    layer_type = cfg.pop("type")
    if layer_type not in LAYER_TYPES:
        raise ValueError(f"Unknown layer type: {layer_type}")
    return LAYER_TYPES[layer_type](**cfg)


# --- Graph ---

class LayerGraph(nn.Module):
    """
    A directed acyclic graph of named layers.

    `vertices` maps a vertex name to `(layer, [input names])`, where each input
    is either a graph input or another vertex. Vertices with several inputs get
    them concatenated along dimension 1.
    """

    def __init__(self, inputs, vertices, outputs):
        super().__init__()
        self.inputs = list(inputs)
        self.layers = nn.ModuleDict()
        self.vertex_inputs = OrderedDict()

        if len(set(self.inputs)) != len(self.inputs):
            raise GraphConfigurationError(f"Duplicate graph inputs: {self.inputs}")

        for name, (layer, layer_inputs) in vertices.items():
            if name in self.inputs:
                raise GraphConfigurationError(f"Vertex '{name}' clashes with a graph input")
            if "." in name or not name:
                raise GraphConfigurationError(f"Invalid vertex name: '{name}'")
            if not layer_inputs:
                raise GraphConfigurationError(f"Vertex '{name}' has no inputs")
            if isinstance(layer, ParamLayer) and not layer.is_built:
                raise GraphConfigurationError(
                    f"Layer '{name}' has no weights (nIn={layer.n_in}, nOut={layer.n_out})"
                )
            self.layers[name] = layer
            self.vertex_inputs[name] = list(layer_inputs)

        known = set(self.inputs) | set(self.vertex_inputs)
        for name, layer_inputs in self.vertex_inputs.items():
            for src in layer_inputs:
                if src not in known:
                    raise GraphConfigurationError(
                        f"Vertex '{name}' has unknown input '{src}'"
                    )

        self.outputs = list(outputs)
        if not self.outputs:
            raise GraphConfigurationError("Graph has no outputs")
        for name in self.outputs:
            if name not in self.vertex_inputs:
                raise GraphConfigurationError(f"Unknown output vertex '{name}'")

        self.topological_order = self._topological_sort()
        self.listeners = []
        self.iteration_count = 0
        self.epoch_count = 0
        self.fine_tune = None
        self.optimizer = None

    def _topological_sort(self):
        in_degree = {name: 0 for name in self.vertex_inputs}
        for name, layer_inputs in self.vertex_inputs.items():
            in_degree[name] = sum(1 for src in layer_inputs if src in self.vertex_inputs)

        queue = deque(name for name, deg in in_degree.items() if deg == 0)
        order = []
        while queue:
            name = queue.popleft()
            order.append(name)
            for consumer in self.consumers(name):
                in_degree[consumer] -= 1
                if in_degree[consumer] == 0:
                    queue.append(consumer)

        if len(order) != len(self.vertex_inputs):
            cyclic = sorted(set(self.vertex_inputs) - set(order))
            raise GraphConfigurationError(f"Graph contains a cycle through {cyclic}")
        return order

    # --- Structure ---

    def consumers(self, name):
        """Vertices that take `name` as an input, in insertion order."""
        return [v for v, srcs in self.vertex_inputs.items() if name in srcs]

    def ancestors(self, name):
        """All vertices upstream of `name` (graph inputs excluded)."""
        seen = set()
        stack = list(self.vertex_inputs[name])
        while stack:
            src = stack.pop()
            if src in seen or src not in self.vertex_inputs:
                continue
            seen.add(src)
            stack.extend(self.vertex_inputs[src])
        return seen

    def freeze(self, names):
        for name in names:
            self.layers[name].freeze()

    @property
    def frozen_vertices(self):
        return [name for name in self.topological_order if self.layers[name].frozen]

    def trainable_parameters(self):
        return [p for p in self.parameters() if p.requires_grad]

    def num_params(self, trainable_only=False):
        params = self.trainable_parameters() if trainable_only else self.parameters()
        return sum(p.numel() for p in params)

    def set_listeners(self, *listeners):
        self.listeners = list(listeners)

    # --- Forward ---

    def _gather(self, acts, name):
        srcs = self.vertex_inputs[name]
        if len(srcs) == 1:
            return acts[srcs[0]]
        return torch.cat([acts[src] for src in srcs], dim=1)

    def feed_forward(self, *features, only=None):
        """
        Runs the vertices and returns a dict of activations keyed by name.
        `only` restricts the pass to a subset of vertices (which must be
        closed under their inputs).
        """
        if len(features) != len(self.inputs):
            raise ValueError(
                f"Graph expects {len(self.inputs)} input(s) {self.inputs}, got {len(features)}"
            )
        acts = dict(zip(self.inputs, features))
        for name in self.topological_order:
            if only is not None and name not in only:
                continue
            layer = self.layers[name]
            x = self._gather(acts, name)
            if layer.frozen:
                with torch.no_grad():
                    acts[name] = layer(x)
            else:
                acts[name] = layer(x)
        return acts

    def output(self, *features, train=False):
        """Returns the list of graph outputs, in `self.outputs` order."""
        was_training = self.training
        self.train(train)
        try:
            with torch.set_grad_enabled(train and torch.is_grad_enabled()):
                acts = self.feed_forward(*features)
        finally:
            self.train(was_training)
        return [acts[name] for name in self.outputs]

    def forward(self, *features):
        acts = self.feed_forward(*features)
        outs = [acts[name] for name in self.outputs]
        return outs[0] if len(outs) == 1 else outs

    def score(self, features, labels):
        """Sum of the output layers' losses on one minibatch."""
        if torch.is_tensor(features):
            features = [features]
        if torch.is_tensor(labels):
            labels = [labels]
        if len(labels) != len(self.outputs):
            raise ValueError(f"Expected {len(self.outputs)} label array(s), got {len(labels)}")

        acts = self.feed_forward(*features)
        total = 0.0
        for name, y in zip(self.outputs, labels):
            layer = self.layers[name]
            if not isinstance(layer, OutputLayer):
                raise GraphConfigurationError(f"Output vertex '{name}' is not an OutputLayer")
            total = total + layer.compute_score(self._gather(acts, name), y)
        return total

    # --- Reporting ---

    def summary(self) -> str:
        header = ("VertexName (VertexType)", "nIn,nOut", "TotalParams", "ParamsShape", "Vertex Inputs")
        rows = []
        for name in self.inputs:
            rows.append((f"{name} (InputVertex)", "-,-", "-", "-", "-"))
        for name in self.topological_order:
            layer = self.layers[name]
            vertex_type = f"Frozen {layer.layer_type}" if layer.frozen else layer.layer_type
            n_in, n_out = layer.shape_info()
            if n_in is None and n_out is None:
                in_out = "-,-"
            else:
                in_out = f"{n_in},{n_out}"
            n_params = sum(p.numel() for p in layer.parameters())
            shapes = ", ".join(
                f"{PARAM_KEYS.get(pname.split('.')[-1], pname)}:{{{','.join(str(d) for d in p.shape)}}}"
                for pname, p in layer.named_parameters()
            )
            rows.append(
                (
                    f"{name} ({vertex_type})",
                    in_out,
                    str(n_params) if n_params else "-",
                    shapes or "-",
                    str(self.vertex_inputs[name]),
                )
            )

        widths = [max(len(r[i]) for r in rows + [header]) + 2 for i in range(len(header))]
        rule = "=" * sum(widths)
        lines = [rule, "".join(h.ljust(w) for h, w in zip(header, widths)), rule]
        lines += ["".join(c.ljust(w) for c, w in zip(r, widths)).rstrip() for r in rows]
        lines.append("-" * sum(widths))
        total = self.num_params()
        trainable = self.num_params(trainable_only=True)
        lines.append(f"            Total Parameters:  {total}")
        lines.append(f"        Trainable Parameters:  {trainable}")
        lines.append(f"           Frozen Parameters:  {total - trainable}")
        lines.append(rule)
        return "\n".join(lines)

    # --- Configuration ---

    def get_config(self) -> dict:
        return {
            "inputs": list(self.inputs),
            "vertices": [
                {
                    "name": name,
                    "inputs": list(self.vertex_inputs[name]),
                    "layer": self.layers[name].get_config(),
                    "frozen": self.layers[name].frozen,
                }
                for name in self.vertex_inputs
            ],
            "outputs": list(self.outputs),
            "iteration_count": self.iteration_count,
            "epoch_count": self.epoch_count,
        }

    @classmethod
    def from_config(cls, cfg: dict) -> "LayerGraph":
        vertices = OrderedDict()
        frozen = []
        for vertex in cfg["vertices"]:
            vertices[vertex["name"]] = (layer_from_config(vertex["layer"]), vertex["inputs"])
            if vertex.get("frozen"):
                frozen.append(vertex["name"])
        graph = cls(cfg["inputs"], vertices, cfg["outputs"])
        graph.freeze(frozen)
        graph.iteration_count = cfg.get("iteration_count", 0)
        graph.epoch_count = cfg.get("epoch_count", 0)
        logging.debug(f"Restored graph with {len(vertices)} vertices ({len(frozen)} frozen).")
        return graph
