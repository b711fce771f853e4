import logging
from collections import OrderedDict
from enum import Enum

import torch
import torch.nn as nn
import torchvision.models as tv_models

from model import (
    AdaptivePoolingLayer,
    ConvolutionLayer,
    DenseLayer,
    FlattenLayer,
    LayerGraph,
    OutputLayer,
    SubsamplingLayer,
)


class PretrainedModel(str, Enum):
    VGG16 = "vgg16"
    VGG19 = "vgg19"


def load_pretrained(name: str = "vgg16", weights="DEFAULT") -> LayerGraph:
    """
    Builds a torchvision model with the requested weights and converts it into
    a LayerGraph. `weights=None` gives a randomly initialized network.
    """
    try:
        model_id = PretrainedModel(str(name).lower())
    except ValueError:
        choices = ", ".join(m.value for m in PretrainedModel)
        raise ValueError(f"Unsupported pretrained model: {name}. Choose one of: {choices}")

    logging.info(f"Loading {model_id.value} (weights={weights})...")
    tv_model = tv_models.get_model(model_id.value, weights=weights)
    graph = graph_from_vgg(tv_model)
    logging.info(f"Imported {model_id.value}: {graph.num_params()} parameters.")
    return graph


def _copy_params(dst: nn.Module, src: nn.Module):
    with torch.no_grad():
        dst.weight.copy_(src.weight)
        if src.bias is not None:
            dst.bias.copy_(src.bias)
        else:
            dst.bias.zero_()


def _pair(value):
    if isinstance(value, int):
        return (value, value)
    return tuple(value)


def graph_from_vgg(tv_model: nn.Module, input_name: str = "input_1") -> LayerGraph:
    """
    Converts a torchvision VGG network into a LayerGraph using Keras vertex
    names (block1_conv1 ... block5_pool, flatten, fc1, fc2, predictions).

    ReLU modules become the activation of the preceding layer and Dropout
    modules become the input dropout of the following layer. The last Linear
    turns into a softmax output layer.
    """
    for attr in ("features", "avgpool", "classifier"):
        if not hasattr(tv_model, attr):
            raise ValueError(f"Model has no '{attr}' module; not a VGG network.")

    vertices = OrderedDict()
    prev = input_name
    block, conv_idx = 1, 0
    last_layer = None

    for module in tv_model.features:
        if isinstance(module, nn.Conv2d):
            conv_idx += 1
            name = f"block{block}_conv{conv_idx}"
            layer = ConvolutionLayer(
                n_in=module.in_channels,
                n_out=module.out_channels,
                kernel_size=_pair(module.kernel_size),
                stride=_pair(module.stride),
                padding=_pair(module.padding),
                activation="identity",
            )
            _copy_params(layer.conv, module)
            vertices[name] = (layer, [prev])
            prev, last_layer = name, layer
        elif isinstance(module, nn.ReLU):
            if last_layer is None:
                raise ValueError("ReLU without a preceding convolution in VGG features.")
            last_layer.activation = "relu"
        elif isinstance(module, nn.MaxPool2d):
            name = f"block{block}_pool"
            vertices[name] = (
                SubsamplingLayer("max", module.kernel_size, module.stride, module.padding),
                [prev],
            )
            prev, last_layer = name, None
            block, conv_idx = block + 1, 0
        else:
            raise ValueError(f"Unsupported module in VGG features: {type(module).__name__}")

    if isinstance(tv_model.avgpool, nn.AdaptiveAvgPool2d):
        vertices["avgpool"] = (
            AdaptivePoolingLayer("avg", _pair(tv_model.avgpool.output_size)),
            [prev],
        )
        prev = "avgpool"

    vertices["flatten"] = (FlattenLayer(), [prev])
    prev = "flatten"

    linears = [m for m in tv_model.classifier if isinstance(m, nn.Linear)]
    if not linears:
        raise ValueError("VGG classifier has no Linear layers.")

    fc_idx = 0
    pending_dropout = None
    for module in tv_model.classifier:
        if isinstance(module, nn.Linear):
            if module is linears[-1]:
                name = "predictions"
                layer = OutputLayer(
                    loss="negativeloglikelihood",
                    n_in=module.in_features,
                    n_out=module.out_features,
                    activation="softmax",
                    dropout=pending_dropout,
                )
            else:
                fc_idx += 1
                name = f"fc{fc_idx}"
                layer = DenseLayer(
                    n_in=module.in_features,
                    n_out=module.out_features,
                    activation="identity",
                    dropout=pending_dropout,
                )
            _copy_params(layer.linear, module)
            vertices[name] = (layer, [prev])
            prev, last_layer, pending_dropout = name, layer, None
        elif isinstance(module, nn.ReLU):
            last_layer.activation = "relu"
        elif isinstance(module, nn.Dropout):
            pending_dropout = module.p
        else:
            raise ValueError(f"Unsupported module in VGG classifier: {type(module).__name__}")

    return LayerGraph([input_name], vertices, ["predictions"])
