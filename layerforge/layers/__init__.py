"""
layerforge.layers — Layer Contract and Reference Layers
========================================================
    - base.py          — Layer base class, LayerBuild, delta convention
    - registry.py      — kind tag → Layer class registry
    - activations.py   — activation functions and derivatives
    - convolutional.py — convolution (+ batch-norm) + activation
    - activation.py    — standalone activation (incl. learnable PReLU)
    - pooling.py       — max pooling
    - detection.py     — anchor-based detection head (loss layer)

Importing this package registers every reference layer kind.
"""

from layerforge.layers.base import Layer, LayerBuild
from layerforge.layers.registry import (
    LAYER_REGISTRY,
    available_kinds,
    create_layer,
    register_layer,
)
from layerforge.layers.convolutional import ConvolutionalLayer
from layerforge.layers.activation import ActivationLayer
from layerforge.layers.pooling import MaxPoolLayer
from layerforge.layers.detection import DetectionLayer
