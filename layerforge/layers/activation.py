"""
Standalone activation layer.

Supports the fixed activations in :mod:`layerforge.layers.activations`
plus ``prelu``, whose per-channel negative slope is learned and belongs
to the "activation" freeze group.
"""

from __future__ import annotations

from typing import Optional

import torch

from layerforge.core.tensor import Tensor4D
from layerforge.core.types import ForwardContext
from layerforge.layers.activations import activate, check_activation, gradient
from layerforge.layers.base import Layer, LayerBuild
from layerforge.layers.registry import register_layer

PRELU_INIT = 0.25


@register_layer("activation")
class ActivationLayer(Layer):
    """
    Element-wise activation; output shape equals input shape.

    Parameters
    ----------
    activation : str or None
        ``prelu`` or one of the fixed activations; None uses the
        network default.
    """

    def __init__(
        self,
        index: int,
        name: str,
        in_channels: int,
        build: LayerBuild,
        activation: Optional[str] = None,
    ):
        super().__init__(index, name, in_channels, build)
        activation = activation or build.default_activation
        self.activation = activation if activation == "prelu" else check_activation(activation)
        if self.activation == "prelu":
            self.slopes = self.register_parameter(
                "slopes", torch.full((in_channels,), PRELU_INIT), "activation"
            )
        self._inputs: Optional[torch.Tensor] = None
        self._activated: Optional[torch.Tensor] = None

    def forward(self, context: ForwardContext, x: Tensor4D) -> Tensor4D:
        if x.channels != self.in_channels:
            raise ValueError(
                f"expected {self.in_channels} input channels, got {x.channels}"
            )
        self._capture_freeze_flags(context)
        inputs = x.nchw().float()
        if self.activation == "prelu":
            slopes = self.slopes.view(1, -1, 1, 1)
            activated = torch.where(inputs > 0, inputs, inputs * slopes)
        else:
            activated = activate(self.activation, inputs)
        self._inputs = inputs
        self._activated = activated

        n, c, h, w = inputs.shape
        self._ensure_output(n, c, w, h)
        self.output.write_nchw(activated)
        return self.output

    def backward(
        self, delta: Optional[Tensor4D], propagate: bool = True
    ) -> Optional[Tensor4D]:
        if self._activated is None:
            raise RuntimeError("backward called before forward")
        d = self._delta_values(delta, self._activated)

        if self.activation == "prelu":
            negative = self._inputs <= 0
            self.accumulate(
                "slopes", (d * self._inputs * negative).sum(dim=(0, 2, 3))
            )
            local = torch.where(
                negative, self.slopes.view(1, -1, 1, 1).expand_as(d), torch.ones_like(d)
            )
        else:
            local = gradient(self.activation, self._activated)

        if not propagate:
            return None
        return self._emit_delta(d * local)
