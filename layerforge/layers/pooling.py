"""Max-pooling layer."""

from __future__ import annotations

from typing import Optional

import torch
import torch.nn.functional as F

from layerforge.core.tensor import Tensor4D
from layerforge.core.types import ForwardContext
from layerforge.layers.base import Layer, LayerBuild
from layerforge.layers.registry import register_layer


@register_layer("maxpool")
class MaxPoolLayer(Layer):
    """
    Max pooling over ``size × size`` windows.

    The arg-max positions are kept from forward so backward can route
    each output delta to the input element that won its window.
    Overlapping windows (stride < size) accumulate.
    """

    def __init__(
        self,
        index: int,
        name: str,
        in_channels: int,
        build: LayerBuild,
        size: int = 2,
        stride: Optional[int] = None,
        padding: int = 0,
    ):
        super().__init__(index, name, in_channels, build)
        stride = size if stride is None else stride
        if size < 1 or stride < 1:
            raise ValueError(f"size and stride must be >= 1, got {size}/{stride}")
        if padding < 0 or padding > size // 2:
            raise ValueError(f"padding must be in [0, {size // 2}], got {padding}")
        self.size = size
        self.stride = stride
        self.padding = padding
        self._indices: Optional[torch.Tensor] = None
        self._input_shape: Optional[torch.Size] = None

    def forward(self, context: ForwardContext, x: Tensor4D) -> Tensor4D:
        inputs = x.nchw().float()
        pooled, indices = F.max_pool2d(
            inputs, self.size, self.stride, self.padding, return_indices=True
        )
        self._indices = indices
        self._input_shape = inputs.shape

        n, c, h, w = pooled.shape
        self._ensure_output(n, c, w, h)
        self.output.write_nchw(pooled)
        return self.output

    def backward(
        self, delta: Optional[Tensor4D], propagate: bool = True
    ) -> Optional[Tensor4D]:
        if self._indices is None:
            raise RuntimeError("backward called before forward")
        if not propagate:
            return None
        d = self._delta_values(delta, self._indices)
        n, c, h, w = self._input_shape
        d_input = torch.zeros(n, c, h * w, device=d.device, dtype=d.dtype)
        d_input.scatter_add_(2, self._indices.reshape(n, c, -1), d.reshape(n, c, -1))
        return self._emit_delta(d_input.view(n, c, h, w))
