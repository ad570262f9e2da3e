"""
LayerForge Convolutional Layer
===============================
2-D convolution with optional batch normalization and a fused activation,
computed as im2col + GEMM.

Data flow (forward):
    x ─► unfold (im2col) ─► GEMM with weights ─► [batch-norm] ─► + bias
      ─► activation ─► output

    The GEMM result is staged in the graph's shared workspace, since it
    is only needed until batch-norm/bias produce the next tensor. The
    input-delta GEMM in backward uses the workspace the same way.

Parameters (freeze group in brackets):
    weights  (filters, channels, size, size)   [conv]  decayed
    biases   (filters,)                        [conv], or [bn] with batch-norm
    scales   (filters,)                        [bn]    batch-norm only
    rolling_mean / rolling_variance            buffers, batch-norm only
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import torch
import torch.nn.functional as F

from layerforge.core.tensor import Tensor4D
from layerforge.core.types import ForwardContext
from layerforge.layers.activations import activate, check_activation, gradient
from layerforge.layers.base import Layer, LayerBuild
from layerforge.layers.registry import register_layer

logger = logging.getLogger(__name__)

BN_EPSILON = 1e-5
ROLLING_MOMENTUM = 0.01


@register_layer("convolutional")
class ConvolutionalLayer(Layer):
    """
    Convolution (+ batch-norm) + activation.

    Parameters
    ----------
    filters : int
        Output channels.
    size : int
        Square kernel size.
    stride : int
        Convolution stride.
    pad : bool
        Pad by ``size // 2`` on every side ("same" padding for stride 1).
    batch_normalize : bool
        Normalize the GEMM output with batch statistics (training) or
        rolling statistics (inference).
    activation : str or None
        Activation name; None uses the network default.
    """

    def __init__(
        self,
        index: int,
        name: str,
        in_channels: int,
        build: LayerBuild,
        filters: int = 1,
        size: int = 1,
        stride: int = 1,
        pad: bool = True,
        batch_normalize: bool = False,
        activation: Optional[str] = None,
    ):
        super().__init__(index, name, in_channels, build)
        if filters < 1:
            raise ValueError(f"filters must be >= 1, got {filters}")
        if size < 1 or stride < 1:
            raise ValueError(f"size and stride must be >= 1, got {size}/{stride}")

        self.filters = filters
        self.size = size
        self.stride = stride
        self.padding = size // 2 if pad else 0
        self.batch_normalize = bool(batch_normalize)
        self.activation = check_activation(activation or build.default_activation)
        self.out_channels = filters

        fan_in = in_channels * size * size
        scale = math.sqrt(2.0 / fan_in)
        weights = torch.empty(filters, in_channels, size, size)
        weights = weights.uniform_(-1, 1, generator=build.generator) * scale
        self.weights = self.register_parameter("weights", weights, "conv", decay=True)

        bias_group = "bn" if self.batch_normalize else "conv"
        self.biases = self.register_parameter("biases", torch.zeros(filters), bias_group)
        if self.batch_normalize:
            self.scales = self.register_parameter("scales", torch.ones(filters), "bn")
            self.rolling_mean = self.register_buffer("rolling_mean", torch.zeros(filters))
            self.rolling_variance = self.register_buffer(
                "rolling_variance", torch.ones(filters)
            )

        # Saved by forward for backward
        self._input: Optional[Tensor4D] = None
        self._activated: Optional[torch.Tensor] = None
        self._xhat: Optional[torch.Tensor] = None
        self._inv_std: Optional[torch.Tensor] = None
        self._batch_stats = False
        self._workspace = None

    def output_size(self, height: int, width: int) -> tuple[int, int]:
        out_h = (height + 2 * self.padding - self.size) // self.stride + 1
        out_w = (width + 2 * self.padding - self.size) // self.stride + 1
        return out_h, out_w

    def _unfold(self, x: torch.Tensor) -> torch.Tensor:
        return F.unfold(x, self.size, padding=self.padding, stride=self.stride)

    def forward(self, context: ForwardContext, x: Tensor4D) -> Tensor4D:
        if x.channels != self.in_channels:
            raise ValueError(
                f"expected {self.in_channels} input channels, got {x.channels}"
            )
        self._capture_freeze_flags(context)
        self._workspace = context.workspace

        inputs = x.nchw().float()
        n, _, h, w = inputs.shape
        out_h, out_w = self.output_size(h, w)
        if out_h < 1 or out_w < 1:
            raise ValueError(
                f"input {w}x{h} too small for kernel {self.size}, "
                f"stride {self.stride}"
            )

        cols = self._unfold(inputs)
        weights_2d = self.weights.view(self.filters, -1)
        gemm = context.workspace.request((n, self.filters, out_h * out_w))
        torch.bmm(weights_2d.expand(n, -1, -1), cols, out=gemm)
        z = gemm.view(n, self.filters, out_h, out_w)

        if self.batch_normalize:
            if context.training:
                mean = z.mean(dim=(0, 2, 3))
                var = z.var(dim=(0, 2, 3), unbiased=False)
                if not context.freeze_bn:
                    self.rolling_mean.mul_(1 - ROLLING_MOMENTUM).add_(mean, alpha=ROLLING_MOMENTUM)
                    self.rolling_variance.mul_(1 - ROLLING_MOMENTUM).add_(var, alpha=ROLLING_MOMENTUM)
            else:
                mean, var = self.rolling_mean, self.rolling_variance
            inv_std = torch.rsqrt(var + BN_EPSILON)
            xhat = (z - mean.view(1, -1, 1, 1)) * inv_std.view(1, -1, 1, 1)
            y = xhat * self.scales.view(1, -1, 1, 1) + self.biases.view(1, -1, 1, 1)
            self._xhat, self._inv_std = xhat, inv_std
            self._batch_stats = context.training
        else:
            y = z + self.biases.view(1, -1, 1, 1)

        # y is a fresh tensor, so nothing kept here aliases the workspace
        activated = activate(self.activation, y)
        self._activated = activated
        self._input = x

        self._ensure_output(n, self.filters, out_w, out_h)
        self.output.write_nchw(activated)
        return self.output

    def backward(
        self, delta: Optional[Tensor4D], propagate: bool = True
    ) -> Optional[Tensor4D]:
        if self._activated is None or self._input is None:
            raise RuntimeError("backward called before forward")

        d = self._delta_values(delta, self._activated)
        d = d * gradient(self.activation, self._activated)

        self.accumulate("biases", d.sum(dim=(0, 2, 3)))
        if self.batch_normalize:
            xhat, inv_std = self._xhat, self._inv_std
            self.accumulate("scales", (d * xhat).sum(dim=(0, 2, 3)))
            dxhat = d * self.scales.view(1, -1, 1, 1)
            if self._batch_stats:
                m = d.shape[0] * d.shape[2] * d.shape[3]
                d = (inv_std.view(1, -1, 1, 1) / m) * (
                    m * dxhat
                    - dxhat.sum(dim=(0, 2, 3), keepdim=True)
                    - xhat * (dxhat * xhat).sum(dim=(0, 2, 3), keepdim=True)
                )
            else:
                # rolling statistics are constants of the input
                d = dxhat * inv_std.view(1, -1, 1, 1)

        inputs = self._input.nchw().float()
        n, c, h, w = inputs.shape
        d_2d = d.reshape(n, self.filters, -1)

        if "conv" not in self._frozen_groups:
            cols = self._unfold(inputs)
            grad_w = torch.bmm(d_2d, cols.transpose(1, 2)).sum(dim=0)
            self.accumulate("weights", grad_w.view_as(self.weights))

        if not propagate:
            return None

        weights_2d = self.weights.view(self.filters, -1)
        d_cols = self._workspace.request((n, weights_2d.shape[1], d_2d.shape[2]))
        torch.bmm(weights_2d.t().expand(n, -1, -1), d_2d, out=d_cols)
        d_input = F.fold(
            d_cols, (h, w), self.size, padding=self.padding, stride=self.stride
        )
        return self._emit_delta(d_input)
