"""
LayerForge Layer Contract
==========================
Every layer kind (convolution, activation, pooling, detection head, ...)
implements the same three operations, so the graph can drive them
without knowing what they compute:

    forward(context, x)        → output Tensor4D
    backward(delta, propagate) → delta of the input (or None)
    update(learning_rate)      → apply and clear accumulated gradients

Delta Convention:
    A "delta" is the NEGATIVE gradient of the loss with respect to a
    tensor (delta = -dL/dy). Loss layers write target - prediction,
    every layer pushes it backwards, and updates ADD lr * delta to the
    parameters. Accumulated parameter "gradients" below follow the same
    sign.

Parameter Groups:
    Each learned parameter belongs to one freeze group:
        "conv"       — convolution weights and biases
        "bn"         — batch-normalization scales and biases
        "activation" — learnable activation parameters (PReLU slope)
    A frozen group still takes part in forward/backward; its gradients
    are simply not accumulated and its values are not updated.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Optional

import torch

from layerforge.core.tensor import Tensor4D
from layerforge.core.types import Anchor, DataLayout, ForwardContext, Precision

logger = logging.getLogger(__name__)

PARAM_GROUPS = ("conv", "bn", "activation")


@dataclass(frozen=True)
class LayerBuild:
    """
    Network-wide settings every layer needs at construction time.

    Parameters
    ----------
    device : torch.device
        Where parameters and outputs live.
    layout : DataLayout
        Layout of every output tensor.
    precision : Precision
        Element type of every output tensor. Parameters are kept in FP32.
    batch : int
        Full training batch (subdivisions × mini-batch); scales decay.
    momentum : float
        SGD momentum.
    decay : float
        L2 weight decay, applied to weights only.
    default_activation : str
        Activation used by layers that do not name one.
    anchors : tuple[Anchor, ...]
        The network's anchor table.
    generator : torch.Generator or None
        Source of random initial weights; None draws from the global RNG.
    """
    device: torch.device = field(default_factory=lambda: torch.device("cpu"))
    layout: DataLayout = DataLayout.NCHW
    precision: Precision = Precision.FP32
    batch: int = 1
    momentum: float = 0.9
    decay: float = 0.0005
    default_activation: str = "leaky"
    anchors: tuple[Anchor, ...] = ()
    generator: Optional[torch.Generator] = None


class Layer(ABC):
    """
    Base class for every layer kind.

    Parameters
    ----------
    index : int
        1-based position in the graph. Immutable.
    name : str
        Display name used in logs and error messages.
    in_channels : int
        Channels of the incoming tensor. Spatial size may change between
        passes (adaptive resizing); channel count may not.
    build : LayerBuild
        Network-wide settings.
    """

    kind: ClassVar[str] = ""
    is_loss_layer: ClassVar[bool] = False

    def __init__(self, index: int, name: str, in_channels: int, build: LayerBuild):
        if index < 1:
            raise ValueError(f"Layer index must be >= 1, got {index}")
        if in_channels < 1:
            raise ValueError(
                f"Layer {index} ({name}) needs in_channels >= 1, got {in_channels}"
            )
        self._index = index
        self.name = name
        self.in_channels = in_channels
        self.out_channels = in_channels
        self.build = build
        self.loss = 0.0

        self.output = Tensor4D(
            layout=build.layout, precision=build.precision, device=build.device
        )
        self.delta_in = Tensor4D(
            layout=build.layout, precision=Precision.FP32, device=build.device
        )

        self._params: dict[str, torch.Tensor] = {}
        self._param_groups: dict[str, str] = {}
        self._decayed: set[str] = set()
        self._grads: dict[str, torch.Tensor] = {}
        self._velocity: dict[str, torch.Tensor] = {}
        self._buffers: dict[str, torch.Tensor] = {}
        self._frozen_groups: frozenset[str] = frozenset()

    @property
    def index(self) -> int:
        return self._index

    # ------------------------------------------------------------------
    # Contract

    @abstractmethod
    def forward(self, context: ForwardContext, x: Tensor4D) -> Tensor4D:
        """Consume ``x`` and fill ``self.output``."""

    @abstractmethod
    def backward(
        self, delta: Optional[Tensor4D], propagate: bool = True
    ) -> Optional[Tensor4D]:
        """
        Consume the delta of this layer's output, accumulate parameter
        gradients, and return the delta of its input.

        ``delta`` is None when no later layer produced one. When
        ``propagate`` is False the input delta is not computed.
        """

    def update(self, learning_rate: float) -> None:
        """
        SGD with momentum and weight decay over every unfrozen parameter:

            v = momentum * v + grad - decay * batch * w   (decay on weights only)
            w = w + lr * v
            grad = 0
        """
        momentum = self.build.momentum
        decay = self.build.decay * self.build.batch
        for name, param in self._params.items():
            grad = self._grads[name]
            if self._param_groups[name] in self._frozen_groups:
                grad.zero_()
                continue
            step = grad.clone()
            if name in self._decayed and decay:
                step.add_(param, alpha=-decay)
            velocity = self._velocity[name]
            velocity.mul_(momentum).add_(step)
            param.add_(velocity, alpha=learning_rate)
            grad.zero_()

    # ------------------------------------------------------------------
    # Parameters

    def register_parameter(
        self, name: str, value: torch.Tensor, group: str, decay: bool = False
    ) -> torch.Tensor:
        if group not in PARAM_GROUPS:
            raise ValueError(f"Unknown parameter group '{group}'")
        value = value.to(device=self.build.device, dtype=torch.float32)
        self._params[name] = value
        self._param_groups[name] = group
        self._grads[name] = torch.zeros_like(value)
        self._velocity[name] = torch.zeros_like(value)
        if decay:
            self._decayed.add(name)
        return value

    def register_buffer(self, name: str, value: torch.Tensor) -> torch.Tensor:
        """A persistent, non-learned tensor (e.g. rolling statistics)."""
        value = value.to(device=self.build.device, dtype=torch.float32)
        self._buffers[name] = value
        return value

    def accumulate(self, name: str, grad: torch.Tensor) -> None:
        """Add to a parameter's gradient unless its group is frozen."""
        if self._param_groups[name] in self._frozen_groups:
            return
        self._grads[name].add_(grad)

    def gradient(self, name: str) -> torch.Tensor:
        return self._grads[name]

    def parameters(self) -> dict[str, torch.Tensor]:
        """Learned parameters and persistent buffers, by name."""
        return {**self._params, **self._buffers}

    def load_parameters(self, state: dict[str, torch.Tensor]) -> None:
        """Copy values into existing parameters (shapes must match)."""
        current = self.parameters()
        missing = set(current) - set(state)
        if missing:
            raise KeyError(
                f"Layer {self.index} ({self.name}) missing parameters: "
                f"{sorted(missing)}"
            )
        for name, target in current.items():
            value = state[name]
            if tuple(value.shape) != tuple(target.shape):
                raise ValueError(
                    f"Layer {self.index} ({self.name}) parameter '{name}' has "
                    f"shape {tuple(value.shape)}, expected {tuple(target.shape)}"
                )
            target.copy_(value.to(device=target.device, dtype=target.dtype))

    @property
    def n_params(self) -> int:
        return sum(p.numel() for p in self._params.values())

    # ------------------------------------------------------------------
    # Helpers for subclasses

    def _capture_freeze_flags(self, context: ForwardContext) -> None:
        groups = set()
        if context.freeze_conv:
            groups.add("conv")
        if context.freeze_bn:
            groups.add("bn")
        if context.freeze_activation:
            groups.add("activation")
        self._frozen_groups = frozenset(groups)

    def _ensure_output(self, batch: int, channels: int, width: int, height: int) -> None:
        """Re-initialize the output only when the shape actually changed."""
        if self.output.empty or self.output.nchw_shape != (batch, channels, height, width):
            self.output.init(batch, channels, width, height)

    def _emit_delta(self, values: torch.Tensor) -> Tensor4D:
        """Store a channel-major input delta in ``self.delta_in``."""
        n, c, h, w = values.shape
        if self.delta_in.empty or self.delta_in.nchw_shape != (n, c, h, w):
            self.delta_in.init(n, c, w, h)
        self.delta_in.write_nchw(values)
        return self.delta_in

    @staticmethod
    def _delta_values(delta: Optional[Tensor4D], like: torch.Tensor) -> torch.Tensor:
        """The incoming delta as FP32 NCHW, or zeros when there is none."""
        if delta is None:
            return torch.zeros_like(like, dtype=torch.float32)
        values = delta.nchw().float()
        if values.shape != like.shape:
            raise ValueError(
                f"Delta shape {tuple(values.shape)} does not match output "
                f"shape {tuple(like.shape)}"
            )
        return values

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(index={self.index}, name={self.name!r}, "
            f"in={self.in_channels}, out={self.out_channels}, "
            f"params={self.n_params})"
        )
