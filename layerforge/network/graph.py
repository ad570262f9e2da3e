"""
LayerForge Network Graph
=========================
Owns the ordered layer sequence and everything a pass needs: the anchor
table, the network input tensor, the ground-truth buffer, the shared
workspace and the loss of the in-flight batch.

Pass Protocol:
    forward(training)
        loss = 0
        x = input
        for layer in layers:              (graph order)
            x = layer.forward(context, x)
            if layer is a loss layer: loss += layer.loss

    backward()
        delta = None
        for layer in reversed(layers):    (strict reverse order)
            delta = layer.backward(delta, propagate=<not the first layer>)

    update(lr)
        for layer in layers: layer.update(lr)

    The first failing layer aborts the pass with a ForwardError /
    BackwardError / UpdateError naming its index and name; later layers
    do not run and nothing is rolled back.

Passes are not re-entrant: the workspace and the loss accumulator belong
to one pass at a time.

Usage:
    >>> graph = NetworkGraph(config.training)
    >>> graph.load(NetworkDefinition.from_yaml("configs/tiny-detector.yaml"))
    >>> graph.forward(training=True)
    >>> graph.backward()
    >>> graph.update(learning_rate / config.training.batch)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Union

import torch

from layerforge.config import TrainingConfig
from layerforge.core.tensor import Tensor4D
from layerforge.core.types import (
    Anchor,
    DataLayout,
    ForwardContext,
    Precision,
    TruthBuffer,
)
from layerforge.core.workspace import WorkspaceAllocator
from layerforge.errors import (
    BackwardError,
    ForwardError,
    ReentrantPassError,
    UpdateError,
)
from layerforge.layers import Layer, LayerBuild, create_layer
from layerforge.network.definition import NetworkDefinition

logger = logging.getLogger(__name__)


class NetworkGraph:
    """
    The layer-graph container and its forward/backward/update passes.

    Parameters
    ----------
    training : TrainingConfig
        Supplies mini-batch size, max truths, freeze flags, device and seed.
    device : str, torch.device or None
        Overrides ``training.resolve_device()``.
    """

    def __init__(
        self,
        training: TrainingConfig,
        device: Optional[Union[str, torch.device]] = None,
    ):
        self.training = training
        self.device = torch.device(device) if device is not None else training.resolve_device()

        self.layers: list[Layer] = []
        self.anchors: list[Anchor] = []
        self.layout = DataLayout.NCHW
        self.precision = Precision.FP32
        self.default_activation = "leaky"

        self.workspace = WorkspaceAllocator(self.device)
        self.input = Tensor4D(device=self.device)
        self.truths = TruthBuffer(training.mini_batch, training.max_truths)
        self.loss = 0.0

        self._active_pass: Optional[str] = None

    # ------------------------------------------------------------------
    # Construction

    def load(self, definition: NetworkDefinition) -> None:
        """
        Build the anchor table, input tensor, layers and truth buffer from
        a network definition.

        Nothing on the graph changes unless the whole load succeeds.

        Raises
        ------
        ConfigurationError
            Missing/malformed input block, bad anchor or unknown layer kind.
        TensorAllocationError
            If the input tensor cannot be allocated.
        """
        spec = definition.parse_input()
        anchors = definition.parse_anchors(spec.anchor_reference)
        mini_batch = self.training.mini_batch

        network_input = Tensor4D(
            layout=spec.layout, precision=spec.precision, device=self.device
        )
        network_input.init(mini_batch, spec.channels, spec.width, spec.height)

        build = LayerBuild(
            device=self.device,
            layout=spec.layout,
            precision=spec.precision,
            batch=self.training.batch,
            momentum=definition.momentum,
            decay=definition.decay,
            default_activation=definition.def_activation,
            anchors=tuple(anchors),
            generator=torch.Generator().manual_seed(self.training.seed),
        )

        layers: list[Layer] = []
        channels = spec.channels
        for index, layer_spec in enumerate(definition.layers, start=1):
            layer = create_layer(layer_spec, index, channels, build)
            layers.append(layer)
            channels = layer.out_channels

        if not layers:
            logger.warning("Network definition has no layers")

        self.layout = spec.layout
        self.precision = spec.precision
        self.default_activation = definition.def_activation
        self.anchors = anchors
        self.input = network_input
        self.layers = layers
        self.truths = TruthBuffer(mini_batch, self.training.max_truths)
        self.workspace = WorkspaceAllocator(self.device)
        self.loss = 0.0

        logger.info(
            f"Network loaded: {len(layers)} layers, {len(anchors)} anchors, "
            f"input {mini_batch}x{spec.channels}x{spec.width}x{spec.height} "
            f"{spec.layout.value}/{spec.precision.value}, "
            f"{self.n_params / 1e6:.2f}M parameters on {self.device}"
        )

    def add_layer(self, layer: Layer) -> None:
        """Append a layer; its index must exceed every existing index."""
        if self.layers and layer.index <= self.layers[-1].index:
            raise ValueError(
                f"Layer index {layer.index} must be greater than "
                f"{self.layers[-1].index}"
            )
        self.layers.append(layer)

    # ------------------------------------------------------------------
    # Passes

    @contextmanager
    def _exclusive(self, name: str) -> Iterator[None]:
        if self._active_pass is not None:
            raise ReentrantPassError(name, self._active_pass)
        self._active_pass = name
        try:
            yield
        finally:
            self._active_pass = None

    def make_context(self, training: bool) -> ForwardContext:
        return ForwardContext(
            training=training,
            freeze_conv=self.training.freeze_conv,
            freeze_bn=self.training.freeze_bn,
            freeze_activation=self.training.freeze_activation,
            input=self.input,
            max_truths=self.training.max_truths,
            truths=self.truths,
            workspace=self.workspace,
            anchors=tuple(self.anchors),
        )

    def forward(self, training: bool) -> float:
        """
        Run every layer in graph order; returns the batch loss.

        Raises
        ------
        ForwardError
            On the first failing layer. ``loss`` then holds only the
            contributions of the layers before it.
        """
        with self._exclusive("forward"):
            self.loss = 0.0
            context = self.make_context(training)
            x = self.input
            for layer in self.layers:
                try:
                    x = layer.forward(context, x)
                except Exception as e:
                    logger.error(
                        f"Forward failed: index {layer.index}, name {layer.name}: {e}"
                    )
                    raise ForwardError(layer.index, layer.name, str(e)) from e
                if layer.is_loss_layer:
                    self.loss += layer.loss
            return self.loss

    def backward(self) -> None:
        """
        Run every layer in strict reverse order, handing each layer's
        input delta to its predecessor.

        Raises
        ------
        BackwardError
            On the first failing layer.
        """
        with self._exclusive("backward"):
            delta = None
            for position in range(len(self.layers) - 1, -1, -1):
                layer = self.layers[position]
                try:
                    delta = layer.backward(delta, propagate=position > 0)
                except Exception as e:
                    logger.error(
                        f"Backward failed: index {layer.index}, name {layer.name}: {e}"
                    )
                    raise BackwardError(layer.index, layer.name, str(e)) from e

    def update(self, learning_rate: float) -> None:
        """
        Apply accumulated gradients at every layer.

        Raises
        ------
        UpdateError
            On the first failing layer; later layers are not updated.
        """
        with self._exclusive("update"):
            for layer in self.layers:
                try:
                    layer.update(learning_rate)
                except Exception as e:
                    logger.error(
                        f"Update failed: index {layer.index}, name {layer.name}: {e}"
                    )
                    raise UpdateError(layer.index, layer.name, str(e)) from e

    # ------------------------------------------------------------------
    # Lookup

    def get_layer(self, index: int) -> Optional[Layer]:
        """Layer at 0-based position ``index``, or None if out of range."""
        if 0 <= index < len(self.layers):
            return self.layers[index]
        return None

    def get_anchor(self, index: int) -> Optional[Anchor]:
        """Anchor at 0-based position ``index``, or None if out of range."""
        if 0 <= index < len(self.anchors):
            return self.anchors[index]
        return None

    def __len__(self) -> int:
        return len(self.layers)

    # ------------------------------------------------------------------
    # Memory

    def update_workspace(self, requested_size: int) -> bool:
        """
        Grow the shared workspace to at least ``requested_size`` bytes.

        Returns True if it was reallocated; raises
        WorkspaceAllocationError if the device allocation failed.
        """
        return self.workspace.grow(requested_size)

    @property
    def workspace_size(self) -> int:
        return self.workspace.size

    def resize_input(self, width: int, height: int) -> None:
        """
        Re-initialize the input tensor at a new resolution, keeping batch,
        channels and layout. Layer parameters are untouched; layer outputs
        follow on the next forward.
        """
        if self._active_pass is not None:
            raise ReentrantPassError("resize", self._active_pass)
        self.input.init(
            self.input.batch, self.input.channels, width, height, self.input.layout
        )
        logger.info(f"Input resized to {width}x{height}")

    # ------------------------------------------------------------------
    # Parameters

    def state_dict(self) -> dict[str, torch.Tensor]:
        """``"{layer_index}.{param}"`` → tensor for every layer."""
        state = {}
        for layer in self.layers:
            for name, value in layer.parameters().items():
                state[f"{layer.index}.{name}"] = value
        return state

    def load_state_dict(self, state: dict[str, torch.Tensor]) -> None:
        """
        Copy parameters into the layers.

        Raises
        ------
        KeyError
            If a layer's parameters are missing, or ``state`` has keys no
            layer owns.
        ValueError
            If a shape does not match.
        """
        expected = set(self.state_dict())
        unexpected = set(state) - expected
        if unexpected:
            raise KeyError(f"Unexpected parameters: {sorted(unexpected)[:5]}")
        for layer in self.layers:
            prefix = f"{layer.index}."
            layer.load_parameters(
                {k[len(prefix):]: v for k, v in state.items() if k.startswith(prefix)}
            )

    @property
    def n_params(self) -> int:
        return sum(layer.n_params for layer in self.layers)

    def summary(self) -> str:
        """Log and return a per-layer table."""
        lines = [f"{'idx':>4}  {'name':<20} {'kind':<14} {'out':>5} {'params':>10}"]
        for layer in self.layers:
            lines.append(
                f"{layer.index:>4}  {layer.name:<20} {layer.kind:<14} "
                f"{layer.out_channels:>5} {layer.n_params:>10}"
            )
        lines.append(f"Total parameters: {self.n_params}")
        table = "\n".join(lines)
        logger.info(f"Network summary:\n{table}")
        return table

    def __repr__(self) -> str:
        return (
            f"NetworkGraph(layers={len(self.layers)}, anchors={len(self.anchors)}, "
            f"input={self.input.nchw_shape}, device={self.device})"
        )
