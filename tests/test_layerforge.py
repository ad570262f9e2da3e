#!/usr/bin/env python3
"""
Tests for the LayerForge execution core: tensors, truth buffer, workspace,
layers, network graph and parameter checkpoints.

Run all tests:
    python -m pytest tests/ -v --tb=short

Run a specific test file:
    python -m pytest tests/test_layerforge.py -v
"""

import logging
import sys
from pathlib import Path

import numpy as np
import pytest
import torch
import torch.nn.functional as F

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from layerforge.layers.base import Layer, LayerBuild


# =============================================================================
# Helpers
# =============================================================================

class RecordingLayer(Layer):
    """A parameter-free layer that records every call it receives."""

    is_loss_layer = True

    def __init__(self, index, name, calls, loss=0.0, fail_in=None):
        super().__init__(index, name, 1, LayerBuild())
        self.calls = calls
        self.loss_value = loss
        self.fail_in = fail_in
        self.nested = None

    def forward(self, context, x):
        self.calls.append(("forward", self.name))
        if self.nested is not None:
            self.nested()
        if self.fail_in == "forward":
            raise RuntimeError(f"{self.name} forward broke")
        self.loss = self.loss_value
        return x

    def backward(self, delta, propagate=True):
        self.calls.append(("backward", self.name, propagate))
        if self.fail_in == "backward":
            raise RuntimeError(f"{self.name} backward broke")
        return delta

    def update(self, learning_rate):
        self.calls.append(("update", self.name, learning_rate))
        if self.fail_in == "update":
            raise RuntimeError(f"{self.name} update broke")


def make_context(x, training=True, truths=None, anchors=(), freeze=()):
    from layerforge.core.types import ForwardContext, TruthBuffer
    from layerforge.core.workspace import WorkspaceAllocator
    return ForwardContext(
        training=training,
        freeze_conv="conv" in freeze,
        freeze_bn="bn" in freeze,
        freeze_activation="activation" in freeze,
        input=x,
        max_truths=4,
        truths=truths if truths is not None else TruthBuffer(x.batch, 4),
        workspace=WorkspaceAllocator("cpu"),
        anchors=tuple(anchors),
    )


def tensor_from(values, layout=None):
    from layerforge.core.tensor import Tensor4D
    from layerforge.core.types import DataLayout
    n, c, h, w = values.shape
    t = Tensor4D(n, c, w, h, layout=layout or DataLayout.NCHW)
    t.write_nchw(values)
    return t


def small_definition(data_order="NCHW", data_type="FP32", size=32):
    return {
        "def_activation": "leaky",
        "input": {
            "data_order": data_order,
            "data_type": data_type,
            "channels": 3,
            "width": size,
            "height": size,
            "anchor_reference": 32,
        },
        "anchors": [{"width": 4, "height": 6}, {"width": 12, "height": 10}],
        "layers": [
            {"type": "convolutional", "filters": 8, "size": 3, "batch_normalize": True},
            {"type": "maxpool", "size": 2},
            {"type": "activation", "activation": "prelu"},
            {"type": "convolutional", "filters": 14, "size": 1, "activation": "linear"},
            {"type": "detection", "classes": 2, "mask": [0, 1]},
        ],
    }


def training_config(**overrides):
    from layerforge.config import TrainingConfig
    options = dict(batch=2, subdivisions=1, max_truths=4, device="cpu", seed=1)
    options.update(overrides)
    return TrainingConfig(**options)


def loaded_graph(definition=None, **overrides):
    from layerforge.network.definition import NetworkDefinition
    from layerforge.network.graph import NetworkGraph
    graph = NetworkGraph(training_config(**overrides))
    graph.load(NetworkDefinition.from_dict(definition or small_definition()))
    return graph


# =============================================================================
# Tensor4D
# =============================================================================

class TestTensor4D:
    """Tests for the host/device tensor."""

    def test_storage_shape_follows_layout(self):
        """NCHW stores (n, c, h, w); NHWC stores (n, h, w, c)."""
        from layerforge.core.tensor import Tensor4D
        from layerforge.core.types import DataLayout
        nchw = Tensor4D(2, 3, 5, 4)
        nhwc = Tensor4D(2, 3, 5, 4, layout=DataLayout.NHWC)
        assert nchw.shape == (2, 3, 4, 5)
        assert nhwc.shape == (2, 4, 5, 3)
        assert nhwc.nchw().shape == (2, 3, 4, 5)
        assert nchw.numel == nhwc.numel == 120

    def test_empty_until_init(self):
        """A default tensor is empty and refuses transfers."""
        from layerforge.core.tensor import Tensor4D
        t = Tensor4D()
        assert t.empty
        with pytest.raises(RuntimeError):
            t.push()

    def test_invalid_dimensions(self):
        """Dimensions must be positive integers."""
        from layerforge.core.tensor import Tensor4D
        t = Tensor4D()
        with pytest.raises(ValueError):
            t.init(1, 0, 4, 4)
        with pytest.raises(ValueError):
            t.init(1, 3, 4.5, 4)

    def test_init_is_zero_filled_and_device_valid(self):
        """A freshly initialized tensor has a valid, zeroed device store."""
        from layerforge.core.tensor import Tensor4D
        t = Tensor4D(1, 2, 3, 3)
        assert t.device_valid and not t.host_valid
        assert torch.count_nonzero(t.data) == 0

    def test_host_write_then_push(self):
        """Host writes invalidate the device copy until push()."""
        from layerforge.core.tensor import Tensor4D
        t = Tensor4D(1, 1, 2, 2)
        values = np.arange(4, dtype=np.float32).reshape(1, 1, 2, 2)
        t.load_host(values)
        assert t.host_valid and not t.device_valid
        t.push()
        assert t.device_valid
        t.push()
        assert torch.equal(t.data, torch.from_numpy(values))

    def test_device_write_then_pull(self):
        """Device writes invalidate the host copy until pull()."""
        from layerforge.core.tensor import Tensor4D
        t = Tensor4D(1, 1, 2, 2)
        t.host()
        t.write_nchw(torch.full((1, 1, 2, 2), 3.0))
        assert not t.host_valid
        assert np.all(t.host() == 3.0)
        assert t.host_valid and t.device_valid

    def test_nhwc_view_is_channel_major(self):
        """nchw() on an NHWC tensor permutes without changing values."""
        from layerforge.core.tensor import Tensor4D
        from layerforge.core.types import DataLayout
        t = Tensor4D(1, 3, 4, 2, layout=DataLayout.NHWC)
        values = np.random.default_rng(0).normal(size=(1, 2, 4, 3)).astype(np.float32)
        t.load_host(values)
        view = t.nchw()
        assert view.shape == (1, 3, 2, 4)
        assert view[0, 2, 1, 3].item() == pytest.approx(values[0, 1, 3, 2])

    def test_reinit_discards_contents(self):
        """init() replaces both stores with zeros at the new size."""
        from layerforge.core.tensor import Tensor4D
        t = Tensor4D(1, 1, 2, 2)
        t.write_nchw(torch.ones(1, 1, 2, 2))
        t.init(1, 1, 3, 3)
        assert t.nchw_shape == (1, 1, 3, 3)
        assert torch.count_nonzero(t.data) == 0

    def test_failed_init_leaves_tensor_empty(self, monkeypatch):
        """A device allocation failure raises and discards the old store."""
        from layerforge.core.tensor import Tensor4D
        from layerforge.errors import TensorAllocationError
        t = Tensor4D(1, 2, 3, 3)

        def failing_zeros(*args, **kwargs):
            raise RuntimeError("out of memory")

        monkeypatch.setattr(torch, "zeros", failing_zeros)
        with pytest.raises(TensorAllocationError):
            t.init(4, 3, 8, 8)
        assert t.empty
        assert t.numel == 0

        monkeypatch.undo()
        t.init(1, 1, 2, 2)
        assert not t.empty

    def test_fp16_storage(self):
        """FP16 tensors store float16 on both sides."""
        from layerforge.core.tensor import Tensor4D
        from layerforge.core.types import Precision
        t = Tensor4D(1, 1, 2, 2, precision=Precision.FP16)
        assert t.data.dtype == torch.float16
        assert t.host().dtype == np.float16
        assert t.nbytes == 8


# =============================================================================
# Truth Buffer
# =============================================================================

class TestTruthBuffer:
    """Tests for the bounds-checked ground-truth buffer."""

    def test_set_and_get(self):
        from layerforge.core.types import TruthBuffer
        truths = TruthBuffer(2, 3)
        truths.set(1, 2, 5, 0.5, 0.4, 0.2, 0.1)
        record = truths.get(1, 2)
        assert record["class_id"] == 5
        assert record["w"] == pytest.approx(0.2)
        assert len(truths) == 6

    def test_out_of_bounds(self):
        """Sample and slot indices are checked against the buffer size."""
        from layerforge.core.types import TruthBuffer
        truths = TruthBuffer(2, 3)
        with pytest.raises(IndexError):
            truths.get(2, 0)
        with pytest.raises(IndexError):
            truths.set(0, 3, 0, 0.5, 0.5, 0.1, 0.1)
        with pytest.raises(IndexError):
            truths.sample(-1)

    def test_objects_stop_at_first_empty_slot(self):
        from layerforge.core.types import TruthBuffer
        truths = TruthBuffer(1, 4)
        truths.set(0, 0, 0, 0.5, 0.5, 0.1, 0.1)
        truths.set(0, 1, 1, 0.5, 0.5, 0.2, 0.2)
        truths.set(0, 3, 1, 0.5, 0.5, 0.3, 0.3)
        assert len(truths.objects(0)) == 2
        truths.clear()
        assert len(truths.objects(0)) == 0

    def test_reallocate(self):
        from layerforge.core.types import TruthBuffer
        truths = TruthBuffer(1, 1)
        truths.reallocate(3, 2)
        assert len(truths) == 6
        with pytest.raises(ValueError):
            truths.reallocate(0, 2)


# =============================================================================
# Workspace
# =============================================================================

class TestWorkspace:
    """Tests for the growth-only shared scratch buffer."""

    def test_size_is_monotonic(self):
        """Size never decreases across any sequence of requests."""
        from layerforge.core.workspace import WorkspaceAllocator
        ws = WorkspaceAllocator("cpu")
        sizes = []
        for request in [64, 32, 256, 100, 0, 1024, 512]:
            ws.grow(request)
            sizes.append(ws.size)
        assert sizes == [64, 64, 256, 256, 256, 1024, 1024]
        assert all(a <= b for a, b in zip(sizes, sizes[1:]))

    def test_smaller_request_is_noop(self):
        """A request that fits returns False and does not reallocate."""
        from layerforge.core.workspace import WorkspaceAllocator
        ws = WorkspaceAllocator("cpu")
        assert ws.grow(128) is True
        assert ws.reallocations == 1
        assert ws.grow(128) is False
        assert ws.grow(16) is False
        assert ws.reallocations == 1
        assert ws.usable

    def test_request_grows_and_views(self):
        """request() returns a typed view backed by the buffer."""
        from layerforge.core.workspace import WorkspaceAllocator
        ws = WorkspaceAllocator("cpu")
        view = ws.request((4, 8), torch.float32)
        assert view.shape == (4, 8)
        assert view.dtype == torch.float32
        assert ws.size == 4 * 8 * 4

    def test_release_keeps_high_water_mark(self):
        from layerforge.core.workspace import WorkspaceAllocator
        ws = WorkspaceAllocator("cpu")
        ws.grow(64)
        ws.release()
        assert not ws.usable
        assert ws.size == 64
        # an equal request must allocate again
        assert ws.grow(64) is True

    def test_negative_request(self):
        from layerforge.core.workspace import WorkspaceAllocator
        with pytest.raises(ValueError):
            WorkspaceAllocator("cpu").grow(-1)

    def test_empty_request_on_fresh_allocator(self):
        """A zero-byte request fits the initial size and allocates nothing."""
        from layerforge.core.workspace import WorkspaceAllocator
        from layerforge.network.graph import NetworkGraph
        ws = WorkspaceAllocator("cpu")
        assert ws.grow(0) is False
        assert ws.reallocations == 0
        assert ws.size == 0
        assert NetworkGraph(training_config()).update_workspace(0) is False

    def test_failed_allocation_keeps_size_and_retries(self, monkeypatch):
        """A failed grow leaves no buffer; a later request allocates again."""
        from layerforge.core.workspace import WorkspaceAllocator
        from layerforge.errors import WorkspaceAllocationError
        ws = WorkspaceAllocator("cpu")
        real_empty = torch.empty

        def failing_empty(*args, **kwargs):
            raise RuntimeError("out of memory")

        monkeypatch.setattr(torch, "empty", failing_empty)
        with pytest.raises(WorkspaceAllocationError) as excinfo:
            ws.grow(128)
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert not ws.usable
        assert ws.size == 128
        assert ws.reallocations == 0

        monkeypatch.setattr(torch, "empty", real_empty)
        assert ws.grow(16) is True
        assert ws.usable
        assert ws.size == 128
        assert ws.request((32,), torch.float32).shape == (32,)


# =============================================================================
# Layers
# =============================================================================

class TestConvolutionalLayer:
    """Tests for the im2col convolution layer."""

    def test_matches_torch_conv(self):
        """Forward equals F.conv2d and backward equals autograd."""
        from layerforge.layers.convolutional import ConvolutionalLayer
        torch.manual_seed(0)
        layer = ConvolutionalLayer(
            1, "conv", 3, LayerBuild(), filters=4, size=3, activation="linear"
        )
        values = torch.randn(2, 3, 5, 6)
        x = tensor_from(values)
        out = layer.forward(make_context(x), x)
        expected = F.conv2d(values, layer.weights, layer.biases, padding=1)
        assert out.nchw_shape == (2, 4, 5, 6)
        assert torch.allclose(out.nchw(), expected, atol=1e-5)

        upstream = torch.randn(2, 4, 5, 6)
        d_input = layer.backward(tensor_from(upstream))

        xr = values.clone().requires_grad_()
        wr = layer.weights.clone().requires_grad_()
        br = layer.biases.clone().requires_grad_()
        (F.conv2d(xr, wr, br, padding=1) * upstream).sum().backward()
        assert torch.allclose(layer.gradient("weights"), wr.grad, atol=1e-4)
        assert torch.allclose(layer.gradient("biases"), br.grad, atol=1e-4)
        assert torch.allclose(d_input.nchw(), xr.grad, atol=1e-4)

    def test_strided_output_size(self):
        from layerforge.layers.convolutional import ConvolutionalLayer
        layer = ConvolutionalLayer(1, "conv", 3, LayerBuild(), filters=2, size=3, stride=2)
        x = tensor_from(torch.randn(1, 3, 8, 8))
        assert layer.forward(make_context(x), x).nchw_shape == (1, 2, 4, 4)

    def test_batch_norm_rolling_statistics(self):
        """Training forward updates rolling stats unless bn is frozen."""
        from layerforge.layers.convolutional import ConvolutionalLayer
        x = tensor_from(torch.randn(2, 3, 4, 4) + 2.0)
        layer = ConvolutionalLayer(1, "conv", 3, LayerBuild(), filters=2, batch_normalize=True)
        layer.forward(make_context(x), x)
        assert torch.count_nonzero(layer.rolling_mean) > 0

        frozen = ConvolutionalLayer(1, "conv", 3, LayerBuild(), filters=2, batch_normalize=True)
        frozen.forward(make_context(x, freeze=("bn",)), x)
        assert torch.count_nonzero(frozen.rolling_mean) == 0

    def test_inference_batch_norm_backward_uses_rolling_statistics(self):
        """After a non-training forward, gradients follow the rolling stats."""
        from layerforge.layers.convolutional import BN_EPSILON, ConvolutionalLayer
        torch.manual_seed(3)
        layer = ConvolutionalLayer(
            1, "conv", 3, LayerBuild(), filters=2, size=3,
            batch_normalize=True, activation="linear",
        )
        layer.rolling_mean.copy_(torch.tensor([0.3, -0.2]))
        layer.rolling_variance.copy_(torch.tensor([2.0, 0.5]))
        layer.scales.copy_(torch.tensor([1.5, 0.7]))
        values = torch.randn(2, 3, 5, 5)
        x = tensor_from(values)
        out = layer.forward(make_context(x, training=False), x)
        upstream = torch.randn(out.nchw_shape)
        d_input = layer.backward(tensor_from(upstream))

        xr = values.clone().requires_grad_()
        sr = layer.scales.clone().requires_grad_()
        z = F.conv2d(xr, layer.weights, padding=1)
        y = F.batch_norm(
            z, layer.rolling_mean, layer.rolling_variance, sr, layer.biases,
            training=False, eps=BN_EPSILON,
        )
        assert torch.allclose(out.nchw(), y.detach(), atol=1e-5)
        (y * upstream).sum().backward()
        assert torch.allclose(d_input.nchw(), xr.grad, atol=1e-4)
        assert torch.allclose(layer.gradient("scales"), sr.grad, atol=1e-4)

    def test_frozen_conv_is_not_updated(self):
        """Frozen conv parameters keep their values through update()."""
        from layerforge.layers.convolutional import ConvolutionalLayer
        layer = ConvolutionalLayer(1, "conv", 3, LayerBuild(), filters=2, size=3)
        x = tensor_from(torch.randn(1, 3, 4, 4))
        out = layer.forward(make_context(x, freeze=("conv",)), x)
        layer.backward(tensor_from(torch.ones(out.nchw_shape)), propagate=False)
        before = layer.weights.clone()
        layer.update(0.5)
        assert torch.equal(layer.weights, before)
        assert torch.count_nonzero(layer.gradient("weights")) == 0

    def test_sgd_momentum_update(self):
        """v = m*v + grad; w += lr*v; gradients are cleared."""
        from layerforge.layers.convolutional import ConvolutionalLayer
        build = LayerBuild(momentum=0.5, decay=0.0)
        layer = ConvolutionalLayer(1, "conv", 1, build, filters=3)
        start = layer.biases.clone()

        layer.accumulate("biases", torch.ones(3))
        layer.update(0.1)
        assert torch.allclose(layer.biases, start + 0.1)
        assert torch.count_nonzero(layer.gradient("biases")) == 0

        layer.accumulate("biases", torch.ones(3))
        layer.update(0.1)
        assert torch.allclose(layer.biases, start + 0.1 + 0.15)

    def test_weight_decay_applies_to_weights_only(self):
        from layerforge.layers.convolutional import ConvolutionalLayer
        build = LayerBuild(momentum=0.0, decay=0.1, batch=2)
        layer = ConvolutionalLayer(1, "conv", 1, build, filters=1)
        w0 = layer.weights.clone()
        b0 = layer.biases.clone()
        layer.update(1.0)
        assert torch.allclose(layer.weights, w0 - 0.2 * w0)
        assert torch.equal(layer.biases, b0)

    def test_wrong_input_channels(self):
        from layerforge.layers.convolutional import ConvolutionalLayer
        layer = ConvolutionalLayer(1, "conv", 3, LayerBuild(), filters=2)
        x = tensor_from(torch.randn(1, 4, 4, 4))
        with pytest.raises(ValueError, match="input channels"):
            layer.forward(make_context(x), x)


class TestPoolingAndActivation:
    """Tests for max pooling and standalone activations."""

    def test_maxpool_routes_delta_to_winner(self):
        from layerforge.layers.pooling import MaxPoolLayer
        layer = MaxPoolLayer(1, "pool", 1, LayerBuild(), size=2)
        x = tensor_from(torch.tensor([[[[1.0, 4.0], [3.0, 2.0]]]]))
        out = layer.forward(make_context(x), x)
        assert out.nchw().flatten().tolist() == [4.0]
        d_input = layer.backward(tensor_from(torch.ones(1, 1, 1, 1)))
        assert d_input.nchw().flatten().tolist() == [0.0, 1.0, 0.0, 0.0]

    def test_maxpool_nhwc(self):
        """Pooling an NHWC tensor keeps NHWC on the output."""
        from layerforge.core.types import DataLayout
        from layerforge.layers.pooling import MaxPoolLayer
        build = LayerBuild(layout=DataLayout.NHWC)
        layer = MaxPoolLayer(1, "pool", 2, build, size=2)
        x = tensor_from(torch.randn(1, 2, 4, 4), layout=DataLayout.NHWC)
        out = layer.forward(make_context(x), x)
        assert out.layout is DataLayout.NHWC
        assert out.shape == (1, 2, 2, 2)
        assert layer.backward(None).nchw_shape == (1, 2, 4, 4)

    def test_leaky_activation(self):
        from layerforge.layers.activation import ActivationLayer
        layer = ActivationLayer(1, "act", 1, LayerBuild(), activation="leaky")
        x = tensor_from(torch.tensor([[[[-2.0, 3.0]]]]))
        out = layer.forward(make_context(x), x)
        assert out.nchw().flatten().tolist() == pytest.approx([-0.2, 3.0])
        d = layer.backward(tensor_from(torch.ones(1, 1, 1, 2)))
        assert d.nchw().flatten().tolist() == pytest.approx([0.1, 1.0])

    def test_prelu_learns_slope(self):
        """PReLU accumulates a slope gradient from negative inputs."""
        from layerforge.layers.activation import ActivationLayer
        layer = ActivationLayer(1, "act", 1, LayerBuild(), activation="prelu")
        x = tensor_from(torch.tensor([[[[-2.0, 3.0]]]]))
        layer.forward(make_context(x), x)
        layer.backward(tensor_from(torch.ones(1, 1, 1, 2)), propagate=False)
        assert layer.gradient("slopes").tolist() == pytest.approx([-2.0])

    def test_prelu_frozen(self):
        from layerforge.layers.activation import ActivationLayer
        layer = ActivationLayer(1, "act", 1, LayerBuild(), activation="prelu")
        x = tensor_from(torch.tensor([[[[-2.0, 3.0]]]]))
        layer.forward(make_context(x, freeze=("activation",)), x)
        layer.backward(tensor_from(torch.ones(1, 1, 1, 2)))
        assert layer.gradient("slopes").tolist() == [0.0]

    def test_unknown_activation(self):
        from layerforge.layers.activation import ActivationLayer
        with pytest.raises(ValueError, match="Unknown activation"):
            ActivationLayer(1, "act", 1, LayerBuild(), activation="swish")


class TestDetectionLayer:
    """Tests for the anchor-based detection head."""

    def _layer(self):
        from layerforge.core.types import Anchor
        from layerforge.layers.detection import DetectionLayer
        anchors = (Anchor(0.25, 0.25), Anchor(0.5, 0.5))
        return DetectionLayer(1, "det", 14, LayerBuild(anchors=anchors), classes=2), anchors

    def test_training_forward_produces_loss(self):
        from layerforge.core.types import TruthBuffer
        layer, anchors = self._layer()
        x = tensor_from(torch.zeros(1, 14, 4, 4))
        truths = TruthBuffer(1, 4)
        truths.set(0, 0, 1, 0.5, 0.5, 0.25, 0.25)
        layer.forward(make_context(x, truths=truths, anchors=anchors), x)
        assert layer.loss > 0
        assert layer.stats["count"] == 1.0
        assert layer.backward(None).nchw_shape == (1, 14, 4, 4)

    def test_inference_has_no_loss(self):
        layer, anchors = self._layer()
        x = tensor_from(torch.zeros(1, 14, 2, 2))
        out = layer.forward(make_context(x, training=False, anchors=anchors), x)
        assert layer.loss == 0.0
        assert out.nchw()[0, 4, 0, 0].item() == pytest.approx(0.5)
        with pytest.raises(RuntimeError):
            layer.backward(None)

    def test_channel_count_must_match_mask(self):
        from layerforge.core.types import Anchor
        from layerforge.layers.detection import DetectionLayer
        build = LayerBuild(anchors=(Anchor(0.1, 0.1),))
        with pytest.raises(ValueError, match="input channels"):
            DetectionLayer(1, "det", 10, build, classes=2)

    def test_requires_anchors(self):
        from layerforge.layers.detection import DetectionLayer
        with pytest.raises(ValueError, match="anchor"):
            DetectionLayer(1, "det", 6, LayerBuild(), classes=1)


class TestRegistry:
    """Tests for kind-tag construction."""

    def test_reference_kinds_registered(self):
        from layerforge.layers import available_kinds
        assert set(available_kinds()) >= {"convolutional", "activation", "maxpool", "detection"}

    def test_unknown_kind(self):
        from layerforge.errors import ConfigurationError
        from layerforge.layers import create_layer
        with pytest.raises(ConfigurationError, match="unknown type"):
            create_layer({"type": "deconvolutional"}, 1, 3, LayerBuild())

    def test_bad_option_is_configuration_error(self):
        from layerforge.errors import ConfigurationError
        from layerforge.layers import create_layer
        with pytest.raises(ConfigurationError) as exc:
            create_layer({"type": "convolutional", "kernel": 3}, 2, 3, LayerBuild())
        assert exc.value.field == "layers[1]"

    def test_default_name(self):
        from layerforge.layers import create_layer
        layer = create_layer({"type": "maxpool"}, 4, 3, LayerBuild())
        assert layer.name == "maxpool_4"
        assert layer.index == 4


# =============================================================================
# Network Graph
# =============================================================================

class TestGraphLoad:
    """Tests for building a graph from a network definition."""

    def test_load_threads_channels(self):
        graph = loaded_graph()
        assert len(graph) == 5
        assert [layer.index for layer in graph.layers] == [1, 2, 3, 4, 5]
        assert graph.get_layer(3).in_channels == 8
        assert graph.input.nchw_shape == (2, 3, 32, 32)
        assert graph.truths.max_truths == 4

    def test_anchor_ratios(self):
        """Anchors are raw / reference; non-positive ones are dropped."""
        definition = small_definition()
        definition["anchors"] = [
            {"width": 10, "height": 14},
            {"width": 0, "height": 5},
            [-3, 4],
            [23, 27],
        ]
        definition["input"]["anchor_reference"] = 416
        definition["layers"] = [{"type": "maxpool"}]
        graph = loaded_graph(definition)
        assert len(graph.anchors) == 2
        assert graph.get_anchor(0).width == pytest.approx(10 / 416)
        assert graph.get_anchor(0).height == pytest.approx(14 / 416)
        assert graph.get_anchor(1).width == pytest.approx(23 / 416)

    def test_unknown_order_and_type_fall_back(self, caplog):
        from layerforge.core.types import DataLayout, Precision
        with caplog.at_level(logging.WARNING):
            graph = loaded_graph(small_definition(data_order="CHWN", data_type="INT8"))
        assert graph.layout is DataLayout.NCHW
        assert graph.precision is Precision.FP32
        assert "CHWN" in caplog.text
        assert "INT8" in caplog.text

    def test_missing_input_block(self):
        from layerforge.errors import ConfigurationError
        definition = small_definition()
        del definition["input"]
        with pytest.raises(ConfigurationError, match="input block"):
            loaded_graph(definition)

    def test_bad_input_dimension(self):
        from layerforge.errors import ConfigurationError
        definition = small_definition()
        definition["input"]["width"] = 0
        with pytest.raises(ConfigurationError, match="width"):
            loaded_graph(definition)

    def test_failed_load_leaves_graph_untouched(self):
        from layerforge.errors import ConfigurationError
        from layerforge.network.definition import NetworkDefinition
        graph = loaded_graph()
        definition = small_definition()
        definition["layers"].append({"type": "nope"})
        with pytest.raises(ConfigurationError):
            graph.load(NetworkDefinition.from_dict(definition))
        assert len(graph) == 5

    def test_seeded_init_leaves_global_rng_alone(self):
        """Equal seeds give equal weights without reseeding torch."""
        torch.manual_seed(123)
        expected = torch.rand(4)
        torch.manual_seed(123)
        first = loaded_graph(seed=7)
        assert torch.equal(torch.rand(4), expected)

        second = loaded_graph(seed=7)
        other = loaded_graph(seed=8)
        assert torch.equal(first.get_layer(0).weights, second.get_layer(0).weights)
        assert not torch.equal(first.get_layer(0).weights, other.get_layer(0).weights)

    def test_from_yaml(self):
        from layerforge.network.definition import NetworkDefinition
        path = Path(__file__).resolve().parent.parent / "configs" / "tiny-detector.yaml"
        definition = NetworkDefinition.from_yaml(path)
        assert definition.layers[-1]["type"] == "detection"
        assert definition.parse_input().width == 64


class TestGraphPasses:
    """Tests for the forward/backward/update protocol."""

    def _graph(self, *layers):
        from layerforge.network.graph import NetworkGraph
        graph = NetworkGraph(training_config())
        for layer in layers:
            graph.add_layer(layer)
        return graph

    def test_backward_reverses_forward(self):
        """Backward visits every layer exactly once, in reverse order."""
        calls = []
        names = ["A", "B", "C", "D"]
        graph = self._graph(*[RecordingLayer(i, n, calls) for i, n in enumerate(names, 1)])
        graph.forward(training=True)
        graph.backward()
        forward = [c[1] for c in calls if c[0] == "forward"]
        backward = [c[1] for c in calls if c[0] == "backward"]
        assert forward == names
        assert backward == list(reversed(forward))

    def test_first_layer_does_not_propagate(self):
        calls = []
        graph = self._graph(RecordingLayer(1, "A", calls), RecordingLayer(2, "B", calls))
        graph.backward()
        assert calls == [("backward", "B", True), ("backward", "A", False)]

    def test_loss_sums_loss_layers(self):
        calls = []
        graph = self._graph(
            RecordingLayer(1, "A", calls, loss=1.5), RecordingLayer(2, "B", calls, loss=2.0)
        )
        assert graph.forward(training=True) == pytest.approx(3.5)
        # the accumulator is reset on every forward
        assert graph.forward(training=True) == pytest.approx(3.5)

    def test_failing_middle_layer(self):
        """B fails: A ran, C did not, loss holds only A's contribution."""
        from layerforge.errors import ForwardError
        calls = []
        graph = self._graph(
            RecordingLayer(1, "A", calls, loss=1.5),
            RecordingLayer(2, "B", calls, loss=4.0, fail_in="forward"),
            RecordingLayer(3, "C", calls, loss=2.0),
        )
        with pytest.raises(ForwardError) as exc:
            graph.forward(training=True)
        assert exc.value.layer_index == 2
        assert exc.value.layer_name == "B"
        assert isinstance(exc.value.__cause__, RuntimeError)
        assert calls == [("forward", "A"), ("forward", "B")]
        assert graph.loss == pytest.approx(1.5)

    def test_failing_backward(self):
        from layerforge.errors import BackwardError
        calls = []
        graph = self._graph(
            RecordingLayer(1, "A", calls),
            RecordingLayer(2, "B", calls, fail_in="backward"),
            RecordingLayer(3, "C", calls),
        )
        with pytest.raises(BackwardError, match="layer 2"):
            graph.backward()
        assert [c[1] for c in calls] == ["C", "B"]

    def test_failing_update_stops_later_layers(self):
        from layerforge.errors import UpdateError
        calls = []
        graph = self._graph(
            RecordingLayer(1, "A", calls, fail_in="update"), RecordingLayer(2, "B", calls)
        )
        with pytest.raises(UpdateError):
            graph.update(0.01)
        assert calls == [("update", "A", 0.01)]

    def test_reentrant_pass_is_rejected(self):
        """Starting a pass from inside a pass fails; the graph recovers."""
        from layerforge.errors import ForwardError, ReentrantPassError
        calls = []
        layer = RecordingLayer(1, "A", calls)
        graph = self._graph(layer)
        layer.nested = graph.backward
        with pytest.raises(ForwardError) as exc:
            graph.forward(training=True)
        assert isinstance(exc.value.__cause__, ReentrantPassError)
        layer.nested = None
        graph.forward(training=True)

    def test_add_layer_requires_increasing_index(self):
        calls = []
        graph = self._graph(RecordingLayer(2, "A", calls))
        with pytest.raises(ValueError):
            graph.add_layer(RecordingLayer(2, "B", calls))

    def test_real_network_trains_one_step(self):
        """One forward/backward/update on the reference layers changes weights."""
        from layerforge.data.source import SyntheticDataSource
        graph = loaded_graph()
        SyntheticDataSource(classes=2).load_minibatch(graph.input, graph.truths)
        loss = graph.forward(training=True)
        assert loss > 0
        graph.backward()
        before = graph.get_layer(0).weights.clone()
        graph.update(0.01)
        assert not torch.equal(graph.get_layer(0).weights, before)
        assert graph.workspace_size > 0


class TestGraphLookupAndMemory:
    """Tests for bounds-checked lookups, workspace and input resizing."""

    def test_empty_graph_lookups(self):
        from layerforge.network.graph import NetworkGraph
        graph = NetworkGraph(training_config())
        assert graph.get_layer(0) is None
        assert graph.get_anchor(0) is None

    def test_lookup_bounds(self):
        graph = loaded_graph()
        n = len(graph)
        assert all(graph.get_layer(i) is not None for i in range(n))
        assert graph.get_layer(n) is None
        assert graph.get_layer(n + 5) is None
        assert graph.get_layer(-1) is None
        assert graph.get_anchor(len(graph.anchors)) is None

    def test_update_workspace(self):
        from layerforge.network.graph import NetworkGraph
        graph = NetworkGraph(training_config())
        assert graph.update_workspace(1024) is True
        assert graph.update_workspace(512) is False
        assert graph.workspace_size == 1024

    def test_resize_input_keeps_channels_layout_and_params(self):
        """416 → 480 changes only the spatial size of the input."""
        from layerforge.core.types import DataLayout
        definition = small_definition(data_order="NHWC", size=416)
        definition["layers"] = [{"type": "convolutional", "filters": 4, "size": 3}]
        graph = loaded_graph(definition, batch=1)
        weights = graph.get_layer(0).weights
        snapshot = weights.clone()

        graph.forward(training=False)
        graph.resize_input(480, 480)
        assert graph.input.nchw_shape == (1, 3, 480, 480)
        assert graph.input.layout is DataLayout.NHWC

        out = graph.get_layer(0)
        graph.forward(training=False)
        assert out.output.nchw_shape == (1, 4, 480, 480)
        assert out.weights is weights
        assert torch.equal(out.weights, snapshot)

    def test_state_dict_keys(self):
        graph = loaded_graph()
        keys = set(graph.state_dict())
        assert "1.weights" in keys
        assert "1.rolling_mean" in keys
        assert "3.slopes" in keys

    def test_summary(self):
        graph = loaded_graph()
        table = graph.summary()
        assert "detection" in table
        assert f"Total parameters: {graph.n_params}" in table


# =============================================================================
# Parameter Store
# =============================================================================

class TestParameterStore:
    """Tests for safetensors checkpoints."""

    def test_fp32_round_trip_is_exact(self, tmp_path):
        """A checkpoint at iteration 100 restores the counter and every bit."""
        from layerforge.params.store import ParameterStore
        source = loaded_graph()
        store = ParameterStore()
        path = store.save(tmp_path / "weights_100.safetensors", source, iteration=100)

        target = loaded_graph(seed=7)
        assert not torch.equal(target.get_layer(0).weights, source.get_layer(0).weights)
        assert store.load(path, target) == 100
        for key, value in source.state_dict().items():
            assert torch.equal(target.state_dict()[key], value), key

    def test_fp16_round_trip_within_tolerance(self, tmp_path):
        from layerforge.params.store import ParameterStore
        source = loaded_graph(small_definition(data_type="FP16"))
        store = ParameterStore()
        path = store.save(tmp_path / "weights_100.safetensors", source, iteration=100)

        target = loaded_graph(small_definition(data_type="FP16"), seed=7)
        assert store.load(path, target) == 100
        for key, value in source.state_dict().items():
            assert torch.allclose(target.state_dict()[key], value, rtol=1e-3, atol=1e-3), key

    def test_missing_checkpoint(self, tmp_path):
        from layerforge.errors import CheckpointError
        from layerforge.params.store import ParameterStore
        with pytest.raises(CheckpointError, match="not found"):
            ParameterStore().load(tmp_path / "nope.safetensors", loaded_graph())

    def test_mismatched_network(self, tmp_path):
        from layerforge.errors import CheckpointError
        from layerforge.params.store import ParameterStore
        store = ParameterStore()
        path = store.save(tmp_path / "w_1.safetensors", loaded_graph(), iteration=1)
        definition = small_definition()
        definition["layers"][0]["filters"] = 16
        with pytest.raises(CheckpointError, match="do not match"):
            store.load(path, loaded_graph(definition))

    def test_foreign_file(self, tmp_path):
        from safetensors.torch import save_file
        from layerforge.errors import CheckpointError
        from layerforge.params.store import ParameterStore
        path = tmp_path / "other.safetensors"
        save_file({"x": torch.zeros(2)}, str(path))
        with pytest.raises(CheckpointError, match="not a layerforge"):
            ParameterStore().load(path, loaded_graph())

    def test_keep_checkpoints_and_latest(self, tmp_path):
        from layerforge.params.store import ParameterStore, latest_checkpoint
        graph = loaded_graph()
        store = ParameterStore(keep_checkpoints=2)
        for iteration in (10, 20, 30):
            store.save(tmp_path / f"w_{iteration}.safetensors", graph, iteration)
        store.save(tmp_path / "w_final.safetensors", graph, 30)
        remaining = sorted(p.name for p in tmp_path.glob("*.safetensors"))
        assert remaining == ["w_20.safetensors", "w_30.safetensors", "w_final.safetensors"]
        assert latest_checkpoint(tmp_path, "w").name == "w_30.safetensors"
        assert latest_checkpoint(tmp_path / "missing") is None


# =============================================================================
# Errors
# =============================================================================

class TestErrors:
    """Tests for the error hierarchy."""

    def test_hierarchy(self):
        from layerforge import errors
        assert issubclass(errors.ForwardError, errors.PassError)
        assert issubclass(errors.WorkspaceAllocationError, errors.ResourceError)
        assert issubclass(errors.TrainingAbortedError, errors.LayerForgeError)

    def test_message_formatting(self):
        from layerforge.errors import ConfigurationError, ForwardError
        error = ConfigurationError("bad value", field="input.width", suggestions=["fix it"])
        text = str(error)
        assert text.startswith("Invalid configuration: bad value")
        assert "1. fix it" in text
        assert "field: input.width" in text
        assert "Forward failed at layer 3 (conv)" in str(ForwardError(3, "conv"))
