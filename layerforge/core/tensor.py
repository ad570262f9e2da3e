"""
LayerForge Tensor4D
====================
The universal data-exchange unit between layers: a 4-dimensional array
(batch, channels, width, height) with a declared memory layout and
element precision.

Two Backing Stores:
    A Tensor4D can hold a host copy (a numpy array, which is what data
    sources fill) and a device copy (a torch tensor on the accelerator,
    which is what layers compute on). Each store carries a "valid" flag:

        write on the host  → host valid, device stale
        write on the device → device valid, host stale
        push()             → copies host → device if the device is stale
        pull()             → copies device → host if the host is stale

    At least one store is always valid. push() and pull() are idempotent;
    calling either twice transfers at most once.

Layout:
    NCHW stores (batch, channels, height, width); NHWC stores
    (batch, height, width, channels). Layers that need channel-major data
    use :meth:`Tensor4D.nchw`, which is a zero-copy permuted view.

Usage:
    >>> t = Tensor4D(2, 3, 416, 416, device="cpu")
    >>> t.host()[:] = 0.5
    >>> t.mark_host_dirty()
    >>> t.push()           # device copy is now authoritative and in sync
    >>> t.nchw().shape     # torch.Size([2, 3, 416, 416])
"""

from __future__ import annotations

import logging
from typing import Optional, Union

import numpy as np
import torch

from layerforge.core.types import DataLayout, Precision
from layerforge.errors import TensorAllocationError

logger = logging.getLogger(__name__)


class Tensor4D:
    """
    A host/device resident 4-D tensor with immutable dimensions.

    Dimensions change only through :meth:`init`, which discards both
    backing stores and allocates a fresh, zero-filled device store.

    Parameters
    ----------
    batch, channels, width, height : int
        Dimensions. If any is zero the tensor starts empty and must be
        initialized with :meth:`init` before use.
    layout : DataLayout
        Channel-major (NCHW) or channel-minor (NHWC).
    precision : Precision
        FP32 or FP16 element type.
    device : str or torch.device
        Where the device store lives.
    """

    def __init__(
        self,
        batch: int = 0,
        channels: int = 0,
        width: int = 0,
        height: int = 0,
        layout: DataLayout = DataLayout.NCHW,
        precision: Precision = Precision.FP32,
        device: Union[str, torch.device] = "cpu",
    ):
        self.batch = 0
        self.channels = 0
        self.width = 0
        self.height = 0
        self.layout = layout
        self.precision = precision
        self.device = torch.device(device)

        self._host: Optional[np.ndarray] = None
        self._device: Optional[torch.Tensor] = None
        self._host_valid = False
        self._device_valid = False

        if batch and channels and width and height:
            self.init(batch, channels, width, height, layout)

    # ------------------------------------------------------------------
    # Lifecycle

    def init(
        self,
        batch: int,
        channels: int,
        width: int,
        height: int,
        layout: Optional[DataLayout] = None,
    ) -> None:
        """
        (Re-)initialize the tensor, discarding any existing storage.

        Raises
        ------
        ValueError
            If a dimension is not a positive integer.
        TensorAllocationError
            If the device store cannot be allocated.
        """
        dims = {"batch": batch, "channels": channels,
                "width": width, "height": height}
        for name, value in dims.items():
            if not isinstance(value, (int, np.integer)) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

        self.release()
        self.batch = int(batch)
        self.channels = int(channels)
        self.width = int(width)
        self.height = int(height)
        if layout is not None:
            self.layout = layout

        try:
            self._device = torch.zeros(
                self.shape, dtype=self.precision.torch_dtype, device=self.device
            )
        except RuntimeError as e:
            # torch.cuda.OutOfMemoryError is a RuntimeError subclass
            self.batch = self.channels = self.width = self.height = 0
            raise TensorAllocationError(
                f"Cannot allocate {batch}x{channels}x{width}x{height} "
                f"{self.precision.value} tensor: {e}",
                requested_bytes=batch * channels * width * height
                * self.precision.itemsize,
                device=str(self.device),
            ) from e

        self._device_valid = True
        self._host_valid = False

    def release(self) -> None:
        """Drop both backing stores; the tensor becomes empty."""
        self._host = None
        self._device = None
        self._host_valid = False
        self._device_valid = False
        self.batch = self.channels = self.width = self.height = 0

    # ------------------------------------------------------------------
    # Shape

    @property
    def empty(self) -> bool:
        return self._device is None and self._host is None

    @property
    def shape(self) -> tuple[int, int, int, int]:
        """Storage shape, ordered according to the layout."""
        if self.layout is DataLayout.NCHW:
            return (self.batch, self.channels, self.height, self.width)
        return (self.batch, self.height, self.width, self.channels)

    @property
    def nchw_shape(self) -> tuple[int, int, int, int]:
        return (self.batch, self.channels, self.height, self.width)

    @property
    def numel(self) -> int:
        return self.batch * self.channels * self.width * self.height

    @property
    def nbytes(self) -> int:
        return self.numel * self.precision.itemsize

    @property
    def elements_per_sample(self) -> int:
        return self.channels * self.width * self.height

    def same_shape(self, other: Tensor4D) -> bool:
        return self.nchw_shape == other.nchw_shape

    # ------------------------------------------------------------------
    # Transfers

    def push(self) -> None:
        """Make the device store current (host → device if stale)."""
        self._require_storage()
        if self._device_valid:
            return
        source = torch.from_numpy(self._host)
        if self._device is None:
            self._device = source.to(self.device).clone()
        else:
            self._device.copy_(source)
        self._device_valid = True

    def pull(self) -> None:
        """Make the host store current (device → host if stale)."""
        self._require_storage()
        if self._host_valid:
            return
        # .cpu() waits for any queued kernels writing this tensor
        values = self._device.detach().cpu().numpy()
        if self._host is None:
            self._host = values.copy()
        else:
            self._host[...] = values
        self._host_valid = True

    @property
    def host_valid(self) -> bool:
        return self._host_valid

    @property
    def device_valid(self) -> bool:
        return self._device_valid

    # ------------------------------------------------------------------
    # Access

    def host(self) -> np.ndarray:
        """
        The host array, pulled from the device if it is stale.

        Writing into the returned array must be followed by
        :meth:`mark_host_dirty` so the next push uploads it.
        """
        self.pull()
        return self._host

    def mark_host_dirty(self) -> None:
        """Declare the host copy authoritative after writing into it."""
        if self._host is None:
            raise RuntimeError("Tensor4D has no host store to mark dirty")
        self._host_valid = True
        self._device_valid = False

    def load_host(self, values: np.ndarray) -> None:
        """Copy ``values`` (storage-shaped) into the host store."""
        values = np.asarray(values)
        if values.shape != self.shape:
            raise ValueError(
                f"Host data shape {values.shape} does not match tensor "
                f"shape {self.shape} ({self.layout.value})"
            )
        if self._host is None:
            self._host = np.empty(self.shape, dtype=self.precision.numpy_dtype)
        self._host[...] = values
        self.mark_host_dirty()

    @property
    def data(self) -> torch.Tensor:
        """The device tensor in storage order, pushed first if stale."""
        self.push()
        return self._device

    def nchw(self) -> torch.Tensor:
        """Channel-major view of the device tensor (zero-copy)."""
        data = self.data
        if self.layout is DataLayout.NHWC:
            return data.permute(0, 3, 1, 2)
        return data

    def write_nchw(self, values: torch.Tensor) -> None:
        """
        Overwrite the device store from a channel-major tensor.

        ``values`` is cast to the tensor's precision. The device store
        becomes authoritative.
        """
        if tuple(values.shape) != self.nchw_shape:
            raise ValueError(
                f"Cannot write {tuple(values.shape)} into tensor of "
                f"NCHW shape {self.nchw_shape}"
            )
        self._require_storage()
        target = self._device
        if self.layout is DataLayout.NHWC:
            target = target.permute(0, 3, 1, 2)
        target.copy_(values)
        self._device_valid = True
        self._host_valid = False

    def _require_storage(self) -> None:
        if self.empty:
            raise RuntimeError("Tensor4D is empty; call init() first")

    def __repr__(self) -> str:
        return (
            f"Tensor4D(batch={self.batch}, channels={self.channels}, "
            f"width={self.width}, height={self.height}, "
            f"layout={self.layout.value}, precision={self.precision.value}, "
            f"device={self.device})"
        )
