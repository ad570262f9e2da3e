"""
LayerForge Workspace Allocator
===============================
A single scratch buffer on the accelerator, shared serially by every
layer that needs temporary device memory during a pass.

Growth Policy:
    The buffer only ever grows. A request that fits the current buffer
    is a no-op; a strictly larger request releases the old buffer first
    and then allocates the new size. Contents are NOT preserved across a
    reallocation, and a later, larger request from another layer may
    move the buffer, so a layer must never keep a workspace view beyond
    the call that obtained it.

    size  ──────────────────────────────►  (monotonically non-decreasing)
           grow(64)  grow(32)  grow(256)
           alloc 64  no-op     free 64, alloc 256

Usage:
    >>> ws = WorkspaceAllocator(torch.device("cpu"))
    >>> ws.grow(1 << 20)
    True
    >>> scratch = ws.request((128, 256), torch.float32)  # view into the buffer
"""

from __future__ import annotations

import logging
import math
from typing import Sequence, Union

import torch

from layerforge.errors import WorkspaceAllocationError

logger = logging.getLogger(__name__)


class WorkspaceAllocator:
    """
    Growth-only shared scratch memory.

    Parameters
    ----------
    device : str or torch.device
        Device the buffer lives on.

    Attributes
    ----------
    size : int
        Largest size (bytes) ever requested. Never decreases, even when
        an allocation fails.
    reallocations : int
        Number of times the buffer was (re)allocated.
    """

    def __init__(self, device: Union[str, torch.device] = "cpu"):
        self.device = torch.device(device)
        self.size = 0
        self.reallocations = 0
        self._buffer: torch.Tensor | None = None

    @property
    def usable(self) -> bool:
        """Whether a buffer is currently allocated."""
        return self._buffer is not None

    def grow(self, requested_size: int) -> bool:
        """
        Ensure the buffer holds at least ``requested_size`` bytes.

        Returns
        -------
        bool
            True if the buffer was reallocated, False if the request was
            already satisfied.

        Raises
        ------
        WorkspaceAllocationError
            If the device allocation fails. The graph is then left with no
            usable workspace until a later request succeeds.
        """
        if requested_size < 0:
            raise ValueError(f"requested_size must be >= 0, got {requested_size}")
        if requested_size <= self.size and (
            self._buffer is not None or requested_size == 0
        ):
            return False

        new_size = max(requested_size, self.size)
        self.size = new_size

        # Release before allocating so peak usage is max(old, new), not the sum
        self._buffer = None

        try:
            self._buffer = torch.empty(
                new_size, dtype=torch.uint8, device=self.device
            )
        except RuntimeError as e:
            raise WorkspaceAllocationError(
                f"Workspace allocation of {new_size} bytes failed: {e}",
                requested_bytes=new_size,
                device=str(self.device),
            ) from e

        self.reallocations += 1
        logger.debug(
            f"Workspace grown to {new_size / 1024 / 1024:.2f}MB "
            f"on {self.device} (reallocation #{self.reallocations})"
        )
        return True

    def request(
        self, shape: Sequence[int], dtype: torch.dtype = torch.float32
    ) -> torch.Tensor:
        """
        A typed view of the first ``prod(shape)`` elements of the buffer,
        growing it first if needed.

        The view is only valid until the next call to :meth:`grow` or
        :meth:`request`. Its contents are undefined.
        """
        itemsize = torch.empty((), dtype=dtype).element_size()
        numel = math.prod(shape)
        nbytes = numel * itemsize
        self.grow(nbytes)
        return self._buffer[:nbytes].view(dtype).view(*shape)

    def release(self) -> None:
        """Free the buffer; ``size`` keeps its high-water mark."""
        self._buffer = None

    def __repr__(self) -> str:
        return (
            f"WorkspaceAllocator(device={self.device}, size={self.size}, "
            f"usable={self.usable})"
        )
