"""
LayerForge Core Types
======================
Small value types shared by every part of the execution core:

    - DataLayout     — channel-major (NCHW) vs channel-minor (NHWC)
    - Precision      — 32-bit float vs compact 16-bit float
    - Anchor         — a reference box shape for detection heads
    - OBJECT_INFO    — numpy record layout of one ground-truth annotation
    - TruthBuffer    — the owned, bounds-checked ground-truth buffer
    - ForwardContext — the per-call bundle handed to every layer's forward
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

import numpy as np
import torch

if TYPE_CHECKING:
    from layerforge.core.tensor import Tensor4D
    from layerforge.core.workspace import WorkspaceAllocator


class DataLayout(Enum):
    """Memory layout of a Tensor4D."""

    NCHW = "NCHW"  # channel-major
    NHWC = "NHWC"  # channel-minor

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional[DataLayout]:
        """Return the layout named by ``text``, or None if unrecognized."""
        if isinstance(text, cls):
            return text
        try:
            return cls(str(text).strip().upper())
        except ValueError:
            return None


class Precision(Enum):
    """Element type of a Tensor4D."""

    FP32 = "FP32"
    FP16 = "FP16"

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional[Precision]:
        """Return the precision named by ``text``, or None if unrecognized."""
        if isinstance(text, cls):
            return text
        try:
            return cls(str(text).strip().upper())
        except ValueError:
            return None

    @property
    def torch_dtype(self) -> torch.dtype:
        return torch.float32 if self is Precision.FP32 else torch.float16

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(np.float32 if self is Precision.FP32 else np.float16)

    @property
    def itemsize(self) -> int:
        return 4 if self is Precision.FP32 else 2


@dataclass(frozen=True)
class Anchor:
    """
    A (width, height) box shape, stored as ratios of the reference input
    size so it stays valid when the input resolution changes.
    """

    width: float
    height: float

    @classmethod
    def from_pixels(
        cls, width: float, height: float, reference: float
    ) -> Anchor:
        return cls(width=width / reference, height=height / reference)


# =============================================================================
# Ground truth
# =============================================================================

# One annotation: class, box centre and size (normalized to [0, 1]) and a
# per-object loss weight. A record with w <= 0 or h <= 0 is an empty slot.
OBJECT_INFO = np.dtype(
    [
        ("class_id", np.int32),
        ("x", np.float32),
        ("y", np.float32),
        ("w", np.float32),
        ("h", np.float32),
        ("weight", np.float32),
    ]
)


class TruthBuffer:
    """
    Flat ground-truth buffer of ``mini_batch × max_truths`` ObjectInfo
    records, repopulated by the data source for every mini-batch.

    All access is bounds-checked; the buffer is only resized through
    :meth:`reallocate`.

    Parameters
    ----------
    mini_batch : int
        Number of samples per forward pass.
    max_truths : int
        Maximum number of annotated objects per sample.
    """

    def __init__(self, mini_batch: int, max_truths: int):
        self._records = np.zeros(0, dtype=OBJECT_INFO)
        self.mini_batch = 0
        self.max_truths = 0
        self.reallocate(mini_batch, max_truths)

    def reallocate(self, mini_batch: int, max_truths: int) -> None:
        """Discard the current records and allocate a cleared buffer."""
        if mini_batch < 1 or max_truths < 1:
            raise ValueError(
                f"TruthBuffer needs mini_batch >= 1 and max_truths >= 1, "
                f"got {mini_batch} x {max_truths}"
            )
        self.mini_batch = mini_batch
        self.max_truths = max_truths
        self._records = np.zeros(mini_batch * max_truths, dtype=OBJECT_INFO)

    def clear(self) -> None:
        self._records[:] = 0

    @property
    def records(self) -> np.ndarray:
        """The flat record array (a view, not a copy)."""
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def _check(self, sample: int, slot: Optional[int] = None) -> None:
        if not 0 <= sample < self.mini_batch:
            raise IndexError(
                f"sample {sample} out of range [0, {self.mini_batch})"
            )
        if slot is not None and not 0 <= slot < self.max_truths:
            raise IndexError(
                f"truth slot {slot} out of range [0, {self.max_truths})"
            )

    def sample(self, sample: int) -> np.ndarray:
        """All ``max_truths`` slots of one sample (a view)."""
        self._check(sample)
        start = sample * self.max_truths
        return self._records[start:start + self.max_truths]

    def get(self, sample: int, slot: int) -> np.void:
        self._check(sample, slot)
        return self._records[sample * self.max_truths + slot]

    def set(
        self,
        sample: int,
        slot: int,
        class_id: int,
        x: float,
        y: float,
        w: float,
        h: float,
        weight: float = 1.0,
    ) -> None:
        self._check(sample, slot)
        self._records[sample * self.max_truths + slot] = (
            class_id, x, y, w, h, weight,
        )

    def objects(self, sample: int) -> np.ndarray:
        """
        The populated annotations of one sample.

        Slots are read in order up to the first empty one.
        """
        slots = self.sample(sample)
        empty = np.flatnonzero((slots["w"] <= 0) | (slots["h"] <= 0))
        end = int(empty[0]) if empty.size else self.max_truths
        return slots[:end]


@dataclass(frozen=True)
class ForwardContext:
    """
    Per-call bundle passed to every layer's forward operation.

    Built fresh by :meth:`NetworkGraph.forward` and discarded afterwards;
    no layer may keep a reference to it.
    """

    training: bool
    freeze_conv: bool
    freeze_bn: bool
    freeze_activation: bool
    input: Tensor4D
    max_truths: int
    truths: TruthBuffer
    workspace: WorkspaceAllocator
    anchors: tuple[Anchor, ...] = ()
