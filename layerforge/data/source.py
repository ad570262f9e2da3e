"""
LayerForge Data Sources
========================
A data source fills the network input tensor and the ground-truth buffer
with the next mini-batch. The training loop calls it once per
subdivision and blocks until it returns.

Contract:
    load_minibatch(input, truths)
        - writes ``input.batch`` samples into ``input`` at the tensor's
          CURRENT width/height (which change under adaptive resizing),
          in the tensor's layout and precision
        - clears ``truths`` and writes up to ``truths.max_truths``
          annotations per sample, box coordinates normalized to [0, 1]

Two implementations ship with LayerForge:
    - SyntheticDataSource: random images with bright rectangles at random
      boxes; for smoke runs and tests
    - ArrayDataSource: in-memory images and annotations, shuffled per epoch
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import numpy as np
import torch
import torch.nn.functional as F

from layerforge.core.tensor import Tensor4D
from layerforge.core.types import DataLayout, TruthBuffer

logger = logging.getLogger(__name__)


class DataSource(ABC):
    """Supplies mini-batches of images and annotations."""

    @abstractmethod
    def load_minibatch(self, input: Tensor4D, truths: TruthBuffer) -> None:
        """Fill ``input`` and ``truths`` with the next mini-batch."""

    @staticmethod
    def write_images(input: Tensor4D, images: np.ndarray) -> None:
        """Store channel-major float images in ``input``'s layout and precision."""
        if images.shape != input.nchw_shape:
            raise ValueError(
                f"Images of shape {images.shape} do not fit input "
                f"{input.nchw_shape}"
            )
        if input.layout is DataLayout.NHWC:
            images = images.transpose(0, 2, 3, 1)
        input.load_host(images.astype(input.precision.numpy_dtype, copy=False))


class SyntheticDataSource(DataSource):
    """
    Random noise images with one filled rectangle per annotated box.

    Parameters
    ----------
    classes : int
        Class ids are drawn from ``[0, classes)``; the rectangle's
        intensity encodes the class.
    max_objects : int
        Each sample gets between 1 and ``max_objects`` boxes (capped by
        the truth buffer's ``max_truths``).
    seed : int
        Seed of the numpy generator.
    """

    def __init__(self, classes: int = 1, max_objects: int = 3, seed: int = 0):
        if classes < 1:
            raise ValueError(f"classes must be >= 1, got {classes}")
        if max_objects < 1:
            raise ValueError(f"max_objects must be >= 1, got {max_objects}")
        self.classes = classes
        self.max_objects = max_objects
        self.rng = np.random.default_rng(seed)
        self.batches_served = 0

    def load_minibatch(self, input: Tensor4D, truths: TruthBuffer) -> None:
        n, c, h, w = input.nchw_shape
        images = self.rng.uniform(0.0, 0.2, size=(n, c, h, w)).astype(np.float32)
        truths.clear()

        limit = min(self.max_objects, truths.max_truths)
        for sample in range(n):
            count = int(self.rng.integers(1, limit + 1))
            for slot in range(count):
                class_id = int(self.rng.integers(0, self.classes))
                bw, bh = self.rng.uniform(0.1, 0.5, size=2)
                x = self.rng.uniform(bw / 2, 1 - bw / 2)
                y = self.rng.uniform(bh / 2, 1 - bh / 2)
                truths.set(sample, slot, class_id, x, y, bw, bh)

                x0, x1 = int((x - bw / 2) * w), max(int((x + bw / 2) * w), 1)
                y0, y1 = int((y - bh / 2) * h), max(int((y + bh / 2) * h), 1)
                images[sample, :, y0:y1, x0:x1] = (class_id + 1) / self.classes

        self.write_images(input, images)
        self.batches_served += 1


class ArrayDataSource(DataSource):
    """
    Serves in-memory images in shuffled order, cycling through epochs.

    Images are resized (bilinear) to the input's current resolution.
    Annotations are normalized, so they need no adjustment.

    Parameters
    ----------
    images : np.ndarray
        ``(N, C, H, W)`` float images.
    annotations : sequence of np.ndarray
        Per image, a ``(k, 5)`` array of ``class_id, x, y, w, h`` rows.
        Rows beyond the truth buffer's ``max_truths`` are dropped.
    shuffle : bool
        Reshuffle the order at the start of every epoch.
    seed : int
        Seed of the shuffling generator.
    """

    def __init__(
        self,
        images: np.ndarray,
        annotations: Sequence[np.ndarray],
        shuffle: bool = True,
        seed: int = 0,
    ):
        images = np.asarray(images, dtype=np.float32)
        if images.ndim != 4 or len(images) == 0:
            raise ValueError(f"images must be a non-empty (N, C, H, W) array, got {images.shape}")
        if len(annotations) != len(images):
            raise ValueError(
                f"Got {len(annotations)} annotation arrays for {len(images)} images"
            )
        self.images = images
        self.annotations = [self._check_annotation(i, a) for i, a in enumerate(annotations)]
        self.shuffle = shuffle
        self.rng = np.random.default_rng(seed)
        self.epoch = 0
        self._order = self._new_order()
        self._cursor = 0

        logger.info(f"ArrayDataSource: {len(images)} images, shuffle={shuffle}")

    @staticmethod
    def _check_annotation(index: int, annotation: np.ndarray) -> np.ndarray:
        annotation = np.asarray(annotation, dtype=np.float32)
        if annotation.size == 0:
            return np.zeros((0, 5), dtype=np.float32)
        if annotation.ndim == 1:
            annotation = annotation.reshape(1, -1)
        if annotation.ndim != 2 or annotation.shape[1] != 5:
            raise ValueError(
                f"annotation {index} must be a (k, 5) array, got {annotation.shape}"
            )
        return annotation

    def _new_order(self) -> np.ndarray:
        if self.shuffle:
            return self.rng.permutation(len(self.images))
        return np.arange(len(self.images))

    def __len__(self) -> int:
        return len(self.images)

    def _next_indices(self, count: int) -> list[int]:
        indices = []
        while len(indices) < count:
            if self._cursor >= len(self._order):
                self.epoch += 1
                self._order = self._new_order()
                self._cursor = 0
            indices.append(int(self._order[self._cursor]))
            self._cursor += 1
        return indices

    def load_minibatch(self, input: Tensor4D, truths: TruthBuffer) -> None:
        n, c, h, w = input.nchw_shape
        if self.images.shape[1] != c:
            raise ValueError(
                f"Images have {self.images.shape[1]} channels, input expects {c}"
            )

        indices = self._next_indices(n)
        batch = self.images[indices]
        if batch.shape[2:] != (h, w):
            batch = F.interpolate(
                torch.from_numpy(batch), size=(h, w), mode="bilinear",
                align_corners=False,
            ).numpy()

        truths.clear()
        for sample, index in enumerate(indices):
            rows = self.annotations[index]
            if len(rows) > truths.max_truths:
                logger.debug(
                    f"Image {index} has {len(rows)} objects, keeping "
                    f"{truths.max_truths}"
                )
            for slot, (class_id, x, y, bw, bh) in enumerate(rows[:truths.max_truths]):
                truths.set(sample, slot, int(class_id), x, y, bw, bh)

        self.write_images(input, batch)


def make_synthetic_arrays(
    count: int,
    channels: int,
    size: int,
    classes: int = 1,
    seed: Optional[int] = 0,
) -> tuple[np.ndarray, list[np.ndarray]]:
    """Images and annotations for :class:`ArrayDataSource` in tests and demos."""
    rng = np.random.default_rng(seed)
    images = rng.uniform(0.0, 0.2, size=(count, channels, size, size)).astype(np.float32)
    annotations = []
    for i in range(count):
        bw, bh = rng.uniform(0.2, 0.5, size=2)
        x, y = rng.uniform(0.3, 0.7, size=2)
        class_id = int(rng.integers(0, classes))
        annotations.append(np.array([[class_id, x, y, bw, bh]], dtype=np.float32))
        x0, x1 = int((x - bw / 2) * size), int((x + bw / 2) * size)
        y0, y1 = int((y - bh / 2) * size), int((y + bh / 2) * size)
        images[i, :, y0:y1, x0:x1] = (class_id + 1) / classes
    return images, annotations
